"""Payout computation and batched on-ledger distribution.

Winners split the pool proportionally to their stake, or evenly for
winner-takes-all private markets. Transfers are packed into batches of up to
``batch_size`` instructions; a batch either lands as a whole (every share gets
the batch's transfer reference) or fails as a whole (every share gets the
batch's error). Failures never raise out of :meth:`PayoutDistributor.distribute`.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Protocol, TypeVar

from loguru import logger

from app.domain import MarketOutcome, PayoutReport, PayoutShare, TransferInstruction, TransferOutcome
from feeds.ledger import (
    MAX_INSTRUCTIONS_PER_TRANSACTION,
    InsufficientTreasuryError,
    LedgerError,
)
from feeds.normalize import is_valid_address

AMOUNT_QUANTUM = Decimal("0.000000001")

T = TypeVar("T")


class TransferLedger(Protocol):
    def get_treasury_balance(self, signer_key: str) -> Decimal:
        ...

    def submit_batch_transfer(
        self, signer_key: str, transfers: Sequence[TransferInstruction]
    ) -> TransferOutcome:
        ...


@dataclass(slots=True, frozen=True)
class BetStake:
    bet_id: int
    user_id: int
    position: str
    amount: Decimal
    wallet_address: str | None = None


def _quantize(amount: Decimal) -> Decimal:
    # Rounding down keeps the sum of shares at or below the pool.
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


def refund_shares(bets: Sequence[BetStake]) -> list[PayoutShare]:
    return [
        PayoutShare(
            bet_id=bet.bet_id,
            user_id=bet.user_id,
            amount=Decimal(bet.amount),
            wallet_address=bet.wallet_address,
        )
        for bet in bets
        if Decimal(bet.amount) > 0
    ]


def compute_payouts(
    outcome: MarketOutcome,
    bets: Sequence[BetStake],
    *,
    total_pool: Decimal,
    winner_takes_all: bool = False,
) -> PayoutReport:
    """Split ``total_pool`` across bets whose position matches ``outcome``.

    With no winning stake at all, every bet (both sides) is refunded instead.
    """
    if outcome == MarketOutcome.REFUNDED:
        return PayoutReport(outcome=outcome, refunded=True, shares=refund_shares(bets))

    winners = [bet for bet in bets if bet.position == outcome.value]
    total_winning = sum((Decimal(bet.amount) for bet in winners), Decimal("0"))
    if not winners or total_winning <= 0:
        logger.info("No winning stake for outcome {}; refunding {} bets", outcome.value, len(bets))
        return PayoutReport(outcome=outcome, refunded=True, shares=refund_shares(bets))

    pool = Decimal(total_pool)
    shares: list[PayoutShare] = []
    for bet in winners:
        if winner_takes_all:
            amount = pool / len(winners)
        else:
            amount = Decimal(bet.amount) / total_winning * pool
        shares.append(
            PayoutShare(
                bet_id=bet.bet_id,
                user_id=bet.user_id,
                amount=_quantize(amount),
                wallet_address=bet.wallet_address,
            )
        )
    return PayoutReport(outcome=outcome, refunded=False, shares=shares)


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class PayoutDistributor:
    """Sends payout shares to the ledger in grouped transfers."""

    def __init__(
        self,
        ledger: TransferLedger | None,
        signer_key: str | None,
        *,
        batch_size: int = MAX_INSTRUCTIONS_PER_TRANSACTION,
        fee_reserve: Decimal = Decimal("0"),
    ) -> None:
        self._ledger = ledger
        self._signer_key = signer_key
        self._batch_size = min(batch_size, MAX_INSTRUCTIONS_PER_TRANSACTION)
        self._fee_reserve = Decimal(fee_reserve)

    @property
    def enabled(self) -> bool:
        return self._ledger is not None and bool(self._signer_key)

    def distribute(self, report: PayoutReport) -> PayoutReport:
        """Fill ``transfer_ref``/``error`` on every share and count batches."""
        if not self.enabled:
            logger.warning("Treasury signer not configured; payouts stay on the internal ledger")
            return report

        payable: list[PayoutShare] = []
        for share in report.shares:
            if share.amount <= 0:
                continue
            if not is_valid_address(share.wallet_address):
                share.error = f"Invalid address: {share.wallet_address!r}"
                logger.warning("Skipping payout for bet {}: {}", share.bet_id, share.error)
                continue
            payable.append(share)

        for index, batch in enumerate(chunked(payable, self._batch_size), start=1):
            outcome = self._submit_batch(batch)
            if outcome.succeeded:
                report.batches_submitted += 1
                for share in batch:
                    share.transfer_ref = outcome.transfer_ref
                logger.info(
                    "Batch {}: sent {} payouts in one transfer ({})",
                    index,
                    len(batch),
                    outcome.transfer_ref,
                )
            else:
                report.batches_failed += 1
                for share in batch:
                    share.error = outcome.error
                logger.error("Batch {} of {} payouts failed: {}", index, len(batch), outcome.error)
        return report

    def _submit_batch(self, batch: list[PayoutShare]) -> TransferOutcome:
        required = sum((share.amount for share in batch), Decimal("0")) + self._fee_reserve
        try:
            available = self._ledger.get_treasury_balance(self._signer_key)
        except LedgerError as exc:
            return TransferOutcome(error=str(exc))
        if available < required:
            shortfall = InsufficientTreasuryError(required=required, available=available)
            logger.error("Treasury shortfall of {} before batch submission", required - available)
            return TransferOutcome(error=str(shortfall))

        instructions = [
            TransferInstruction(recipient=share.wallet_address, amount=share.amount)
            for share in batch
            if share.wallet_address
        ]
        return self._ledger.submit_batch_transfer(self._signer_key, instructions)


__all__ = [
    "AMOUNT_QUANTUM",
    "BetStake",
    "PayoutDistributor",
    "TransferLedger",
    "chunked",
    "compute_payouts",
    "refund_shares",
]
