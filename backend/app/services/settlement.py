"""Apply a resolution decision to a market: commitment, payouts, bookkeeping, events.

Every terminal transition goes through :meth:`SettlementService.settle`, which
runs the commit-reveal sequence around the status writes:

1. claim the market: move the tracking row out of ``pending``, store
   ``SHA256(outcome:secret:market_id)`` and mark the market resolved, then
   commit. The tracking write is guarded on ``pending``, so only the sweep
   that wins it writes a hash and a losing sweep backs off untouched;
2. send payouts or refunds and record them in a second commit. A failure
   here leaves the claim in place, so transfers are never sent twice;
3. reveal the secret, commit, and verify the stored hash.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from loguru import logger
from sqlalchemy.orm import Session

from app.domain import (
    MarketOutcome,
    PayoutReport,
    ResolutionStatus,
    TransactionStatus,
    TransactionType,
)
from app.models import Market
from app.repositories import LedgerRepository, MarketRepository

from .commitment import create_commitment, verify_commitment
from .events import (
    BALANCE_UPDATED,
    MARKET_RESOLVED,
    MARKET_UPDATED,
    EventPublisher,
    LoggingEventPublisher,
)
from .payouts import BetStake, PayoutDistributor, compute_payouts


@dataclass(slots=True)
class SettlementResult:
    market_id: int
    outcome: MarketOutcome
    tracking_status: ResolutionStatus
    report: PayoutReport
    commitment_verified: bool


class SettlementService:
    def __init__(
        self,
        session: Session,
        *,
        distributor: PayoutDistributor | None = None,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._session = session
        self._markets = MarketRepository(session)
        self._ledger = LedgerRepository(session)
        self._distributor = distributor or PayoutDistributor(None, None)
        self._publisher = publisher or LoggingEventPublisher()

    def resolve(self, market: Market, outcome: MarketOutcome, now: datetime) -> SettlementResult | None:
        return self.settle(market, outcome, ResolutionStatus.RESOLVED, now)

    def refund(
        self, market: Market, now: datetime, *, tracking_status: ResolutionStatus = ResolutionStatus.EXPIRED
    ) -> SettlementResult | None:
        return self.settle(market, MarketOutcome.REFUNDED, tracking_status, now)

    def settle(
        self,
        market: Market,
        outcome: MarketOutcome,
        tracking_status: ResolutionStatus,
        now: datetime,
    ) -> SettlementResult | None:
        """Return None when the market was already settled by another sweep."""
        market_id = market.id
        commitment = create_commitment(outcome, market_id)
        if not self._claim(market_id, outcome, tracking_status, commitment.hash, now):
            return None

        self._session.refresh(market)
        report: PayoutReport | None = None
        try:
            report = self._build_report(market, outcome)
            if not report.refunded:
                self._distributor.distribute(report)
            self._record_bookkeeping(market_id, outcome, report)
            self._session.commit()
        except Exception:
            self._session.rollback()
            logger.critical(
                "Market {} settled as {} but paying it out failed; replay these shares: {}",
                market_id,
                outcome.value,
                [(share.user_id, str(share.amount), share.transfer_ref) for share in report.shares]
                if report is not None
                else [],
            )
            self._reveal(market_id, commitment.secret)
            raise

        self._reveal(market_id, commitment.secret)
        self._session.refresh(market)
        verified = verify_commitment(
            market.commitment_hash or "", outcome, market.commitment_secret or "", market_id
        )
        if not verified:
            logger.critical(
                "Commitment mismatch for market {}: stored hash does not match revealed outcome {}",
                market_id,
                outcome.value,
            )

        logger.info(
            "Market {} settled as {} (tracking {}, {} shares, refunded={})",
            market_id,
            outcome.value,
            tracking_status.value,
            len(report.shares),
            report.refunded,
        )
        self._publish(market_id, report)
        return SettlementResult(
            market_id=market_id,
            outcome=outcome,
            tracking_status=tracking_status,
            report=report,
            commitment_verified=verified,
        )

    def _claim(
        self,
        market_id: int,
        outcome: MarketOutcome,
        tracking_status: ResolutionStatus,
        commitment_hash: str,
        now: datetime,
    ) -> bool:
        if not self._markets.transition_tracking(market_id, tracking_status):
            logger.info("Tracking for market {} already left pending; skipping", market_id)
            self._session.rollback()
            return False
        if not self._markets.store_commitment_hash(market_id, commitment_hash):
            logger.info("Market {} is no longer active; skipping settlement", market_id)
            self._session.rollback()
            return False
        if not self._markets.mark_market_resolved(market_id, outcome, now):
            logger.info("Market {} resolved concurrently; skipping", market_id)
            self._session.rollback()
            return False
        self._session.commit()
        return True

    def _reveal(self, market_id: int, secret: str) -> None:
        self._markets.reveal_commitment_secret(market_id, secret)
        self._session.commit()

    def _build_report(self, market: Market, outcome: MarketOutcome) -> PayoutReport:
        bets = self._ledger.bets_for_market(market.id)
        stakes = [
            BetStake(
                bet_id=bet.id,
                user_id=bet.user_id,
                position=bet.position,
                amount=Decimal(bet.amount),
                wallet_address=bet.user.wallet_address if bet.user else None,
            )
            for bet in bets
        ]
        return compute_payouts(
            outcome,
            stakes,
            total_pool=market.total_pool,
            winner_takes_all=market.is_winner_takes_all,
        )

    def _record_bookkeeping(self, market_id: int, outcome: MarketOutcome, report: PayoutReport) -> None:
        if report.refunded:
            for share in report.shares:
                self._ledger.credit_balance(share.user_id, share.amount)
                self._ledger.record_transaction(
                    user_id=share.user_id,
                    market_id=market_id,
                    tx_type=TransactionType.REFUND,
                    amount=share.amount,
                    status=TransactionStatus.CREDITED,
                )
            if outcome == MarketOutcome.REFUNDED:
                self._markets.zero_pools(market_id)
            return

        for share in report.shares:
            if share.transfer_ref:
                status = TransactionStatus.CONFIRMED
            else:
                # Failed or disabled on-chain leg falls back to the internal balance.
                self._ledger.credit_balance(share.user_id, share.amount)
                status = TransactionStatus.FAILED if share.error else TransactionStatus.CREDITED
            self._ledger.record_transaction(
                user_id=share.user_id,
                market_id=market_id,
                tx_type=TransactionType.PAYOUT,
                amount=share.amount,
                status=status,
                transfer_ref=share.transfer_ref,
                error_message=share.error,
            )

    def _publish(self, market_id: int, report: PayoutReport) -> None:
        if report.outcome != MarketOutcome.REFUNDED:
            self._publisher.publish(MARKET_RESOLVED, {"id": market_id})
        self._publisher.publish(MARKET_UPDATED, {"id": market_id})
        for user_id in dict.fromkeys(share.user_id for share in report.shares):
            self._publisher.publish(BALANCE_UPDATED, {"userId": user_id})


__all__ = ["SettlementResult", "SettlementService"]
