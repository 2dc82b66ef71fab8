from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
from typing import Any, Sequence

import httpx
from loguru import logger

from app.core.config import settings
from app.domain import TransferInstruction, TransferOutcome

MAX_INSTRUCTIONS_PER_TRANSACTION = 1200
BASE_UNITS_PER_COIN = Decimal(1_000_000_000)


class LedgerError(RuntimeError):
    """The transfer service could not be reached or rejected a request."""


class InsufficientTreasuryError(LedgerError):
    def __init__(self, required: Decimal, available: Decimal) -> None:
        super().__init__(f"Treasury balance {available} is below the {required} required for this batch")
        self.required = required
        self.available = available


def to_base_units(amount: Decimal) -> int:
    return int((Decimal(amount) * BASE_UNITS_PER_COIN).to_integral_value(rounding=ROUND_FLOOR))


def from_base_units(value: int) -> Decimal:
    return Decimal(int(value)) / BASE_UNITS_PER_COIN


class LedgerClient:
    """Client for the transfer service that signs and submits grouped ledger transfers."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        base_url = base_url or (str(settings.ledger_base_url) if settings.ledger_base_url else None)
        if not base_url:
            raise LedgerError("LEDGER_BASE_URL is not configured")
        self.base_url = base_url
        self.timeout = timeout or settings.ledger_timeout_seconds
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    def get_treasury_balance(self, signer_key: str) -> Decimal:
        logger.info("Ledger GET /treasury/balance")
        try:
            response = self.client.get("/treasury/balance", headers={"x-signer-key": signer_key})
            response.raise_for_status()
            payload: Any = response.json()
        except httpx.HTTPError as exc:
            raise LedgerError(f"Treasury balance request failed: {exc}") from exc
        if not isinstance(payload, dict) or "lamports" not in payload:
            raise LedgerError("Treasury balance payload is missing lamports")
        return from_base_units(payload["lamports"])

    def submit_batch_transfer(
        self, signer_key: str, transfers: Sequence[TransferInstruction]
    ) -> TransferOutcome:
        """Submit one grouped transfer; failures come back as an error outcome."""
        if not transfers:
            return TransferOutcome(error="No transfers to submit")
        if len(transfers) > MAX_INSTRUCTIONS_PER_TRANSACTION:
            return TransferOutcome(
                error=f"Batch of {len(transfers)} exceeds {MAX_INSTRUCTIONS_PER_TRANSACTION} instructions"
            )

        body = [
            {"recipient": transfer.recipient, "lamports": to_base_units(transfer.amount)}
            for transfer in transfers
        ]
        logger.info("Ledger POST /batch-transfers with {} instructions", len(body))
        try:
            response = self.client.post(
                "/batch-transfers", json=body, headers={"x-signer-key": signer_key}
            )
            response.raise_for_status()
            payload: Any = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Batch transfer failed: {}", exc)
            return TransferOutcome(error=str(exc))
        except ValueError as exc:
            return TransferOutcome(error=f"Invalid transfer response: {exc}")

        if not isinstance(payload, dict):
            return TransferOutcome(error="Transfer service returned an unexpected payload")
        transfer_ref = payload.get("signature") or payload.get("transfer_ref")
        if not transfer_ref:
            error = payload.get("error")
            return TransferOutcome(error=error or "Transfer service returned no reference")
        return TransferOutcome(transfer_ref=str(transfer_ref))

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "LedgerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
