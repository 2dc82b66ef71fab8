"""Operator-facing reads and toggles for automated market creation."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from app.repositories import AutomationRepository, MarketRepository
from app.schemas import (
    AutomationConfig,
    AutomationLog,
    AutomationLogList,
    CommitmentAudit,
    TreasuryBalance,
)

from .commitment import verify_commitment
from .payouts import TransferLedger


@dataclass(slots=True)
class AutomationService:
    session: Session

    def get_config(self) -> AutomationConfig:
        config = AutomationRepository(self.session).get_config()
        self.session.commit()
        return AutomationConfig.model_validate(config)

    def set_enabled(self, enabled: bool) -> AutomationConfig:
        config = AutomationRepository(self.session).set_enabled(enabled)
        self.session.commit()
        return AutomationConfig.model_validate(config)

    def list_logs(self, limit: int = 50) -> AutomationLogList:
        records = AutomationRepository(self.session).list_logs(limit=limit)
        items = [AutomationLog.model_validate(record) for record in records]
        return AutomationLogList(total=len(items), items=items)

    def get_commitment(self, market_id: int) -> CommitmentAudit | None:
        market = MarketRepository(self.session).get_market(market_id)
        if market is None:
            return None
        verified = None
        if market.commitment_secret and market.resolved_outcome:
            verified = verify_commitment(
                market.commitment_hash or "",
                market.resolved_outcome,
                market.commitment_secret,
                market.id,
            )
        return CommitmentAudit(
            market_id=market.id,
            status=market.status,
            resolved_outcome=market.resolved_outcome,
            commitment_hash=market.commitment_hash,
            commitment_secret=market.commitment_secret,
            verified=verified,
        )


def treasury_balance(ledger: TransferLedger, signer_key: str, reserve: Decimal) -> TreasuryBalance:
    balance = ledger.get_treasury_balance(signer_key)
    return TreasuryBalance(
        balance=balance,
        reserve=reserve,
        available=max(balance - reserve, Decimal("0")),
    )


__all__ = ["AutomationService", "treasury_balance"]
