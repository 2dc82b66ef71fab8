from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, ContextManager, Protocol, Sequence

from app.core.config import Settings, get_settings
from app.db import init_db, session_scope
from app.domain import Candle, CandidateToken, TransferInstruction, TransferOutcome
from app.services.events import EventPublisher, build_event_publisher
from app.services.payouts import PayoutDistributor
from feeds.ledger import LedgerClient
from feeds.token_feed import TokenFeedClient


class TokenFeed(Protocol):
    def list_candidate_tokens(self, *, now: datetime | None = None) -> list[CandidateToken]:
        ...

    def get_token(self, address: str, *, now: datetime | None = None) -> CandidateToken:
        ...

    def get_candle_history(self, address: str, granularity: str, limit: int) -> list[Candle]:
        ...

    def close(self) -> None:
        ...


class Ledger(Protocol):
    def get_treasury_balance(self, signer_key: str) -> Decimal:
        ...

    def submit_batch_transfer(
        self, signer_key: str, transfers: Sequence[TransferInstruction]
    ) -> TransferOutcome:
        ...

    def close(self) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class JobContext:
    """Collaborators shared by the creation and resolution jobs."""

    settings: Settings
    session_factory: Callable[[], ContextManager[Any]]
    feed_factory: Callable[[], TokenFeed]
    publisher: EventPublisher
    ledger_factory: Callable[[], Ledger] | None = None
    clock: Callable[[], datetime] = field(default=_utcnow)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "JobContext":
        settings = settings or get_settings()
        init_db()
        ledger_factory = LedgerClient if settings.on_chain_payouts_enabled else None
        return cls(
            settings=settings,
            session_factory=session_scope,
            feed_factory=TokenFeedClient,
            publisher=build_event_publisher(),
            ledger_factory=ledger_factory,
        )

    def build_ledger(self) -> Ledger | None:
        """Open a ledger client when payouts can be signed; the caller closes it."""
        if self.ledger_factory is None or not self.settings.treasury_private_key:
            return None
        return self.ledger_factory()

    def build_distributor(self, ledger: Ledger | None) -> PayoutDistributor:
        if ledger is None:
            return PayoutDistributor(None, None)
        return PayoutDistributor(
            ledger,
            self.settings.treasury_private_key,
            batch_size=self.settings.payout_batch_size,
            fee_reserve=self.settings.payout_fee_reserve,
        )

    def close(self) -> None:
        self.publisher.close()
