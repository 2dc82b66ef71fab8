"""Market and resolution-tracking data access helpers."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from app.domain import MarketDraft, MarketOutcome, MarketStatus, MarketType, ResolutionStatus
from app.models import Market, ResolutionTracking, ensure_utc, utcnow


def _probability_for(outcome: MarketOutcome) -> dict[str, int]:
    if outcome == MarketOutcome.YES:
        return {"probability": 100}
    if outcome == MarketOutcome.NO:
        return {"probability": 0}
    return {}


class MarketRepository:
    """Encapsulate automated market and tracking persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def create_market_with_tracking(
        self, draft: MarketDraft, *, now: datetime | None = None
    ) -> Market:
        """Add the market and its tracking row in the caller's transaction."""
        created_at = now or utcnow()
        market = Market(
            question=draft.question,
            category=draft.category,
            probability=50,
            yes_pool=Decimal("0"),
            no_pool=Decimal("0"),
            status=MarketStatus.ACTIVE.value,
            expires_at=draft.expires_at,
            created_at=created_at,
            is_automated=True,
            token_address=draft.token_address,
            token_address2=draft.token_address2,
            image_url=draft.image_url,
        )
        market.resolution = ResolutionTracking(
            market_type=draft.market_type.value,
            target_value=Decimal(draft.target_value),
            token_address=draft.token_address,
            token_address2=draft.token_address2,
            status=ResolutionStatus.PENDING.value,
            created_at=created_at,
        )
        self._session.add(market)
        self._session.flush()
        return market

    def touch_last_checked(self, market_id: int, checked_at: datetime) -> None:
        self._session.execute(
            update(ResolutionTracking)
            .where(
                ResolutionTracking.market_id == market_id,
                ResolutionTracking.status == ResolutionStatus.PENDING.value,
            )
            .values(last_checked=checked_at)
        )

    def transition_tracking(self, market_id: int, status: ResolutionStatus) -> bool:
        """Move a pending tracking row forward; False when another sweep got there first."""
        if status == ResolutionStatus.PENDING:
            raise ValueError("Tracking rows never move back to pending")
        result = self._session.execute(
            update(ResolutionTracking)
            .where(
                ResolutionTracking.market_id == market_id,
                ResolutionTracking.status == ResolutionStatus.PENDING.value,
            )
            .values(status=status.value)
        )
        return result.rowcount == 1

    def mark_market_resolved(
        self, market_id: int, outcome: MarketOutcome, resolved_at: datetime
    ) -> bool:
        result = self._session.execute(
            update(Market)
            .where(Market.id == market_id, Market.status == MarketStatus.ACTIVE.value)
            .values(
                status=MarketStatus.RESOLVED.value,
                resolved_outcome=outcome.value,
                resolved_at=resolved_at,
                **_probability_for(outcome),
            )
        )
        return result.rowcount == 1

    def zero_pools(self, market_id: int) -> None:
        self._session.execute(
            update(Market)
            .where(Market.id == market_id)
            .values(yes_pool=Decimal("0"), no_pool=Decimal("0"))
        )

    def store_commitment_hash(self, market_id: int, commitment_hash: str) -> bool:
        """Record the hash while the market is still active; callers hold the tracking claim."""
        result = self._session.execute(
            update(Market)
            .where(Market.id == market_id, Market.status == MarketStatus.ACTIVE.value)
            .values(commitment_hash=commitment_hash, commitment_secret=None)
        )
        return result.rowcount == 1

    def reveal_commitment_secret(self, market_id: int, secret: str) -> None:
        self._session.execute(
            update(Market).where(Market.id == market_id).values(commitment_secret=secret)
        )

    # ------------------------------------------------------------------
    # Queries

    def get_market(self, market_id: int) -> Market | None:
        query = (
            select(Market)
            .options(selectinload(Market.resolution))
            .where(Market.id == market_id)
        )
        return self._session.execute(query).scalar_one_or_none()

    def list_active_automated_markets(self, now: datetime) -> list[Market]:
        query = (
            select(Market)
            .options(selectinload(Market.resolution))
            .where(
                Market.is_automated.is_(True),
                Market.status == MarketStatus.ACTIVE.value,
            )
            .order_by(Market.created_at.desc(), Market.id.desc())
        )
        markets = self._session.execute(query).scalars().all()
        # Expiry is compared in Python; SQLite stores naive timestamps.
        return [
            market
            for market in markets
            if market.expires_at is None or ensure_utc(market.expires_at) > now
        ]

    def active_automated_types(self, now: datetime) -> set[MarketType]:
        types: set[MarketType] = set()
        for market in self.list_active_automated_markets(now):
            if market.resolution is None:
                continue
            try:
                types.add(MarketType(market.resolution.market_type))
            except ValueError:
                continue
        return types

    def used_token_addresses(self, now: datetime) -> set[str]:
        """Addresses referenced (on either side) by active, unexpired automated markets."""
        used: set[str] = set()
        for market in self.list_active_automated_markets(now):
            for address in (market.token_address, market.token_address2):
                if address:
                    used.add(address)
        return used

    def list_pending_trackings(self) -> list[ResolutionTracking]:
        query = (
            select(ResolutionTracking)
            .options(selectinload(ResolutionTracking.market))
            .where(ResolutionTracking.status == ResolutionStatus.PENDING.value)
            .order_by(ResolutionTracking.market_id.asc())
        )
        return list(self._session.execute(query).scalars().all())


__all__ = ["MarketRepository"]
