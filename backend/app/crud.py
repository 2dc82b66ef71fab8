from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from app.domain import MarketDraft, ResolutionStatus
from app.repositories import AutomationRepository, LedgerRepository, MarketRepository

from .models import AutomatedMarketLog, AutomationConfig, Bet, Market, User


def get_automation_config(session: Session) -> AutomationConfig:
    return AutomationRepository(session).get_config()


def set_automation_enabled(session: Session, enabled: bool) -> AutomationConfig:
    return AutomationRepository(session).set_enabled(enabled)


def list_automation_logs(session: Session, limit: int = 50) -> list[AutomatedMarketLog]:
    return AutomationRepository(session).list_logs(limit=limit)


def create_automated_market(
    session: Session, draft: MarketDraft, *, now: datetime | None = None
) -> Market:
    return MarketRepository(session).create_market_with_tracking(draft, now=now)


def get_market(session: Session, market_id: int) -> Market | None:
    return MarketRepository(session).get_market(market_id)


def expire_tracking(session: Session, market_id: int) -> bool:
    return MarketRepository(session).transition_tracking(market_id, ResolutionStatus.EXPIRED)


def create_user(session: Session, wallet_address: str, balance: Decimal = Decimal("0")) -> User:
    user = User(wallet_address=wallet_address, balance=balance)
    session.add(user)
    session.flush()
    return user


def place_bet(session: Session, market: Market, user: User, position: str, amount: Decimal) -> Bet:
    """Record a stake and grow the matching pool; used by scripts and fixtures."""
    if position not in ("yes", "no"):
        raise ValueError(f"Unknown bet position: {position}")
    bet = Bet(market_id=market.id, user_id=user.id, position=position, amount=Decimal(amount))
    if position == "yes":
        market.yes_pool = Decimal(market.yes_pool or 0) + Decimal(amount)
    else:
        market.no_pool = Decimal(market.no_pool or 0) + Decimal(amount)
    session.add(bet)
    session.flush()
    return bet


def list_bets(session: Session, market_id: int) -> list[Bet]:
    return LedgerRepository(session).bets_for_market(market_id)
