from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .domain import (
    MarketStatus,
    PayoutType,
    ResolutionStatus,
    TransactionStatus,
)

MONEY = Numeric(20, 9)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Market(Base):
    __tablename__ = "markets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    yes_pool: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    no_pool: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=MarketStatus.ACTIVE.value, index=True
    )
    resolved_outcome: Mapped[str | None] = mapped_column(String(16), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_automated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payout_type: Mapped[str] = mapped_column(String(32), nullable=False, default=PayoutType.POOL.value)
    token_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    token_address2: Mapped[str | None] = mapped_column(String(64), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    commitment_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    commitment_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)

    resolution: Mapped[ResolutionTracking | None] = relationship(
        "ResolutionTracking", back_populates="market", uselist=False
    )
    bets: Mapped[list[Bet]] = relationship("Bet", back_populates="market")

    @property
    def total_pool(self) -> Decimal:
        return Decimal(self.yes_pool or 0) + Decimal(self.no_pool or 0)

    @property
    def is_winner_takes_all(self) -> bool:
        return bool(self.is_private) and self.payout_type == PayoutType.WINNER_TAKES_ALL.value


class ResolutionTracking(Base):
    __tablename__ = "market_resolution_tracking"

    market_id: Mapped[int] = mapped_column(Integer, ForeignKey("markets.id"), primary_key=True)
    market_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_value: Mapped[Decimal] = mapped_column(Numeric(24, 4), nullable=False)
    token_address: Mapped[str] = mapped_column(String(64), nullable=False)
    token_address2: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ResolutionStatus.PENDING.value
    )
    last_checked: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    market: Mapped[Market] = relationship("Market", back_populates="resolution")


class Bet(Base):
    __tablename__ = "bets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(Integer, ForeignKey("markets.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    position: Mapped[str] = mapped_column(String(8), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    market: Mapped[Market] = relationship("Market", back_populates="bets")
    user: Mapped[User] = relationship("User")


class LedgerTransaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    market_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("markets.id"), nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TransactionStatus.CREDITED.value
    )
    transfer_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AutomatedMarketLog(Base):
    __tablename__ = "automated_market_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    market_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("markets.id"), nullable=True)
    question_type: Mapped[str] = mapped_column(String(32), nullable=False)
    token_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    token_address2: Mapped[str | None] = mapped_column(String(64), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class AutomationConfig(Base):
    __tablename__ = "automated_markets_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
