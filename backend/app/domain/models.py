"""Typed domain representations shared by the feeds, services and jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class MarketType(str, Enum):
    MARKET_CAP = "market_cap"
    VOLUME = "volume"
    HOLDERS = "holders"
    BATTLE_RACE = "battle_race"
    BATTLE_DUMP = "battle_dump"

    @property
    def is_battle(self) -> bool:
        return self in (MarketType.BATTLE_RACE, MarketType.BATTLE_DUMP)


class MarketStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class MarketOutcome(str, Enum):
    YES = "yes"
    NO = "no"
    REFUNDED = "refunded"


class ResolutionStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class PayoutType(str, Enum):
    POOL = "pool"
    WINNER_TAKES_ALL = "winner-takes-all"


class TransactionType(str, Enum):
    BET = "bet"
    PAYOUT = "payout"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    CONFIRMED = "confirmed"
    CREDITED = "credited"
    FAILED = "failed"


@dataclass(slots=True)
class CandidateToken:
    """Normalized token snapshot returned by the token feed."""

    address: str
    name: str | None
    symbol: str | None
    size_metric: float
    volume_metric: float
    holder_count: int
    age_seconds: float
    image_ref: str | None = None

    @property
    def display_name(self) -> str | None:
        return self.name or self.symbol


@dataclass(slots=True, frozen=True)
class Candle:
    time: int
    high: float
    low: float


@dataclass(slots=True)
class MarketDraft:
    """Everything needed to persist one automated market and its tracking row."""

    market_type: MarketType
    question: str
    target_value: Decimal
    expires_at: datetime
    token_address: str
    token_address2: str | None = None
    image_url: str | None = None
    category: str = "memecoins"


@dataclass(slots=True, frozen=True)
class TransferInstruction:
    recipient: str
    amount: Decimal


@dataclass(slots=True, frozen=True)
class TransferOutcome:
    transfer_ref: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.transfer_ref is not None and self.error is None


@dataclass(slots=True)
class PayoutShare:
    """Amount owed to the owner of one bet."""

    bet_id: int
    user_id: int
    amount: Decimal
    wallet_address: str | None = None
    transfer_ref: str | None = None
    error: str | None = None


@dataclass(slots=True)
class PayoutReport:
    outcome: MarketOutcome
    refunded: bool
    shares: list[PayoutShare] = field(default_factory=list)
    batches_submitted: int = 0
    batches_failed: int = 0
