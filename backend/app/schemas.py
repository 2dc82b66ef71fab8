from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.domain import MarketType


class AutomationConfig(BaseModel):
    enabled: bool
    last_run: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class AutomationConfigUpdate(BaseModel):
    enabled: bool


class AutomationLog(BaseModel):
    id: int
    execution_time: datetime
    market_id: int | None = None
    question_type: str
    token_address: str | None = None
    token_address2: str | None = None
    success: bool
    error_message: str | None = None

    model_config = {"from_attributes": True}


class AutomationLogList(BaseModel):
    total: int
    items: list[AutomationLog]


class CreateMarketRequest(BaseModel):
    market_type: MarketType | None = Field(
        default=None,
        description="Force this market type; omitted means the normal rotation with fallback",
    )
    test_mode: bool = Field(default=False, description="Use the short test-mode expiration")


class CreationResult(BaseModel):
    success: bool
    market_id: int | None = None
    market_type: MarketType | None = None
    disabled: bool = False
    error: str | None = None
    failed_types: dict[str, str] = Field(default_factory=dict)


class ResolutionSummary(BaseModel):
    checked: int
    resolved: int
    expired: int
    refunded: int
    skipped: int
    errors: list[dict[str, Any]] = Field(default_factory=list)


class TreasuryBalance(BaseModel):
    balance: float
    reserve: float
    available: float

    @field_validator("balance", "reserve", "available", mode="before")
    @classmethod
    def _coerce_decimal(cls, value: Any) -> float:
        if isinstance(value, Decimal):
            return float(value)
        return value


class CommitmentAudit(BaseModel):
    market_id: int
    status: str
    resolved_outcome: str | None = None
    commitment_hash: str | None = None
    commitment_secret: str | None = None
    verified: bool | None = Field(
        default=None,
        description="Null until the secret is revealed; otherwise whether the hash recomputes",
    )
