from decimal import Decimal
from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    normalized = urlunparse(
        parsed._replace(
            scheme=scheme,
            query=new_query,
        )
    )
    return normalized


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable SQL echo and FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/market_engine.db",
        description="SQLAlchemy compatible database URL",
    )
    production_database_url: AnyUrl | str | None = Field(
        default=None,
        description="Pooled Postgres connection string used when ENVIRONMENT=production",
    )
    token_feed_base_url: AnyUrl = Field(
        default="https://data.solanatracker.io",
        description="Base URL of the token metrics feed",
    )
    token_feed_api_key: str | None = Field(
        default=None,
        description="API key sent to the token feed as x-api-key",
    )
    token_feed_timeout_seconds: float = Field(
        default=10.0,
        description="Per-request timeout for token feed calls",
        gt=0,
    )
    candle_granularity: str = Field(
        default="5m",
        description="Candle granularity used for battle market checks",
    )
    candle_fine_granularity: str = Field(
        default="1m",
        description="Finer candle granularity used to break identical battle timestamps",
    )
    candle_history_limit: int = Field(
        default=1000,
        description="Number of coarse candles requested per battle check",
        ge=1,
    )
    candle_fine_history_limit: int = Field(
        default=2000,
        description="Number of fine candles requested when breaking a tie",
        ge=1,
    )
    ledger_base_url: AnyUrl | str | None = Field(
        default=None,
        description="Transfer service that signs and submits grouped ledger transfers",
    )
    ledger_timeout_seconds: float = Field(
        default=30.0,
        description="Per-request timeout for the transfer service",
        gt=0,
    )
    treasury_private_key: str | None = Field(
        default=None,
        description="Treasury signer key; on-chain payouts are disabled when unset",
    )
    payout_batch_size: int = Field(
        default=1200,
        description="Maximum number of transfer instructions grouped into one ledger transaction",
    )
    payout_fee_reserve: Decimal = Field(
        default=Decimal("0.00001"),
        description="Fee reserve added to every batch total during the treasury balance check",
    )
    creation_interval_minutes: int = Field(
        default=360,
        description="Interval between automated market creation cycles",
        ge=1,
    )
    resolution_interval_minutes: int = Field(
        default=30,
        description="Interval between resolution sweeps",
        ge=1,
    )
    test_mode_expiration_minutes: int = Field(
        default=5,
        description="Expiration applied to every market type when creating in test mode",
        ge=1,
    )
    job_secret: str | None = Field(
        default=None,
        description="Shared secret required by job and automation admin endpoints",
    )
    realtime_publish_url: AnyUrl | str | None = Field(
        default=None,
        description="Optional HTTP endpoint receiving market events; events are only logged when unset",
    )

    @field_validator("payout_batch_size")
    @classmethod
    def _validate_batch_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("payout_batch_size must be at least 1")
        return value

    @field_validator("payout_fee_reserve")
    @classmethod
    def _validate_fee_reserve(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("payout_fee_reserve must not be negative")
        return value

    @field_validator("candle_granularity", "candle_fine_granularity")
    @classmethod
    def _validate_granularity(cls, value: str) -> str:
        candidate = value.strip()
        if len(candidate) < 2 or not candidate[:-1].isdigit() or candidate[-1] not in "smhd":
            raise ValueError("candle granularity must look like 1m, 5m, 1h or 1d")
        return candidate

    @field_validator("database_url", "production_database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value

        if value.startswith("postgresql+psycopg://") or value.startswith(
            "postgresql+asyncpg://"
        ):
            return value

        normalized = value
        if normalized.startswith("postgres://"):
            normalized = "postgresql://" + normalized[len("postgres://") :]

        return normalized

    @property
    def resolved_database_url(self) -> str:
        environment = self.environment.lower()
        if environment == "production":
            if not self.production_database_url:
                raise ValueError(
                    "PRODUCTION_DATABASE_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.production_database_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def on_chain_payouts_enabled(self) -> bool:
        return bool(self.treasury_private_key and self.ledger_base_url)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
