from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from sqlalchemy import create_engine

from app.core.config import Settings
from app.db import create_session_factory, init_db, session_scope
from app.domain import CandidateToken, Candle, TransferOutcome
from pipelines.context import JobContext

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def address(prefix: str) -> str:
    """Build a valid base58 address from a readable prefix."""
    return prefix.ljust(44, "1")


def make_token(
    prefix: str,
    *,
    size: float = 300_000,
    volume: float = 100_000,
    holders: int = 400,
    age: float = 3_600,
    name: str | None = None,
    symbol: str | None = None,
) -> CandidateToken:
    return CandidateToken(
        address=address(prefix),
        name=name if name is not None else prefix,
        symbol=symbol,
        size_metric=size,
        volume_metric=volume,
        holder_count=holders,
        age_seconds=age,
        image_ref=f"https://img.example/{prefix}.png",
    )


class FakeTokenFeed:
    def __init__(self, tokens: list[CandidateToken] | None = None) -> None:
        self.tokens = list(tokens or [])
        self.token_lookup: dict[str, CandidateToken] = {}
        self.candles: dict[tuple[str, str], list[Candle]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.closed = 0

    def list_candidate_tokens(self, *, now: datetime | None = None) -> list[CandidateToken]:
        self.calls.append(("list",))
        if "list" in self.errors:
            raise self.errors["list"]
        return list(self.tokens)

    def get_token(self, token_address: str, *, now: datetime | None = None) -> CandidateToken:
        self.calls.append(("token", token_address))
        if token_address in self.errors:
            raise self.errors[token_address]
        return self.token_lookup[token_address]

    def get_candle_history(self, token_address: str, granularity: str, limit: int) -> list[Candle]:
        self.calls.append(("candles", token_address, granularity, limit))
        if token_address in self.errors:
            raise self.errors[token_address]
        return list(self.candles.get((token_address, granularity), []))

    def close(self) -> None:
        self.closed += 1


class FakeLedger:
    def __init__(self, balance: Decimal = Decimal("1000"), outcomes: list[TransferOutcome] | None = None) -> None:
        self.balance = Decimal(balance)
        self.outcomes = list(outcomes or [])
        self.batches: list[list[Any]] = []
        self.closed = 0

    def get_treasury_balance(self, signer_key: str) -> Decimal:
        return self.balance

    def submit_batch_transfer(self, signer_key: str, transfers) -> TransferOutcome:
        self.batches.append(list(transfers))
        if self.outcomes:
            return self.outcomes.pop(0)
        return TransferOutcome(transfer_ref=f"sig-{len(self.batches)}")

    def close(self) -> None:
        self.closed += 1


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def close(self) -> None:
        self.closed = True

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


@pytest.fixture
def sample_token_payloads() -> list[dict[str, Any]]:
    path = Path(__file__).parent / "data" / "sample_tokens.json"
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def engine(tmp_path):
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'market_engine.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'market_engine.db'}",
        job_secret="job-secret",
        token_feed_api_key="feed-key",
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def feed() -> FakeTokenFeed:
    return FakeTokenFeed()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def job_context(test_settings, session_factory, feed, publisher) -> JobContext:
    return JobContext(
        settings=test_settings,
        session_factory=lambda: session_scope(session_factory),
        feed_factory=lambda: feed,
        publisher=publisher,
        clock=lambda: NOW,
    )
