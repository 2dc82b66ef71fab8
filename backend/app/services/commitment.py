"""Commit-reveal hashes binding a market outcome to a secret.

The hash ``SHA256("{outcome}:{secret}:{market_id}")`` is stored on the market
before the resolution is applied; the secret is only written once the
resolution has been committed, so anyone can later recompute the hash and
confirm the outcome was not changed after the fact.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass

from app.domain import MarketOutcome

SECRET_BYTES = 32


@dataclass(slots=True, frozen=True)
class Commitment:
    outcome: MarketOutcome
    secret: str
    market_id: int
    hash: str


def _outcome_value(outcome: MarketOutcome | str) -> str:
    return outcome.value if isinstance(outcome, MarketOutcome) else str(outcome)


def generate_secret() -> str:
    return secrets.token_hex(SECRET_BYTES)


def commitment_hash(outcome: MarketOutcome | str, secret: str, market_id: int) -> str:
    message = f"{_outcome_value(outcome)}:{secret}:{market_id}"
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


def create_commitment(outcome: MarketOutcome, market_id: int, secret: str | None = None) -> Commitment:
    secret = secret or generate_secret()
    return Commitment(
        outcome=outcome,
        secret=secret,
        market_id=market_id,
        hash=commitment_hash(outcome, secret, market_id),
    )


def verify_commitment(
    expected_hash: str, outcome: MarketOutcome | str, secret: str, market_id: int
) -> bool:
    """True iff ``expected_hash`` matches the hash recomputed from the revealed values."""
    if not expected_hash or not secret:
        return False
    recomputed = commitment_hash(outcome, secret, market_id)
    return hmac.compare_digest(recomputed, expected_hash)


__all__ = [
    "Commitment",
    "commitment_hash",
    "create_commitment",
    "generate_secret",
    "verify_commitment",
]
