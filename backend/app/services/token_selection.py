"""Candidate filtering and battle pairing for automated market creation.

Uniqueness against existing automated markets is a linear scan over the set of
addresses already in use, and battle pairing is a first-match O(n^2) walk over
the feed ranking. Both are bounded by the feed's page size.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass

from loguru import logger

from app.domain import CandidateToken, MarketType

BATTLE_TOLERANCE = 0.30


@dataclass(slots=True, frozen=True)
class EligibilityBounds:
    """Half-open [minimum, maximum) range for the metric a market type targets."""

    minimum: float
    maximum: float

    def contains(self, value: float) -> bool:
        return self.minimum <= value < self.maximum


# Upper bounds keep the doubled target under the ladder ceiling; lower bounds keep
# targets off degenerate near-zero values.
ELIGIBILITY_BOUNDS: dict[MarketType, EligibilityBounds] = {
    MarketType.MARKET_CAP: EligibilityBounds(10_000, 50_000_000),
    MarketType.VOLUME: EligibilityBounds(10_000, 50_000_000),
    MarketType.HOLDERS: EligibilityBounds(100, 25_000),
    MarketType.BATTLE_RACE: EligibilityBounds(200_000, 50_000_000),
    MarketType.BATTLE_DUMP: EligibilityBounds(200_000, 50_000_000),
}


class NoEligibleCandidateError(LookupError):
    """No unused candidate (or candidate pair) satisfies a market type."""

    def __init__(self, market_type: MarketType, reason: str) -> None:
        super().__init__(f"{market_type.value}: {reason}")
        self.market_type = market_type
        self.reason = reason


def metric_for(market_type: MarketType, token: CandidateToken) -> float:
    if market_type == MarketType.VOLUME:
        return token.volume_metric
    if market_type == MarketType.HOLDERS:
        return float(token.holder_count)
    return token.size_metric


def is_eligible(market_type: MarketType, token: CandidateToken) -> bool:
    if not token.address or not token.display_name:
        return False
    return ELIGIBILITY_BOUNDS[market_type].contains(metric_for(market_type, token))


def filter_eligible(
    market_type: MarketType,
    candidates: Iterable[CandidateToken],
    used_addresses: Collection[str] = (),
) -> list[CandidateToken]:
    """Keep feed order; drop used tokens and tokens outside the type's bounds."""
    eligible: list[CandidateToken] = []
    for token in candidates:
        if token.address in used_addresses:
            continue
        if not is_eligible(market_type, token):
            logger.debug(
                "Skipping {} for {}: metric {} outside bounds",
                token.address,
                market_type.value,
                metric_for(market_type, token),
            )
            continue
        eligible.append(token)
    return eligible


def pick_single_token(
    market_type: MarketType,
    candidates: Sequence[CandidateToken],
    used_addresses: Collection[str] = (),
) -> CandidateToken:
    if market_type.is_battle:
        raise ValueError(f"{market_type.value} needs a token pair, not a single token")
    eligible = filter_eligible(market_type, candidates, used_addresses)
    if not eligible:
        raise NoEligibleCandidateError(
            market_type, f"no unused eligible token among {len(candidates)} candidates"
        )
    return eligible[0]


def _within_tolerance(first: float, second: float, tolerance: float) -> bool:
    average = (first + second) / 2
    if average <= 0:
        return True
    return abs(first - second) / average <= tolerance


def tokens_match_for_battle(
    first: CandidateToken,
    second: CandidateToken,
    tolerance: float = BATTLE_TOLERANCE,
) -> bool:
    return _within_tolerance(
        first.size_metric, second.size_metric, tolerance
    ) and _within_tolerance(first.age_seconds, second.age_seconds, tolerance)


def find_battle_pair(
    market_type: MarketType,
    candidates: Sequence[CandidateToken],
    used_addresses: Collection[str] = (),
    tolerance: float = BATTLE_TOLERANCE,
) -> tuple[CandidateToken, CandidateToken]:
    """Return the first pair (in feed order) whose size and age are close enough."""
    if not market_type.is_battle:
        raise ValueError(f"{market_type.value} is not a battle market type")
    pool = filter_eligible(market_type, candidates, used_addresses)
    for index, first in enumerate(pool):
        for second in pool[index + 1 :]:
            if first.address == second.address:
                continue
            if tokens_match_for_battle(first, second, tolerance):
                return first, second
    raise NoEligibleCandidateError(
        market_type, f"no matching token pair among {len(pool)} eligible candidates"
    )


__all__ = [
    "BATTLE_TOLERANCE",
    "ELIGIBILITY_BOUNDS",
    "EligibilityBounds",
    "NoEligibleCandidateError",
    "filter_eligible",
    "find_battle_pair",
    "is_eligible",
    "metric_for",
    "pick_single_token",
    "tokens_match_for_battle",
]
