"""Milestone ladders, target rounding and question text for automated markets."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from app.domain import MarketType

MARKET_CAP_MILESTONES: tuple[int, ...] = (
    250_000,
    500_000,
    750_000,
    1_000_000,
    2_000_000,
    3_000_000,
    5_000_000,
    10_000_000,
    20_000_000,
    50_000_000,
    100_000_000,
)
VOLUME_MILESTONES: tuple[int, ...] = MARKET_CAP_MILESTONES
HOLDER_MILESTONES: tuple[int, ...] = (
    500,
    1_000,
    2_000,
    3_000,
    5_000,
    7_500,
    10_000,
    15_000,
    20_000,
    30_000,
    50_000,
)

MIN_HOLDERS = 100
DUMP_ROUNDING_STEP = 100_000
DUMP_TARGET_FLOOR = 100_000
HOLDER_BUMP_FACTOR = 1.1

EXPIRATION_WINDOWS: dict[MarketType, timedelta] = {
    MarketType.MARKET_CAP: timedelta(minutes=120),
    MarketType.VOLUME: timedelta(days=1),
    MarketType.HOLDERS: timedelta(days=1),
    MarketType.BATTLE_RACE: timedelta(days=2),
    MarketType.BATTLE_DUMP: timedelta(days=2),
}


class MilestoneError(ValueError):
    """Raised when a metric value sits outside the range a ladder can target."""


@dataclass(slots=True, frozen=True)
class MilestoneTarget:
    target: int
    question: str


def round_up_to_milestone(value: float, milestones: Sequence[int]) -> int:
    """Return the first milestone >= value, or the ladder maximum when value exceeds all."""
    for milestone in milestones:
        if milestone >= value:
            return milestone
    return milestones[-1]


def round_to_nearest(value: float, step: int) -> int:
    # Half-up, matching how the dump targets were always quoted.
    return int(math.floor(value / step + 0.5)) * step


def format_money(value: float) -> str:
    if value >= 1_000_000:
        return f"${value / 1_000_000:.1f}M"
    return f"${value / 1_000:.0f}K"


def format_count(value: int) -> str:
    if value >= 1_000:
        return f"{value / 1_000:.1f}K"
    return str(value)


def market_cap_target(current: float, token_name: str = "this token") -> MilestoneTarget:
    ceiling = MARKET_CAP_MILESTONES[-1]
    if current >= ceiling:
        raise MilestoneError(
            f"market cap {current} is already above every milestone ({ceiling})"
        )
    target = round_up_to_milestone(current * 2, MARKET_CAP_MILESTONES)
    question = (
        f"Will {token_name}'s current market cap be above {format_money(target)} "
        "after 120 minutes?"
    )
    return MilestoneTarget(target=target, question=question)


def volume_target(current: float, token_name: str = "this token") -> MilestoneTarget:
    ceiling = VOLUME_MILESTONES[-1]
    if current >= ceiling:
        raise MilestoneError(f"24h volume {current} is already above every milestone ({ceiling})")
    target = round_up_to_milestone(current * 2, VOLUME_MILESTONES)
    question = (
        f"Will {token_name}'s current 24h volume be above {format_money(target)} "
        "after 1 day?"
    )
    return MilestoneTarget(target=target, question=question)


def holder_target(current: int, token_name: str = "this token") -> MilestoneTarget:
    if current < MIN_HOLDERS:
        raise MilestoneError(f"holder count {current} is below the {MIN_HOLDERS} floor")
    target = round_up_to_milestone(current * 2, HOLDER_MILESTONES)
    if target <= current:
        target = round_up_to_milestone(math.ceil(current * HOLDER_BUMP_FACTOR), HOLDER_MILESTONES)
    if target <= current:
        raise MilestoneError(
            f"holder count {current} leaves no milestone above it ({HOLDER_MILESTONES[-1]})"
        )
    question = f"Will {token_name} have more than {format_count(target)} holders after 1 day?"
    return MilestoneTarget(target=target, question=question)


def battle_race_target(
    size_a: float, size_b: float, name_a: str = "Token A", name_b: str = "Token B"
) -> MilestoneTarget:
    # The weaker token sets the pace so both sides can realistically get there.
    target = round_up_to_milestone(min(size_a, size_b) * 2, MARKET_CAP_MILESTONES)
    question = (
        f"Which token will reach {format_money(target)} market cap first: "
        f"{name_a} or {name_b}?"
    )
    return MilestoneTarget(target=target, question=question)


def battle_dump_target(
    size_a: float, size_b: float, name_a: str = "Token A", name_b: str = "Token B"
) -> MilestoneTarget:
    halved = min(size_a, size_b) * 0.5
    target = max(DUMP_TARGET_FLOOR, round_to_nearest(halved, DUMP_ROUNDING_STEP))
    question = (
        f"Which token will dump 50% first (to {format_money(target)} market cap): "
        f"{name_a} or {name_b}?"
    )
    return MilestoneTarget(target=target, question=question)


def expiration_for(
    market_type: MarketType,
    now: datetime,
    *,
    test_mode: bool = False,
    test_mode_minutes: int = 5,
) -> datetime:
    if test_mode:
        return now + timedelta(minutes=test_mode_minutes)
    return now + EXPIRATION_WINDOWS[market_type]


__all__ = [
    "EXPIRATION_WINDOWS",
    "HOLDER_MILESTONES",
    "MARKET_CAP_MILESTONES",
    "MIN_HOLDERS",
    "MilestoneError",
    "MilestoneTarget",
    "VOLUME_MILESTONES",
    "battle_dump_target",
    "battle_race_target",
    "expiration_for",
    "format_count",
    "format_money",
    "holder_target",
    "market_cap_target",
    "round_to_nearest",
    "round_up_to_milestone",
    "volume_target",
]
