"""Round-robin selection of the next automated market type.

Automatic cycles call :meth:`RotationSelector.select_next` repeatedly, excluding
every type that already failed in the cycle. Forced requests go through
:meth:`RotationSelector.resolve_forced`, which never falls back.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from dataclasses import dataclass, field

from app.domain import MarketType

BATTLE_SLOT = "battle"
ROTATION_ORDER: tuple[str, ...] = (
    MarketType.MARKET_CAP.value,
    MarketType.VOLUME.value,
    MarketType.HOLDERS.value,
    BATTLE_SLOT,
)


class RotationExhaustedError(RuntimeError):
    """Every market type was attempted in this cycle and none could be created."""

    def __init__(self, failures: dict[MarketType, str]) -> None:
        details = "; ".join(f"{key.value}: {reason}" for key, reason in failures.items())
        super().__init__(f"All market types exhausted for this cycle ({details or 'none available'})")
        self.failures = dict(failures)


def slot_for(market_type: MarketType) -> str:
    return BATTLE_SLOT if market_type.is_battle else market_type.value


@dataclass(slots=True, frozen=True)
class RotationState:
    """Snapshot rebuilt each cycle from active markets and the audit log."""

    active_types: frozenset[MarketType] = field(default_factory=frozenset)
    last_battle_type: MarketType | None = None
    last_successful_type: MarketType | None = None

    @classmethod
    def build(
        cls,
        active_types: Iterable[MarketType],
        *,
        last_battle_type: MarketType | None = None,
        last_successful_type: MarketType | None = None,
    ) -> "RotationState":
        return cls(
            active_types=frozenset(active_types),
            last_battle_type=last_battle_type,
            last_successful_type=last_successful_type,
        )

    @property
    def active_slots(self) -> frozenset[str]:
        return frozenset(slot_for(market_type) for market_type in self.active_types)


class RotationSelector:
    def __init__(self, state: RotationState) -> None:
        self._state = state

    @property
    def state(self) -> RotationState:
        return self._state

    def next_battle_type(self) -> MarketType:
        if self._state.last_battle_type == MarketType.BATTLE_RACE:
            return MarketType.BATTLE_DUMP
        return MarketType.BATTLE_RACE

    def select_next(self, excluded: Collection[MarketType] = ()) -> MarketType:
        """Pick the first free slot in rotation order, skipping failed types.

        Slots with an active automated market are only reconsidered when every
        slot has one, in which case rotation continues after the last
        successfully created type.
        """
        excluded_slots = {slot_for(market_type) for market_type in excluded}
        active_slots = self._state.active_slots

        if all(slot in active_slots for slot in ROTATION_ORDER):
            candidates = self._round_robin_order()
        else:
            candidates = [slot for slot in ROTATION_ORDER if slot not in active_slots]

        for slot in candidates:
            if slot not in excluded_slots:
                return self._market_type_for(slot)

        raise RotationExhaustedError({market_type: "failed earlier in this cycle" for market_type in excluded})

    def resolve_forced(self, market_type: MarketType | str) -> MarketType:
        """Validate an explicit type request; no rotation and no fallback."""
        try:
            return MarketType(market_type)
        except ValueError as exc:
            raise ValueError(f"Unknown market type: {market_type}") from exc

    def _round_robin_order(self) -> list[str]:
        last = self._state.last_successful_type
        if last is None:
            return list(ROTATION_ORDER)
        start = (ROTATION_ORDER.index(slot_for(last)) + 1) % len(ROTATION_ORDER)
        return [ROTATION_ORDER[(start + offset) % len(ROTATION_ORDER)] for offset in range(len(ROTATION_ORDER))]

    def _market_type_for(self, slot: str) -> MarketType:
        if slot == BATTLE_SLOT:
            return self.next_battle_type()
        return MarketType(slot)


__all__ = [
    "BATTLE_SLOT",
    "ROTATION_ORDER",
    "RotationExhaustedError",
    "RotationSelector",
    "RotationState",
    "slot_for",
]
