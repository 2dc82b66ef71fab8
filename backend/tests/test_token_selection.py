from __future__ import annotations

import pytest

from app.domain import MarketType
from app.services.token_selection import (
    NoEligibleCandidateError,
    filter_eligible,
    find_battle_pair,
    is_eligible,
    pick_single_token,
    tokens_match_for_battle,
)

from conftest import address, make_token


def test_single_token_pick_respects_bounds_and_feed_order():
    tiny = make_token("Tiny", size=5_000)
    first = make_token("First", size=400_000)
    second = make_token("Second", size=600_000)

    picked = pick_single_token(MarketType.MARKET_CAP, [tiny, first, second])

    assert picked.address == first.address


def test_used_addresses_are_skipped():
    first = make_token("First")
    second = make_token("Second")

    picked = pick_single_token(MarketType.VOLUME, [first, second], used_addresses={first.address})

    assert picked.address == second.address


def test_holder_bounds_use_holder_count():
    assert not is_eligible(MarketType.HOLDERS, make_token("Few", holders=99))
    assert is_eligible(MarketType.HOLDERS, make_token("Enough", holders=100))
    assert not is_eligible(MarketType.HOLDERS, make_token("Crowded", holders=25_000))


def test_tokens_without_a_name_are_ineligible():
    nameless = make_token("Nameless", name="")
    assert nameless.display_name is None
    assert filter_eligible(MarketType.MARKET_CAP, [nameless]) == []


def test_no_candidate_raises_typed_error():
    with pytest.raises(NoEligibleCandidateError) as excinfo:
        pick_single_token(MarketType.MARKET_CAP, [make_token("Tiny", size=1_000)])

    assert excinfo.value.market_type == MarketType.MARKET_CAP


def test_single_pick_rejects_battle_types():
    with pytest.raises(ValueError):
        pick_single_token(MarketType.BATTLE_RACE, [make_token("First")])


def test_battle_pair_requires_size_and_age_tolerance():
    anchor = make_token("Anchor", size=1_000_000, age=3_600)
    too_big = make_token("Big", size=1_500_000, age=3_600)
    too_old = make_token("Aged", size=1_000_000, age=7_200)
    match = make_token("Match", size=1_200_000, age=4_000)

    first, second = find_battle_pair(MarketType.BATTLE_RACE, [anchor, too_big, too_old, match])

    assert (first.address, second.address) == (anchor.address, match.address)


def test_battle_pair_excludes_used_tokens():
    anchor = make_token("Anchor", size=1_000_000)
    match = make_token("Match", size=1_000_000)
    spare = make_token("Spare", size=1_100_000)

    first, second = find_battle_pair(
        MarketType.BATTLE_DUMP, [anchor, match, spare], used_addresses={address("Anchor")}
    )

    assert {first.address, second.address} == {match.address, spare.address}


def test_battle_pair_needs_minimum_size():
    tiny_a = make_token("TinyA", size=150_000)
    tiny_b = make_token("TinyB", size=150_000)

    with pytest.raises(NoEligibleCandidateError):
        find_battle_pair(MarketType.BATTLE_RACE, [tiny_a, tiny_b])


def test_tolerance_is_relative_to_the_average():
    # |1.0M - 1.35M| / 1.175M is just under 30%.
    assert tokens_match_for_battle(
        make_token("A", size=1_000_000), make_token("B", size=1_350_000)
    )
    assert not tokens_match_for_battle(
        make_token("A", size=1_000_000), make_token("B", size=1_400_000)
    )
