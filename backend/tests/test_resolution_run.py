from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app import crud
from app.db import session_scope
from app.domain import (
    Candle,
    MarketDraft,
    MarketOutcome,
    MarketType,
    ResolutionStatus,
    TransactionStatus,
    TransactionType,
    TransferOutcome,
)
from app.models import User, ensure_utc
from app.repositories import LedgerRepository, MarketRepository
from app.services.automation_service import AutomationService
from app.services.commitment import verify_commitment
from app.services.settlement import SettlementService
from pipelines.context import JobContext
from pipelines.resolution_run import (
    BattleVerdict,
    ResolutionPipeline,
    battle_verdict,
    first_hit_time,
    run_resolution_job,
)

from conftest import NOW, FakeLedger, address, make_token


def _seed_market(
    session_factory,
    market_type: MarketType,
    *,
    target: int,
    expires_in: timedelta,
    token: str = "Alpha",
    token2: str | None = None,
    bets=(),
) -> int:
    with session_scope(session_factory) as session:
        draft = MarketDraft(
            market_type=market_type,
            question=f"{market_type.value} test market",
            target_value=Decimal(target),
            expires_at=NOW + expires_in,
            token_address=address(token),
            token_address2=address(token2) if token2 else None,
        )
        market = crud.create_automated_market(session, draft, now=NOW - timedelta(hours=1))
        for wallet, position, amount in bets:
            user = crud.create_user(session, wallet if "-" in wallet else address(wallet))
            crud.place_bet(session, market, user, position, Decimal(amount))
        return market.id


def _market(session_factory, market_id):
    with session_scope(session_factory) as session:
        return MarketRepository(session).get_market(market_id)


def _balance(session_factory, wallet: str) -> Decimal:
    with session_scope(session_factory) as session:
        return session.execute(
            select(User.balance).where(User.wallet_address == address(wallet))
        ).scalar_one()


def _transactions(session_factory, market_id):
    with session_scope(session_factory) as session:
        return LedgerRepository(session).list_transactions(market_id=market_id)


# Seeded markets open an hour before NOW; candle times below are offsets from then.
OPENED_AT = int((NOW - timedelta(hours=1)).timestamp())


def _candles(*points) -> list[Candle]:
    return [Candle(time=OPENED_AT + time, high=high, low=low) for time, high, low in points]


def test_first_hit_time_scans_chronologically():
    candles = [Candle(1600, 3.0, 1.0), Candle(1300, 2.5, 1.0), Candle(1000, 1.0, 0.5)]

    assert first_hit_time(candles, 2.0, MarketType.BATTLE_RACE) == 1300
    assert first_hit_time(candles, 0.5, MarketType.BATTLE_DUMP) == 1000
    assert first_hit_time(candles, 5.0, MarketType.BATTLE_RACE) is None


def test_first_hit_time_ignores_candles_before_the_market_opened():
    candles = [Candle(1000, 1.0, 0.5), Candle(1300, 2.5, 1.0)]

    assert first_hit_time(candles, 0.5, MarketType.BATTLE_DUMP, since=1200) is None
    assert first_hit_time(candles, 2.0, MarketType.BATTLE_RACE, since=1300) == 1300


@pytest.mark.parametrize(
    ("hit_a", "hit_b", "verdict"),
    [
        (None, None, BattleVerdict.PENDING),
        (100, None, BattleVerdict.TOKEN_A),
        (None, 100, BattleVerdict.TOKEN_B),
        (100, 200, BattleVerdict.TOKEN_A),
        (300, 200, BattleVerdict.TOKEN_B),
        (200, 200, BattleVerdict.TIE),
    ],
)
def test_battle_verdict(hit_a, hit_b, verdict):
    assert battle_verdict(hit_a, hit_b) == verdict


def test_race_battle_pays_out_the_first_token(job_context, session_factory, feed, publisher):
    market_id = _seed_market(
        session_factory,
        MarketType.BATTLE_RACE,
        target=2_000_000,
        expires_in=timedelta(days=1),
        token2="Beta",
        bets=[("Backer", "yes", "3"), ("Doubter", "no", "1")],
    )
    feed.candles[(address("Alpha"), "5m")] = _candles((1000, 1_500_000, 0), (1300, 2_100_000, 0))
    feed.candles[(address("Beta"), "5m")] = _candles((1000, 1_900_000, 0), (1600, 2_500_000, 0))

    summary = ResolutionPipeline(job_context).run()

    assert summary.to_dict() == {
        "checked": 1,
        "resolved": 1,
        "expired": 0,
        "refunded": 0,
        "skipped": 0,
        "errors": [],
    }
    market = _market(session_factory, market_id)
    assert market.status == "resolved"
    assert market.resolved_outcome == "yes"
    assert market.probability == 100
    assert ensure_utc(market.resolved_at) == NOW
    assert market.resolution.status == ResolutionStatus.RESOLVED.value
    assert verify_commitment(market.commitment_hash, "yes", market.commitment_secret, market_id)

    # No treasury signer: the winner is credited on the internal ledger.
    assert _balance(session_factory, "Backer") == Decimal("4")
    assert _balance(session_factory, "Doubter") == Decimal("0")
    [payout] = _transactions(session_factory, market_id)
    assert payout.type == TransactionType.PAYOUT.value
    assert payout.status == TransactionStatus.CREDITED.value
    assert payout.amount == Decimal("4")

    assert publisher.types() == ["market:resolved", "market:updated", "balance:updated"]


def test_unsorted_candles_are_scanned_in_time_order(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.BATTLE_RACE,
        target=2_000_000,
        expires_in=timedelta(days=1),
        token2="Beta",
    )
    feed.candles[(address("Alpha"), "5m")] = _candles((1600, 3_000_000, 0), (1300, 2_100_000, 0))
    feed.candles[(address("Beta"), "5m")] = _candles((1500, 2_200_000, 0))

    ResolutionPipeline(job_context).run()

    assert _market(session_factory, market_id).resolved_outcome == "yes"


def test_dump_tie_at_both_granularities_refunds(job_context, session_factory, feed, publisher):
    market_id = _seed_market(
        session_factory,
        MarketType.BATTLE_DUMP,
        target=500_000,
        expires_in=timedelta(days=1),
        token2="Beta",
        bets=[("Backer", "yes", "2"), ("Doubter", "no", "1.5")],
    )
    for token in ("Alpha", "Beta"):
        feed.candles[(address(token), "5m")] = _candles((1000, 0, 900_000), (1300, 0, 450_000))
        feed.candles[(address(token), "1m")] = _candles((1320, 0, 480_000))

    summary = ResolutionPipeline(job_context).run()

    assert (summary.resolved, summary.expired, summary.refunded) == (0, 1, 1)
    assert ("candles", address("Alpha"), "1m", 2000) in feed.calls
    market = _market(session_factory, market_id)
    assert market.resolved_outcome == MarketOutcome.REFUNDED.value
    assert market.resolution.status == ResolutionStatus.EXPIRED.value
    assert market.yes_pool == 0 and market.no_pool == 0
    assert market.probability == 50
    assert _balance(session_factory, "Backer") == Decimal("2")
    assert _balance(session_factory, "Doubter") == Decimal("1.5")
    assert {tx.type for tx in _transactions(session_factory, market_id)} == {"refund"}
    assert "market:resolved" not in publisher.types()
    assert publisher.types().count("balance:updated") == 2


def test_fine_candles_break_a_coarse_tie(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.BATTLE_DUMP,
        target=500_000,
        expires_in=timedelta(days=1),
        token2="Beta",
    )
    for token in ("Alpha", "Beta"):
        feed.candles[(address(token), "5m")] = _candles((1300, 0, 450_000))
    feed.candles[(address("Alpha"), "1m")] = _candles((1380, 0, 490_000))
    feed.candles[(address("Beta"), "1m")] = _candles((1320, 0, 470_000))

    ResolutionPipeline(job_context).run()

    market = _market(session_factory, market_id)
    assert market.resolved_outcome == "no"
    assert market.probability == 0


def test_fine_candles_missing_a_hit_refund(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.BATTLE_RACE,
        target=2_000_000,
        expires_in=timedelta(days=1),
        token2="Beta",
    )
    for token in ("Alpha", "Beta"):
        feed.candles[(address(token), "5m")] = _candles((1300, 2_500_000, 0))
    feed.candles[(address("Alpha"), "1m")] = _candles((1320, 2_100_000, 0))

    ResolutionPipeline(job_context).run()

    assert _market(session_factory, market_id).resolved_outcome == "refunded"


def test_battle_without_hits_stays_pending(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.BATTLE_RACE,
        target=2_000_000,
        expires_in=timedelta(days=1),
        token2="Beta",
    )

    summary = ResolutionPipeline(job_context).run()

    assert summary.skipped == 1
    market = _market(session_factory, market_id)
    assert market.status == "active"
    assert market.resolution.status == ResolutionStatus.PENDING.value
    assert ensure_utc(market.resolution.last_checked) == NOW


def test_single_token_inside_the_check_window_without_winners(
    job_context, session_factory, feed, publisher
):
    market_id = _seed_market(
        session_factory,
        MarketType.MARKET_CAP,
        target=750_000,
        expires_in=timedelta(seconds=30),
        bets=[("Backer", "yes", "5")],
    )
    feed.token_lookup[address("Alpha")] = make_token("Alpha", size=700_000)

    summary = ResolutionPipeline(job_context).run()

    assert (summary.resolved, summary.refunded) == (1, 1)
    market = _market(session_factory, market_id)
    # Nobody backed "no": stakes go back but the market keeps its outcome and pools.
    assert market.resolved_outcome == "no"
    assert market.resolution.status == ResolutionStatus.RESOLVED.value
    assert market.yes_pool == Decimal("5")
    assert _balance(session_factory, "Backer") == Decimal("5")
    [refund] = _transactions(session_factory, market_id)
    assert refund.type == TransactionType.REFUND.value
    assert publisher.types() == ["market:resolved", "market:updated", "balance:updated"]


def test_single_token_inside_the_grace_window_is_still_checked(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.HOLDERS,
        target=500,
        expires_in=-timedelta(minutes=3),
    )
    feed.token_lookup[address("Alpha")] = make_token("Alpha", holders=600)

    ResolutionPipeline(job_context).run()

    market = _market(session_factory, market_id)
    assert market.resolved_outcome == "yes"
    assert market.resolution.status == ResolutionStatus.RESOLVED.value


def test_single_token_past_the_grace_window_is_refunded(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.VOLUME,
        target=250_000,
        expires_in=-timedelta(minutes=10),
        bets=[("Backer", "no", "1")],
    )

    summary = ResolutionPipeline(job_context).run()

    assert summary.expired == 1
    assert not any(call[0] == "token" for call in feed.calls)
    market = _market(session_factory, market_id)
    assert market.resolved_outcome == "refunded"
    assert market.resolution.status == ResolutionStatus.EXPIRED.value
    assert _balance(session_factory, "Backer") == Decimal("1")


def test_single_token_outside_the_window_is_skipped(job_context, session_factory, feed):
    _seed_market(session_factory, MarketType.MARKET_CAP, target=750_000, expires_in=timedelta(hours=1))

    summary = ResolutionPipeline(job_context).run()

    assert summary.skipped == 1
    assert feed.calls == []


def test_expired_battle_refunds_without_fetching_candles(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.BATTLE_DUMP,
        target=500_000,
        expires_in=-timedelta(minutes=1),
        token2="Beta",
    )

    summary = ResolutionPipeline(job_context).run()

    assert summary.expired == 1
    assert feed.calls == []
    assert _market(session_factory, market_id).resolution.status == ResolutionStatus.EXPIRED.value


def test_sweeps_are_idempotent(job_context, session_factory, feed, publisher):
    market_id = _seed_market(
        session_factory,
        MarketType.HOLDERS,
        target=500,
        expires_in=timedelta(seconds=10),
        bets=[("Backer", "yes", "2")],
    )
    feed.token_lookup[address("Alpha")] = make_token("Alpha", holders=900)
    pipeline = ResolutionPipeline(job_context)

    pipeline.run()
    second = pipeline.run()

    assert second.checked == 0
    assert _balance(session_factory, "Backer") == Decimal("2")
    assert len(_transactions(session_factory, market_id)) == 1
    assert publisher.types().count("market:resolved") == 1


def test_settling_twice_is_a_no_op(session_factory):
    market_id = _seed_market(
        session_factory, MarketType.MARKET_CAP, target=750_000, expires_in=timedelta(minutes=1)
    )

    with session_scope(session_factory) as session:
        service = SettlementService(session)
        market = MarketRepository(session).get_market(market_id)
        first = service.resolve(market, MarketOutcome.YES, NOW)
        second = service.refund(market, NOW)

    assert first.commitment_verified
    assert second is None
    market = _market(session_factory, market_id)
    assert market.resolved_outcome == "yes"
    assert verify_commitment(market.commitment_hash, "yes", market.commitment_secret, market_id)


def test_one_failing_market_does_not_stop_the_sweep(job_context, session_factory, feed):
    stuck_id = _seed_market(
        session_factory,
        MarketType.MARKET_CAP,
        target=750_000,
        expires_in=timedelta(seconds=20),
        token="Stuck",
    )
    healthy_id = _seed_market(
        session_factory,
        MarketType.MARKET_CAP,
        target=750_000,
        expires_in=timedelta(seconds=20),
        token="Healthy",
    )
    feed.errors[address("Stuck")] = RuntimeError("feed down")
    feed.token_lookup[address("Healthy")] = make_token("Healthy", size=900_000)

    summary = ResolutionPipeline(job_context).run()

    assert summary.errors == [{"market_id": stuck_id, "error": "feed down"}]
    assert summary.resolved == 1
    stuck = _market(session_factory, stuck_id)
    assert stuck.resolution.status == ResolutionStatus.PENDING.value
    assert ensure_utc(stuck.resolution.last_checked) == NOW
    assert _market(session_factory, healthy_id).resolved_outcome == "yes"


def _on_chain_context(job_context: JobContext, ledger: FakeLedger) -> JobContext:
    settings = job_context.settings.model_copy(
        update={
            "treasury_private_key": "treasury-signer",
            "ledger_base_url": "https://ledger.example",
            "payout_batch_size": 2,
        }
    )
    return JobContext(
        settings=settings,
        session_factory=job_context.session_factory,
        feed_factory=job_context.feed_factory,
        publisher=job_context.publisher,
        ledger_factory=lambda: ledger,
        clock=job_context.clock,
    )


def test_on_chain_payouts_are_batched_and_recorded(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.MARKET_CAP,
        target=750_000,
        expires_in=timedelta(seconds=30),
        bets=[
            ("WinnerA", "yes", "1"),
            ("WinnerB", "yes", "1"),
            ("WinnerC", "yes", "2"),
            ("bad-wallet", "yes", "4"),
            ("Doubter", "no", "8"),
        ],
    )
    feed.token_lookup[address("Alpha")] = make_token("Alpha", size=800_000)
    ledger = FakeLedger(
        balance=Decimal("100"),
        outcomes=[TransferOutcome(transfer_ref="sig-ok"), TransferOutcome(error="rpc down")],
    )

    ResolutionPipeline(_on_chain_context(job_context, ledger)).run()

    assert [len(batch) for batch in ledger.batches] == [2, 1]
    assert ledger.batches[0][0].amount == Decimal("2")
    payouts = {tx.user_id: tx for tx in _transactions(session_factory, market_id)}
    with session_scope(session_factory) as session:
        users = {user.wallet_address: user.id for user in session.execute(select(User)).scalars()}

    confirmed = payouts[users[address("WinnerA")]]
    assert confirmed.status == TransactionStatus.CONFIRMED.value
    assert confirmed.transfer_ref == "sig-ok"
    assert _balance(session_factory, "WinnerA") == Decimal("0")

    failed = payouts[users[address("WinnerC")]]
    assert failed.status == TransactionStatus.FAILED.value
    assert failed.error_message == "rpc down"
    assert _balance(session_factory, "WinnerC") == Decimal("4")

    invalid = payouts[users["bad-wallet"]]
    assert invalid.status == TransactionStatus.FAILED.value
    assert invalid.error_message.startswith("Invalid address")

    assert users[address("Doubter")] not in payouts


def test_commitment_audit_after_resolution(job_context, session_factory, feed, db_session):
    market_id = _seed_market(
        session_factory, MarketType.MARKET_CAP, target=750_000, expires_in=timedelta(seconds=5)
    )
    feed.token_lookup[address("Alpha")] = make_token("Alpha", size=750_000)

    ResolutionPipeline(job_context).run()
    audit = AutomationService(db_session).get_commitment(market_id)

    assert audit.status == "resolved"
    assert audit.resolved_outcome == "yes"
    assert audit.verified is True
    assert len(audit.commitment_hash) == 64


def test_dump_before_the_market_opened_does_not_count(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.BATTLE_DUMP,
        target=500_000,
        expires_in=timedelta(days=1),
        token2="Beta",
    )
    feed.candles[(address("Alpha"), "5m")] = _candles((-600, 0, 300_000), (600, 0, 900_000))
    feed.candles[(address("Beta"), "5m")] = _candles((600, 0, 800_000))

    summary = ResolutionPipeline(job_context).run()

    assert summary.skipped == 1
    assert _market(session_factory, market_id).resolution.status == ResolutionStatus.PENDING.value


def test_failed_bookkeeping_after_transfer_never_pays_twice(job_context, session_factory, feed):
    market_id = _seed_market(
        session_factory,
        MarketType.MARKET_CAP,
        target=750_000,
        expires_in=timedelta(seconds=30),
        bets=[("WinnerA", "yes", "1"), ("Doubter", "no", "1")],
    )
    feed.token_lookup[address("Alpha")] = make_token("Alpha", size=800_000)
    ledger = FakeLedger(balance=Decimal("100"))
    pipeline = ResolutionPipeline(_on_chain_context(job_context, ledger))
    record_transaction = LedgerRepository.record_transaction
    failures: list[int] = []

    def fail_once(self, **kwargs):
        if not failures:
            failures.append(kwargs["user_id"])
            raise RuntimeError("db hiccup")
        return record_transaction(self, **kwargs)

    with patch.object(LedgerRepository, "record_transaction", fail_once):
        first = pipeline.run()
        second = pipeline.run()

    assert first.errors == [{"market_id": market_id, "error": "db hiccup"}]
    assert second.checked == 0
    assert len(ledger.batches) == 1
    assert ledger.closed == 2
    market = _market(session_factory, market_id)
    assert market.status == "resolved"
    assert market.resolution.status == ResolutionStatus.RESOLVED.value
    assert verify_commitment(market.commitment_hash, "yes", market.commitment_secret, market_id)


def test_sweep_that_loses_the_claim_writes_no_commitment(session_factory, monkeypatch):
    market_id = _seed_market(
        session_factory,
        MarketType.MARKET_CAP,
        target=750_000,
        expires_in=timedelta(minutes=1),
        bets=[("Backer", "yes", "2")],
    )
    results = {}

    with session_scope(session_factory) as session_a, session_scope(session_factory) as session_b:
        sweep_a = SettlementService(session_a)
        sweep_b = SettlementService(session_b)
        market_a = MarketRepository(session_a).get_market(market_id)
        market_b = MarketRepository(session_b).get_market(market_id)
        claim = sweep_a._markets.transition_tracking

        def sweep_b_first(target_id, status):
            results["b"] = sweep_b.refund(market_b, NOW)
            return claim(target_id, status)

        monkeypatch.setattr(sweep_a._markets, "transition_tracking", sweep_b_first)
        results["a"] = sweep_a.resolve(market_a, MarketOutcome.YES, NOW)

    assert results["a"] is None
    assert results["b"].commitment_verified
    market = _market(session_factory, market_id)
    assert market.resolved_outcome == MarketOutcome.REFUNDED.value
    assert verify_commitment(market.commitment_hash, "refunded", market.commitment_secret, market_id)
    assert _balance(session_factory, "Backer") == Decimal("2")
    assert len(_transactions(session_factory, market_id)) == 1


def test_sweep_arriving_mid_settlement_leaves_the_commitment_intact(
    session_factory, db_session, monkeypatch
):
    market_id = _seed_market(
        session_factory,
        MarketType.MARKET_CAP,
        target=750_000,
        expires_in=timedelta(minutes=1),
        bets=[("Backer", "yes", "2")],
    )
    results = {}

    with session_scope(session_factory) as session_a, session_scope(session_factory) as session_b:
        sweep_a = SettlementService(session_a)
        sweep_b = SettlementService(session_b)
        market_a = MarketRepository(session_a).get_market(market_id)
        market_b = MarketRepository(session_b).get_market(market_id)
        reveal = sweep_a._markets.reveal_commitment_secret

        def sweep_b_before_reveal(target_id, secret):
            results["b"] = sweep_b.refund(market_b, NOW)
            reveal(target_id, secret)

        monkeypatch.setattr(sweep_a._markets, "reveal_commitment_secret", sweep_b_before_reveal)
        results["a"] = sweep_a.resolve(market_a, MarketOutcome.YES, NOW)

    assert results["b"] is None
    assert results["a"].commitment_verified
    audit = AutomationService(db_session).get_commitment(market_id)
    assert audit.resolved_outcome == "yes"
    assert audit.verified is True
    assert len(_transactions(session_factory, market_id)) == 1


def test_run_resolution_job_closes_its_context(job_context, publisher):
    with patch("pipelines.resolution_run.JobContext") as mock_context:
        mock_context.from_settings.return_value = job_context
        run_resolution_job()

    assert publisher.closed is True
