"""Standalone job that checks pending automated markets and settles them."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.domain import Candle, MarketOutcome, MarketType, ResolutionStatus
from app.models import ResolutionTracking, ensure_utc
from app.repositories import MarketRepository
from app.services.settlement import SettlementResult, SettlementService
from app.services.token_selection import metric_for

from .context import JobContext, TokenFeed

SINGLE_TOKEN_CHECK_WINDOW = timedelta(minutes=1)
EXPIRY_GRACE_WINDOW = timedelta(minutes=5)


class BattleVerdict(str, Enum):
    TOKEN_A = "token_a"
    TOKEN_B = "token_b"
    TIE = "tie"
    PENDING = "pending"


def first_hit_time(
    candles: Sequence[Candle],
    target: float,
    market_type: MarketType,
    *,
    since: int | None = None,
) -> int | None:
    """Timestamp of the earliest candle meeting the battle condition, scanning chronologically.

    Candles opening before ``since`` (the market's creation) are ignored.
    """
    for candle in sorted(candles, key=lambda item: item.time):
        if since is not None and candle.time < since:
            continue
        if market_type == MarketType.BATTLE_RACE and candle.high >= target:
            return candle.time
        if market_type == MarketType.BATTLE_DUMP and candle.low <= target:
            return candle.time
    return None


def battle_verdict(hit_a: int | None, hit_b: int | None) -> BattleVerdict:
    if hit_a is None and hit_b is None:
        return BattleVerdict.PENDING
    if hit_b is None or (hit_a is not None and hit_a < hit_b):
        return BattleVerdict.TOKEN_A
    if hit_a is None or hit_b < hit_a:
        return BattleVerdict.TOKEN_B
    return BattleVerdict.TIE


_VERDICT_OUTCOMES = {
    BattleVerdict.TOKEN_A: MarketOutcome.YES,
    BattleVerdict.TOKEN_B: MarketOutcome.NO,
}


@dataclass(slots=True)
class ResolutionSummary:
    checked: int = 0
    resolved: int = 0
    expired: int = 0
    refunded: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "resolved": self.resolved,
            "expired": self.expired,
            "refunded": self.refunded,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class ResolutionPipeline:
    """Sweep pending resolution-tracking rows and settle the ones that are decided.

    Rows that already left ``pending`` are never loaded, and every status write
    is guarded on the current status, so overlapping sweeps are harmless.
    """

    def __init__(self, context: JobContext | None = None) -> None:
        self.context = context or JobContext.from_settings()
        self.settings = self.context.settings

    def run(self, *, now: datetime | None = None) -> ResolutionSummary:
        summary = ResolutionSummary()
        feed = self.context.feed_factory()
        ledger = self.context.build_ledger()
        try:
            with self.context.session_factory() as session:
                repo = MarketRepository(session)
                trackings = repo.list_pending_trackings()
                if not trackings:
                    logger.info("No markets needing resolution")
                    return summary

                logger.info("Checking {} pending markets", len(trackings))
                settlement = SettlementService(
                    session,
                    distributor=self.context.build_distributor(ledger),
                    publisher=self.context.publisher,
                )
                for tracking in trackings:
                    market_id = tracking.market_id
                    summary.checked += 1
                    checked_at = now or self.context.clock()
                    try:
                        self._check_market(session, repo, settlement, feed, tracking, checked_at, summary)
                    except Exception as exc:  # noqa: BLE001 - one market must not stop the sweep
                        session.rollback()
                        logger.exception("Error checking market {}", market_id)
                        summary.errors.append({"market_id": market_id, "error": str(exc)})
        finally:
            feed.close()
            if ledger is not None:
                ledger.close()

        logger.info(
            "Checked {} markets: resolved={}, expired={}, refunded={}, errors={}",
            summary.checked,
            summary.resolved,
            summary.expired,
            summary.refunded,
            len(summary.errors),
        )
        return summary

    def _check_market(
        self,
        session: Session,
        repo: MarketRepository,
        settlement: SettlementService,
        feed: TokenFeed,
        tracking: ResolutionTracking,
        now: datetime,
        summary: ResolutionSummary,
    ) -> None:
        market = tracking.market
        market_type = MarketType(tracking.market_type)
        expires_at = ensure_utc(market.expires_at)

        repo.touch_last_checked(tracking.market_id, now)
        session.commit()

        if expires_at is not None and now > expires_at:
            if market_type.is_battle:
                logger.info("Market {} expired without a winner, refunding", market.id)
                self._record(settlement.refund(market, now), summary)
            elif now - expires_at <= EXPIRY_GRACE_WINDOW:
                self._check_single_token(settlement, feed, tracking, now, summary)
            else:
                logger.info("Market {} is past the resolution grace window; expiring", market.id)
                self._record(settlement.refund(market, now), summary)
            return

        if market_type.is_battle:
            self._check_battle(settlement, feed, tracking, now, summary)
        elif expires_at is not None and abs(expires_at - now) <= SINGLE_TOKEN_CHECK_WINDOW:
            self._check_single_token(settlement, feed, tracking, now, summary)
        else:
            summary.skipped += 1

    def _check_single_token(
        self,
        settlement: SettlementService,
        feed: TokenFeed,
        tracking: ResolutionTracking,
        now: datetime,
        summary: ResolutionSummary,
    ) -> None:
        market_type = MarketType(tracking.market_type)
        token = feed.get_token(tracking.token_address, now=now)
        current = metric_for(market_type, token)
        target = float(tracking.target_value)
        outcome = MarketOutcome.YES if current >= target else MarketOutcome.NO
        logger.info(
            "Market {}: current={}, target={}, outcome={}",
            tracking.market_id,
            current,
            target,
            outcome.value,
        )
        self._record(settlement.resolve(tracking.market, outcome, now), summary)

    def _battle_hits(
        self, feed: TokenFeed, tracking: ResolutionTracking, granularity: str, limit: int
    ) -> tuple[int | None, int | None]:
        market_type = MarketType(tracking.market_type)
        target = float(tracking.target_value)
        candles_a = feed.get_candle_history(tracking.token_address, granularity, limit)
        candles_b = feed.get_candle_history(tracking.token_address2, granularity, limit)
        created_at = ensure_utc(tracking.market.created_at)
        since = int(created_at.timestamp()) if created_at is not None else None
        return (
            first_hit_time(candles_a, target, market_type, since=since),
            first_hit_time(candles_b, target, market_type, since=since),
        )

    def _check_battle(
        self,
        settlement: SettlementService,
        feed: TokenFeed,
        tracking: ResolutionTracking,
        now: datetime,
        summary: ResolutionSummary,
    ) -> None:
        market = tracking.market
        if not tracking.token_address2:
            logger.warning("Battle market {} has no second token; refunding", market.id)
            self._record(settlement.refund(market, now), summary)
            return

        hits = self._battle_hits(
            feed, tracking, self.settings.candle_granularity, self.settings.candle_history_limit
        )
        verdict = battle_verdict(*hits)
        if verdict == BattleVerdict.PENDING:
            logger.info("Market {}: neither token hit the target yet", market.id)
            summary.skipped += 1
            return

        if verdict == BattleVerdict.TIE:
            logger.info(
                "Market {}: both tokens hit at {}; re-checking at {}",
                market.id,
                hits[0],
                self.settings.candle_fine_granularity,
            )
            fine_hits = self._battle_hits(
                feed,
                tracking,
                self.settings.candle_fine_granularity,
                self.settings.candle_fine_history_limit,
            )
            verdict = battle_verdict(*fine_hits)
            # The fine series must show both hits in a strict order to decide.
            if verdict == BattleVerdict.TIE or None in fine_hits:
                logger.info("Market {}: still undecided at fine granularity, refunding", market.id)
                self._record(settlement.refund(market, now), summary)
                return

        outcome = _VERDICT_OUTCOMES[verdict]
        logger.info("Market {}: {} reached the target first", market.id, verdict.value)
        self._record(settlement.resolve(market, outcome, now), summary)

    def _record(self, result: SettlementResult | None, summary: ResolutionSummary) -> None:
        if result is None:
            summary.skipped += 1
            return
        if result.tracking_status == ResolutionStatus.RESOLVED:
            summary.resolved += 1
        else:
            summary.expired += 1
        if result.report.refunded:
            summary.refunded += 1


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Check pending automated markets and settle the decided ones",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: ResolutionSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Resolution summary written to {}", path)


def run_resolution_job() -> ResolutionSummary:
    context = JobContext.from_settings(get_settings())
    try:
        return ResolutionPipeline(context).run()
    finally:
        context.close()


def main() -> ResolutionSummary:
    args = _parse_args()
    summary = run_resolution_job()
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
