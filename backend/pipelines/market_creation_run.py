"""Standalone job that creates one automated market per cycle."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Collection, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.domain import CandidateToken, MarketDraft, MarketType
from app.models import ensure_utc
from app.repositories import (
    DISABLED_LOG_TYPE,
    ERROR_LOG_TYPE,
    AutomationRepository,
    MarketRepository,
)
from app.services.events import MARKET_CREATED
from app.services.milestones import (
    MilestoneError,
    MilestoneTarget,
    battle_dump_target,
    battle_race_target,
    expiration_for,
    holder_target,
    market_cap_target,
    volume_target,
)
from app.services.rotation import RotationExhaustedError, RotationSelector, RotationState
from app.services.token_selection import (
    NoEligibleCandidateError,
    find_battle_pair,
    pick_single_token,
)

from .context import JobContext

# Failures that move an automatic cycle on to the next market type.
TYPE_FAILURES = (NoEligibleCandidateError, MilestoneError)


@dataclass(slots=True, frozen=True)
class AutomationConfigSnapshot:
    """Operator toggle read once at the start of a cycle."""

    enabled: bool
    last_run: datetime | None = None


@dataclass(slots=True)
class CreationResult:
    success: bool
    market_id: int | None = None
    market_type: MarketType | None = None
    disabled: bool = False
    error: str | None = None
    failed_types: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "market_id": self.market_id,
            "market_type": self.market_type.value if self.market_type else None,
            "disabled": self.disabled,
            "error": self.error,
            "failed_types": self.failed_types,
        }


def _target_for(market_type: MarketType, tokens: Sequence[CandidateToken]) -> MilestoneTarget:
    first = tokens[0]
    name = first.display_name or first.address
    if market_type == MarketType.MARKET_CAP:
        return market_cap_target(first.size_metric, name)
    if market_type == MarketType.VOLUME:
        return volume_target(first.volume_metric, name)
    if market_type == MarketType.HOLDERS:
        return holder_target(first.holder_count, name)
    second = tokens[1]
    second_name = second.display_name or second.address
    if market_type == MarketType.BATTLE_RACE:
        return battle_race_target(first.size_metric, second.size_metric, name, second_name)
    return battle_dump_target(first.size_metric, second.size_metric, name, second_name)


def build_market_draft(
    market_type: MarketType,
    candidates: Sequence[CandidateToken],
    used_addresses: Collection[str],
    now: datetime,
    *,
    test_mode: bool = False,
    test_mode_minutes: int = 5,
) -> MarketDraft:
    """Choose token(s) for ``market_type`` and compute its target, question and expiry."""
    if market_type.is_battle:
        tokens: tuple[CandidateToken, ...] = find_battle_pair(market_type, candidates, used_addresses)
    else:
        tokens = (pick_single_token(market_type, candidates, used_addresses),)

    milestone = _target_for(market_type, tokens)
    return MarketDraft(
        market_type=market_type,
        question=milestone.question,
        target_value=Decimal(milestone.target),
        expires_at=expiration_for(
            market_type, now, test_mode=test_mode, test_mode_minutes=test_mode_minutes
        ),
        token_address=tokens[0].address,
        token_address2=tokens[1].address if len(tokens) > 1 else None,
        image_url=tokens[0].image_ref,
    )


class MarketCreationPipeline:
    """Run one creation cycle: rotate to a free market type and persist one market."""

    def __init__(self, context: JobContext | None = None) -> None:
        self.context = context or JobContext.from_settings()
        self.settings = self.context.settings

    def load_config(self) -> AutomationConfigSnapshot:
        with self.context.session_factory() as session:
            config = AutomationRepository(session).get_config()
            return AutomationConfigSnapshot(
                enabled=bool(config.enabled), last_run=ensure_utc(config.last_run)
            )

    def run(
        self,
        *,
        config: AutomationConfigSnapshot | None = None,
        forced_type: MarketType | str | None = None,
        test_mode: bool = False,
        now: datetime | None = None,
    ) -> CreationResult:
        now = now or self.context.clock()
        config = config or self.load_config()
        if not config.enabled:
            logger.warning("Automation is disabled, skipping market creation")
            with self.context.session_factory() as session:
                AutomationRepository(session).append_log(
                    question_type=DISABLED_LOG_TYPE, success=True, executed_at=now
                )
            return CreationResult(success=True, disabled=True)

        result = CreationResult(success=False)
        try:
            self._create(result, forced_type=forced_type, test_mode=test_mode, now=now)
        except Exception as exc:  # noqa: BLE001 - any failure ends the cycle with one log row
            message = str(exc) or exc.__class__.__name__
            logger.error("Error creating automated market: {}", message)
            with self.context.session_factory() as session:
                AutomationRepository(session).append_log(
                    question_type=ERROR_LOG_TYPE,
                    success=False,
                    error_message=message,
                    executed_at=now,
                )
            result.success = False
            result.error = message
        return result

    def _create(
        self,
        result: CreationResult,
        *,
        forced_type: MarketType | str | None,
        test_mode: bool,
        now: datetime,
    ) -> None:
        feed = self.context.feed_factory()
        try:
            logger.info("Fetching candidate tokens")
            candidates = feed.list_candidate_tokens(now=now)
        finally:
            feed.close()

        with self.context.session_factory() as session:
            markets = MarketRepository(session)
            automation = AutomationRepository(session)
            selector = RotationSelector(
                RotationState.build(
                    markets.active_automated_types(now),
                    last_battle_type=automation.last_battle_type(),
                    last_successful_type=automation.last_successful_type(),
                )
            )
            used_addresses = markets.used_token_addresses(now)

            if forced_type is not None:
                market_type = selector.resolve_forced(forced_type)
                logger.info("Using forced market type: {}", market_type.value)
                draft = self._draft(market_type, candidates, used_addresses, now, test_mode)
            else:
                market_type, draft = self._rotate(
                    selector, automation, session, result, candidates, used_addresses, now, test_mode
                )

            market = markets.create_market_with_tracking(draft, now=now)
            automation.touch_last_run(now)
            automation.append_log(
                question_type=market_type.value,
                success=True,
                market_id=market.id,
                token_address=draft.token_address,
                token_address2=draft.token_address2,
                executed_at=now,
            )
            market_id = market.id

        self.context.publisher.publish(
            MARKET_CREATED,
            {
                "id": market_id,
                "question": draft.question,
                "category": draft.category,
                "marketType": market_type.value,
                "expiresAt": draft.expires_at.isoformat(),
                "tokenAddress": draft.token_address,
                "tokenAddress2": draft.token_address2,
            },
        )
        logger.info("Created automated market {} (type: {})", market_id, market_type.value)
        result.success = True
        result.market_id = market_id
        result.market_type = market_type

    def _rotate(
        self,
        selector: RotationSelector,
        automation: AutomationRepository,
        session: Session,
        result: CreationResult,
        candidates: Sequence[CandidateToken],
        used_addresses: Collection[str],
        now: datetime,
        test_mode: bool,
    ) -> tuple[MarketType, MarketDraft]:
        failures: dict[MarketType, str] = {}
        while True:
            try:
                market_type = selector.select_next(excluded=failures.keys())
            except RotationExhaustedError:
                raise RotationExhaustedError(failures) from None
            logger.info("Selected market type: {}", market_type.value)
            try:
                return market_type, self._draft(market_type, candidates, used_addresses, now, test_mode)
            except TYPE_FAILURES as exc:
                reason = str(exc)
                failures[market_type] = reason
                result.failed_types[market_type.value] = reason
                logger.warning("Cannot create {} market ({}); trying next type", market_type.value, reason)
                automation.append_log(
                    question_type=market_type.value,
                    success=False,
                    error_message=reason,
                    executed_at=now,
                )
                session.commit()

    def _draft(
        self,
        market_type: MarketType,
        candidates: Sequence[CandidateToken],
        used_addresses: Collection[str],
        now: datetime,
        test_mode: bool,
    ) -> MarketDraft:
        return build_market_draft(
            market_type,
            candidates,
            used_addresses,
            now,
            test_mode=test_mode,
            test_mode_minutes=self.settings.test_mode_expiration_minutes,
        )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the next automated market")
    parser.add_argument(
        "--market-type",
        choices=[market_type.value for market_type in MarketType],
        default=None,
        help="Force a market type instead of rotating (no fallback when it fails)",
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Expire the created market after the short test-mode window",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(result: CreationResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(result.to_dict(), default=str, indent=2))
    logger.info("Creation summary written to {}", path)


def run_creation_job() -> CreationResult:
    context = JobContext.from_settings(get_settings())
    try:
        return MarketCreationPipeline(context).run()
    finally:
        context.close()


def main() -> CreationResult:
    args = _parse_args()
    context = JobContext.from_settings(get_settings())
    try:
        result = MarketCreationPipeline(context).run(
            forced_type=args.market_type, test_mode=args.test_mode
        )
    finally:
        context.close()
    if args.summary_path:
        _write_summary(result, args.summary_path)
    return result


if __name__ == "__main__":
    main()
