"""Automation config singleton and creation audit log persistence."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain import MarketType
from app.models import AutomatedMarketLog, AutomationConfig, utcnow

CONFIG_ID = 1
ERROR_LOG_TYPE = "error"
DISABLED_LOG_TYPE = "disabled"
_BATTLE_TYPES = (MarketType.BATTLE_RACE.value, MarketType.BATTLE_DUMP.value)


class AutomationRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Config singleton

    def get_config(self) -> AutomationConfig:
        config = self._session.get(AutomationConfig, CONFIG_ID)
        if config is None:
            config = AutomationConfig(id=CONFIG_ID, enabled=False, updated_at=utcnow())
            self._session.add(config)
            self._session.flush()
        return config

    def set_enabled(self, enabled: bool) -> AutomationConfig:
        config = self.get_config()
        config.enabled = bool(enabled)
        config.updated_at = utcnow()
        self._session.flush()
        return config

    def touch_last_run(self, ran_at: datetime) -> AutomationConfig:
        config = self.get_config()
        config.last_run = ran_at
        config.updated_at = utcnow()
        self._session.flush()
        return config

    # ------------------------------------------------------------------
    # Audit log

    def append_log(
        self,
        *,
        question_type: str,
        success: bool,
        market_id: int | None = None,
        token_address: str | None = None,
        token_address2: str | None = None,
        error_message: str | None = None,
        executed_at: datetime | None = None,
    ) -> AutomatedMarketLog:
        record = AutomatedMarketLog(
            execution_time=executed_at or utcnow(),
            market_id=market_id,
            question_type=question_type,
            token_address=token_address,
            token_address2=token_address2,
            success=success,
            error_message=error_message,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def list_logs(self, limit: int = 50) -> list[AutomatedMarketLog]:
        query = (
            select(AutomatedMarketLog)
            .order_by(AutomatedMarketLog.execution_time.desc(), AutomatedMarketLog.id.desc())
            .limit(limit)
        )
        return list(self._session.execute(query).scalars().all())

    def _latest_successful_type(self, question_types) -> MarketType | None:
        query = (
            select(AutomatedMarketLog.question_type)
            .where(
                AutomatedMarketLog.success.is_(True),
                AutomatedMarketLog.question_type.in_(list(question_types)),
            )
            .order_by(AutomatedMarketLog.execution_time.desc(), AutomatedMarketLog.id.desc())
            .limit(1)
        )
        value = self._session.execute(query).scalar_one_or_none()
        return MarketType(value) if value else None

    def last_successful_type(self) -> MarketType | None:
        return self._latest_successful_type(market_type.value for market_type in MarketType)

    def last_battle_type(self) -> MarketType | None:
        return self._latest_successful_type(_BATTLE_TYPES)


__all__ = [
    "AutomationRepository",
    "CONFIG_ID",
    "DISABLED_LOG_TYPE",
    "ERROR_LOG_TYPE",
]
