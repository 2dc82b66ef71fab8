"""Repository abstractions for database interactions."""

from .automation_repository import (
    CONFIG_ID,
    DISABLED_LOG_TYPE,
    ERROR_LOG_TYPE,
    AutomationRepository,
)
from .ledger_repository import LedgerRepository
from .market_repository import MarketRepository

__all__ = [
    "AutomationRepository",
    "CONFIG_ID",
    "DISABLED_LOG_TYPE",
    "ERROR_LOG_TYPE",
    "LedgerRepository",
    "MarketRepository",
]
