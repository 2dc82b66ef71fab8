"""Domain models shared across feeds, services and pipelines."""

from .models import (
    Candle,
    CandidateToken,
    MarketDraft,
    MarketOutcome,
    MarketStatus,
    MarketType,
    PayoutReport,
    PayoutShare,
    PayoutType,
    ResolutionStatus,
    TransactionStatus,
    TransactionType,
    TransferInstruction,
    TransferOutcome,
)

__all__ = [
    "Candle",
    "CandidateToken",
    "MarketDraft",
    "MarketOutcome",
    "MarketStatus",
    "MarketType",
    "PayoutReport",
    "PayoutShare",
    "PayoutType",
    "ResolutionStatus",
    "TransactionStatus",
    "TransactionType",
    "TransferInstruction",
    "TransferOutcome",
]
