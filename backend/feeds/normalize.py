from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as date_parser

from app.domain import Candle, CandidateToken

_BASE58_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
# Creation times above this are epoch milliseconds rather than seconds.
_EPOCH_MILLIS_THRESHOLD = 10_000_000_000


def is_valid_address(address: Any) -> bool:
    if not isinstance(address, str):
        return False
    return bool(_BASE58_ADDRESS.match(address.strip()))


def _parse_float(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _parse_int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(round(_parse_float(value)))


def _parse_created_at(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > _EPOCH_MILLIS_THRESHOLD:
            seconds /= 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = date_parser.isoparse(str(value))
    except (ValueError, TypeError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _first_pool(raw_token: dict[str, Any]) -> dict[str, Any]:
    pools = raw_token.get("pools")
    if isinstance(pools, list) and pools and isinstance(pools[0], dict):
        return pools[0]
    return {}


def _nested(mapping: dict[str, Any], *keys: str) -> Any:
    current: Any = mapping
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def normalize_token(raw_token: dict[str, Any], *, now: datetime | None = None) -> CandidateToken | None:
    """Flatten a feed token payload; returns None when it has no usable address."""
    token_info = raw_token.get("token") if isinstance(raw_token.get("token"), dict) else {}
    address = token_info.get("mint") or raw_token.get("address") or raw_token.get("mint")
    if not is_valid_address(address):
        return None

    pool = _first_pool(raw_token)
    now = now or datetime.now(timezone.utc)
    created_at = _parse_created_at(
        _nested(token_info, "creation", "created_time")
        or raw_token.get("createdAt")
        or pool.get("createdAt")
    )
    age_seconds = max((now - created_at).total_seconds(), 0.0) if created_at else 0.0

    return CandidateToken(
        address=address.strip(),
        name=token_info.get("name") or raw_token.get("name") or None,
        symbol=token_info.get("symbol") or raw_token.get("symbol") or None,
        size_metric=_parse_float(_nested(pool, "marketCap", "usd")),
        volume_metric=_parse_float(_nested(pool, "txns", "volume24h")),
        holder_count=_parse_int(raw_token.get("holders")),
        age_seconds=age_seconds,
        image_ref=token_info.get("image") or raw_token.get("image") or None,
    )


def normalize_tokens(
    raw_tokens: list[dict[str, Any]], *, now: datetime | None = None
) -> list[CandidateToken]:
    normalized: list[CandidateToken] = []
    for raw_token in raw_tokens:
        if not isinstance(raw_token, dict):
            continue
        token = normalize_token(raw_token, now=now)
        if token is not None:
            normalized.append(token)
    return normalized


def normalize_candles(raw_candles: list[dict[str, Any]]) -> list[Candle]:
    candles: list[Candle] = []
    for raw_candle in raw_candles:
        if not isinstance(raw_candle, dict):
            continue
        # A candle missing a bound would read as 0 and fake a dump hit.
        if any(raw_candle.get(key) is None for key in ("time", "high", "low")):
            continue
        candles.append(
            Candle(
                time=_parse_int(raw_candle.get("time")),
                high=_parse_float(raw_candle.get("high")),
                low=_parse_float(raw_candle.get("low")),
            )
        )
    return candles
