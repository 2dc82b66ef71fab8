from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
from loguru import logger

from app.core.config import settings
from app.domain import Candle, CandidateToken

from .normalize import normalize_candles, normalize_token, normalize_tokens

GRADUATED_TOKENS_PATH = "/tokens/multi/graduated"


class TokenFeedError(RuntimeError):
    """The token feed answered with a payload that cannot be used."""


class TokenFeedClient:
    """Thin wrapper around the token metrics feed endpoints."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or str(settings.token_feed_base_url)
        api_key = api_key if api_key is not None else settings.token_feed_api_key
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning("Token feed API key is not configured; requests may be rejected")
        self.timeout = timeout or settings.token_feed_timeout_seconds
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
            transport=transport,
        )

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        logger.info("Token feed GET {} params={}", path, params)
        response = self.client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    def list_candidate_tokens(self, *, now: datetime | None = None) -> list[CandidateToken]:
        """Return graduated tokens in feed rank order."""
        payload = self._get(GRADUATED_TOKENS_PATH)
        if isinstance(payload, dict):
            raw_tokens = next(
                (
                    value
                    for value in (payload.get("tokens"), payload.get("data"))
                    if isinstance(value, list)
                ),
                None,
            )
        else:
            raw_tokens = payload
        if not isinstance(raw_tokens, list):
            raise TokenFeedError("Graduated token list payload is not a list")

        tokens = normalize_tokens(raw_tokens, now=now or datetime.now(timezone.utc))
        if not tokens:
            raise TokenFeedError("No graduating tokens returned from the feed")
        logger.info("Token feed returned {} usable candidates ({} raw)", len(tokens), len(raw_tokens))
        return tokens

    def get_token(self, address: str, *, now: datetime | None = None) -> CandidateToken:
        payload = self._get(f"/tokens/{address}")
        if not isinstance(payload, dict):
            raise TokenFeedError(f"Token {address} payload is not an object")
        token = normalize_token(payload, now=now)
        if token is None:
            raise TokenFeedError(f"Token {address} not found in feed response")
        return token

    def get_candle_history(self, address: str, granularity: str, limit: int) -> list[Candle]:
        payload = self._get(f"/chart/{address}", params={"type": granularity, "limit": limit})
        if isinstance(payload, dict):
            raw_candles = payload.get("oclhv")
        else:
            raw_candles = payload
        if not isinstance(raw_candles, list):
            raise TokenFeedError(f"Candle payload for {address} is missing the oclhv series")
        return normalize_candles(raw_candles)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "TokenFeedClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
