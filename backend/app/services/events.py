from __future__ import annotations

from typing import Any, Protocol

import httpx
from loguru import logger

from app.core.config import settings

MARKET_CREATED = "market:created"
MARKET_RESOLVED = "market:resolved"
MARKET_UPDATED = "market:updated"
BALANCE_UPDATED = "balance:updated"


class EventPublisher(Protocol):
    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        ...

    def close(self) -> None:
        ...


class LoggingEventPublisher:
    """Default sink: events only show up in the logs."""

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("Event {} {}", event_type, payload)

    def close(self) -> None:
        pass


class HttpEventPublisher:
    """Fire-and-forget POST of ``{type, data}`` to the realtime endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.client = httpx.Client(timeout=timeout, transport=transport)

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            response = self.client.post(self.url, json={"type": event_type, "data": payload})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Failed to publish {} to {}: {}", event_type, self.url, exc)

    def close(self) -> None:
        self.client.close()


def build_event_publisher() -> EventPublisher:
    if settings.realtime_publish_url:
        return HttpEventPublisher(str(settings.realtime_publish_url))
    return LoggingEventPublisher()


__all__ = [
    "BALANCE_UPDATED",
    "EventPublisher",
    "HttpEventPublisher",
    "LoggingEventPublisher",
    "MARKET_CREATED",
    "MARKET_RESOLVED",
    "MARKET_UPDATED",
    "build_event_publisher",
]
