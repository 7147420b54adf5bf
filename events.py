#!/usr/bin/env python3
"""
Domain events emitted by ingestion.

Delivery is at-least-once and belongs to whoever subscribes: the bus calls
each handler in turn, logs handler failures and moves on. A failing handler
never fails the ingestion run that emitted the event.
"""

from asyncio import iscoroutine
from dataclasses import dataclass, asdict
from typing import Any, Callable, ClassVar, Dict, List, Tuple

from config import get_logger

# Module-specific logger
logger = get_logger("events")


@dataclass(frozen=True)
class FeedRefreshed:
    name: ClassVar[str] = "feed.refreshed"

    feed_id: int
    group_ids: Tuple[int, ...]
    new_article_count: int


@dataclass(frozen=True)
class FeedErrored:
    name: ClassVar[str] = "feed.errored"

    feed_id: int
    reason: str
    consecutive_attempts: int


@dataclass(frozen=True)
class FeedDisabled:
    name: ClassVar[str] = "feed.disabled"

    feed_id: int


def event_payload(event) -> Dict[str, Any]:
    """Event as a plain dict, with its name under ``event``."""
    payload = asdict(event)
    payload["event"] = event.name
    return payload


class EventBus:
    """In-process fan-out of domain events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: List[Callable] = []

    def subscribe(self, handler: Callable) -> Callable:
        """Register a sync or async callable taking one event. Returns the handler."""
        self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: Callable) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event) -> None:
        logger.info(f"Event {event.name}: {event_payload(event)}")
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Event handler {getattr(handler, '__name__', handler)!r} failed for {event.name}: {e}")
