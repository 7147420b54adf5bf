#!/usr/bin/env python3
"""
Feed health state machine.

States are ``pending`` (never fetched), ``active`` (last fetch succeeded),
``error`` (last fetch failed) and ``inactive`` (disabled after repeated
failures, until a manual reset). Transitions are pure functions: they take a
FeedRecord and return a new one, and the caller persists the result.
"""

from dataclasses import replace
from typing import Optional

from models import FeedRecord, LastError

SECONDS_PER_MINUTE = 60
MAX_CONSECUTIVE_FAILURES = 5
MAX_BACKOFF_MINUTES = 1440  # 24 hours

PENDING = "pending"
ACTIVE = "active"
ERROR = "error"
INACTIVE = "inactive"


def backoff_minutes(update_frequency_minutes: int, consecutive_attempts: int) -> int:
    """Delay before the next attempt after ``consecutive_attempts`` failures in a row."""
    if consecutive_attempts <= 0:
        return update_frequency_minutes
    # Cap the exponent first; the result is clamped anyway
    exponent = min(consecutive_attempts, 16)
    return min(update_frequency_minutes * (2 ** exponent), MAX_BACKOFF_MINUTES)


def mark_fetched(feed: FeedRecord, new_count: int, now: int, newest_published_at: Optional[int] = None) -> FeedRecord:
    """Success transition, given how many articles were actually stored."""
    if new_count < 0:
        raise ValueError("new_count must not be negative")
    fetch_count = feed.fetch_count + 1
    average = feed.average_articles_per_fetch + (new_count - feed.average_articles_per_fetch) / fetch_count
    last_article_at = feed.last_article_at
    if newest_published_at is not None and (last_article_at is None or newest_published_at > last_article_at):
        last_article_at = newest_published_at
    return replace(
        feed,
        status=ACTIVE,
        last_fetched_at=now,
        next_fetch_at=now + feed.update_frequency_minutes * SECONDS_PER_MINUTE,
        last_error=None,
        fetch_count=fetch_count,
        total_articles=feed.total_articles + new_count,
        average_articles_per_fetch=average,
        last_article_at=last_article_at,
    )


def mark_errored(feed: FeedRecord, message: str, now: int) -> FeedRecord:
    """Failure transition: back off exponentially, disable after five strikes in a row."""
    attempts = feed.consecutive_attempts + 1
    delay = backoff_minutes(feed.update_frequency_minutes, attempts)
    return replace(
        feed,
        status=INACTIVE if attempts >= MAX_CONSECUTIVE_FAILURES else ERROR,
        next_fetch_at=now + delay * SECONDS_PER_MINUTE,
        last_error=LastError(message=message, occurred_at=now, consecutive_attempts=attempts),
        error_count=feed.error_count + 1,
    )


def reset_health(feed: FeedRecord, now: int) -> FeedRecord:
    """Manual reset: clear the error streak and make the feed due right away."""
    return replace(feed, status=ACTIVE, last_error=None, next_fetch_at=now)


def is_due(feed: FeedRecord, now: int) -> bool:
    """Whether the scheduler may pick this feed at ``now``."""
    return feed.is_active and feed.status != INACTIVE and feed.next_fetch_at <= now
