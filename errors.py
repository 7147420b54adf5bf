#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class IngestError(Exception):
    """Base class for ingestion errors."""


class FetchError(IngestError):
    """Raised when a feed cannot be retrieved or parsed.

    Timeouts, non-2xx responses and malformed documents are all surfaced as
    this one type; backoff does not distinguish them, only logging does.

    Attributes:
        reason: Short machine-friendly label ("timeout", "http_status", "network", "malformed").
        cause: The underlying exception, if any.
    """

    def __init__(self, reason: str, message: str = "", cause: Optional[BaseException] = None):
        super().__init__(message or reason)
        self.reason = reason
        self.cause = cause

    def describe(self) -> str:
        """Human readable message stored in the feed's last error."""
        text = str(self)
        if text == self.reason:
            return self.reason
        return f"{self.reason}: {text}"


class PersistenceConflict(IngestError):
    """A uniqueness constraint rejected a write; the row already exists."""


class PersistenceFailure(IngestError):
    """Storage is unavailable or rejected an operation for a non-conflict reason."""


class FeedNotFoundError(LookupError):
    """Raised when an operation names a feed id that does not exist."""

    def __init__(self, feed_id: int):
        super().__init__(f"Feed {feed_id} not found")
        self.feed_id = feed_id


class AlreadySubscribedError(IngestError):
    """Raised when a feed is already attached to the requested group."""


__all__ = [
    "IngestError",
    "FetchError",
    "PersistenceConflict",
    "PersistenceFailure",
    "FeedNotFoundError",
    "AlreadySubscribedError",
]
