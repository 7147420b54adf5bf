#!/usr/bin/env python3
"""
Feed polling scheduler.

A tick selects the feeds that are due (most overdue first), refreshes them
concurrently under a worker limit and reports a partitioned result. The
scheduler holds no timer of its own: something outside calls ``tick`` on
whatever cadence it likes (``run_sweep`` is the simple periodic caller used by
the CLI).

Single-flight per feed is enforced with a lease table. Leases expire after a
TTL so a run that never released its lease cannot block a feed forever.
"""

import asyncio
import threading
from dataclasses import dataclass, field
from time import monotonic, time
from typing import Callable, Dict, List, Optional, Tuple

from config import config, get_logger
from errors import FeedNotFoundError, FetchError, PersistenceFailure
from health import INACTIVE, reset_health
from models import DatabaseQueue, FeedRecord
from pipeline import FeedRefreshResult, IngestionPipeline
from telemetry import trace_span

# Module-specific logger
logger = get_logger("scheduler")


@dataclass(frozen=True)
class FeedFailure:
    """A feed that could not be refreshed during a tick.

    ``kind`` is one of ``fetch``, ``persistence``, ``missing`` or ``unexpected``.
    ``feed_id`` is None when the batch itself could not be selected.
    """

    feed_id: Optional[int]
    reason: str
    kind: str


@dataclass
class BatchResult:
    succeeded: List[FeedRefreshResult] = field(default_factory=list)
    failed: List[FeedFailure] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def new_article_count(self) -> int:
        return sum(result.new_article_count for result in self.succeeded)

    def summary(self) -> str:
        return (
            f"{len(self.succeeded)} succeeded, {len(self.failed)} failed, "
            f"{len(self.skipped)} skipped, {self.new_article_count} new articles"
        )


class LeaseTable:
    """Per-key leases with expiry, safe to share between threads."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._leases: Dict[int, Tuple[object, float]] = {}
        self._lock = threading.Lock()

    def acquire(self, key: int) -> Optional[object]:
        """Take the lease for ``key``. Returns a token, or None if someone holds it."""
        with self._lock:
            now = self._clock()
            current = self._leases.get(key)
            if current is not None and current[1] > now:
                return None
            if current is not None:
                logger.warning(f"Lease for feed {key} expired without release; taking it over")
            token = object()
            self._leases[key] = (token, now + self.ttl_seconds)
            return token

    def release(self, key: int, token: object) -> bool:
        """Release a lease; a stale token (lease expired and re-taken) is ignored."""
        with self._lock:
            current = self._leases.get(key)
            if current is None or current[0] is not token:
                return False
            del self._leases[key]
            return True

    def held(self, key: int) -> bool:
        with self._lock:
            current = self._leases.get(key)
            return current is not None and current[1] > self._clock()

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expiry) in self._leases.items() if expiry <= now]
            for key in expired:
                del self._leases[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for _, expiry in self._leases.values() if expiry > now)


class FeedScheduler:
    """Selects due feeds and runs the ingestion pipeline for them."""

    def __init__(
        self,
        db: DatabaseQueue,
        pipeline: IngestionPipeline,
        worker_limit: Optional[int] = None,
        lease_ttl_seconds: Optional[float] = None,
    ):
        self.db = db
        self.pipeline = pipeline
        self.worker_limit = worker_limit or config.WORKER_LIMIT
        self.leases = LeaseTable(lease_ttl_seconds or config.LEASE_TTL_SECONDS)

    @trace_span(
        "scheduler.tick",
        tracer_name="scheduler",
        attr_from_args=lambda self, batch_size=None, now=None: {
            "scheduler.batch_size": int(batch_size or config.BATCH_SIZE),
        },
    )
    async def tick(self, batch_size: Optional[int] = None, now: Optional[int] = None) -> BatchResult:
        """Refresh up to ``batch_size`` due feeds. Never raises for per-feed problems.

        Per-feed and selection failures come back as ``failed`` entries. A
        ``batch_size`` below 1 is a caller bug and raises ValueError.
        """
        batch_size = config.BATCH_SIZE if batch_size is None else batch_size
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        selected_at = int(time()) if now is None else now
        result = BatchResult()

        self.leases.purge_expired()
        try:
            feeds: List[FeedRecord] = await self.db.execute('select_due_feeds', now=selected_at, limit=batch_size)
        except PersistenceFailure as e:
            logger.error(f"Could not select due feeds: {e}")
            result.failed.append(FeedFailure(None, str(e), "persistence"))
            return result

        if not feeds:
            logger.debug("No feeds due")
            return result

        logger.info(f"Tick: {len(feeds)} due feeds, worker limit {self.worker_limit}")
        semaphore = asyncio.Semaphore(self.worker_limit)

        async def _limited(feed: FeedRecord):
            async with semaphore:
                return await self._dispatch(feed.id, now)

        outcomes = await asyncio.gather(*(_limited(feed) for feed in feeds))
        for outcome in outcomes:
            if isinstance(outcome, FeedFailure):
                result.failed.append(outcome)
            elif outcome.skipped:
                result.skipped.append(outcome.feed_id)
            else:
                result.succeeded.append(outcome)

        logger.info(f"Tick finished: {result.summary()}")
        return result

    async def _dispatch(self, feed_id: int, now: Optional[int]):
        """Run one feed and turn any failure into a FeedFailure entry."""
        try:
            return await self.refresh_one(feed_id, now)
        except FetchError as e:
            return FeedFailure(feed_id, e.describe(), "fetch")
        except PersistenceFailure as e:
            logger.error(f"Storage failure while refreshing feed {feed_id}: {e}")
            return FeedFailure(feed_id, str(e), "persistence")
        except FeedNotFoundError as e:
            logger.warning(f"Feed {feed_id} disappeared before refresh")
            return FeedFailure(feed_id, str(e), "missing")
        except Exception as e:
            logger.exception(f"Unexpected error refreshing feed {feed_id}: {e}")
            return FeedFailure(feed_id, f"{e.__class__.__name__}: {e}", "unexpected")

    async def refresh_one(self, feed_id: int, now: Optional[int] = None) -> FeedRefreshResult:
        """Refresh one feed through the single-flight guard.

        Returns a result with ``skipped=True`` when the feed is already being
        refreshed. Raises FetchError, PersistenceFailure or FeedNotFoundError.
        """
        token = self.leases.acquire(feed_id)
        if token is None:
            logger.info(f"Feed {feed_id} already in flight, skipping")
            return FeedRefreshResult(feed_id=feed_id, skipped=True)
        try:
            return await self.pipeline.run(feed_id, now)
        finally:
            self.leases.release(feed_id, token)

    async def reset_health(self, feed_id: int, now: Optional[int] = None) -> FeedRecord:
        """Clear a feed's error streak and make it due immediately."""
        now = int(time()) if now is None else now
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        updated = reset_health(feed, now)
        await self.db.execute('save_feed_health', feed=updated)
        if feed.status == INACTIVE:
            logger.info(f"Feed {feed_id} re-enabled by manual reset")
            await self.pipeline.recompute_groups(updated.group_ids, now)
        else:
            logger.info(f"Feed {feed_id} health reset")
        return updated


async def run_sweep(
    scheduler: FeedScheduler,
    interval_seconds: Optional[float] = None,
    stop_event: Optional[asyncio.Event] = None,
    max_ticks: Optional[int] = None,
) -> int:
    """Call ``tick`` periodically until stopped. Returns the number of ticks run."""
    interval_seconds = interval_seconds or config.SWEEP_INTERVAL_SECONDS
    stop_event = stop_event or asyncio.Event()
    ticks = 0
    logger.info(f"Starting sweep every {interval_seconds}s")
    while not stop_event.is_set():
        result = await scheduler.tick()
        ticks += 1
        if result.failed:
            logger.warning(f"Sweep tick {ticks}: {result.summary()}")
        if max_ticks is not None and ticks >= max_ticks:
            break
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info(f"Sweep stopped after {ticks} ticks")
    return ticks
