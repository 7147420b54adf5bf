#!/usr/bin/env python3
"""
Ingestion pipeline: one unit of work for one feed.

fetch -> dedupe -> persist new articles -> update feed health -> recompute
group statistics -> emit events. The pipeline itself does not guard against
concurrent runs of the same feed; the scheduler's lease table does that, and
the storage unique indexes keep the result correct when the guard is bypassed.
"""

from dataclasses import dataclass, replace
from time import time
from typing import List, Optional, Tuple

from config import config, get_logger
from dedup import filter_new
from errors import FetchError, PersistenceConflict
from events import EventBus, FeedDisabled, FeedErrored, FeedRefreshed
from fetcher import CandidateItem, FeedDocument, FeedFetcher
from health import INACTIVE, PENDING, is_due, mark_errored, mark_fetched
from models import ArticleRecord, DatabaseQueue, FeedRecord
from telemetry import trace_span
from utils import calculate_reading_time, clean_html_to_markdown, compute_content_hash, html_to_text

# Module-specific logger
logger = get_logger("pipeline")


@dataclass(frozen=True)
class FeedRefreshResult:
    """Outcome of one successful (or skipped) refresh of a feed."""

    feed_id: int
    new_article_count: int = 0
    candidate_count: int = 0
    duplicate_count: int = 0
    conflict_count: int = 0
    group_ids: Tuple[int, ...] = ()
    status: Optional[str] = None
    next_fetch_at: Optional[int] = None
    skipped: bool = False
    ahead_of_schedule: bool = False


def item_limit_for(feed: FeedRecord) -> int:
    """First successful fetch is bounded tighter than later refreshes."""
    if feed.fetch_count == 0 or feed.status == PENDING:
        return config.FIRST_FETCH_ITEMS
    return config.REFRESH_FETCH_ITEMS


def build_article(feed_id: int, item: CandidateItem, now: int) -> ArticleRecord:
    """Turn a candidate into a storable article, deriving hash, markdown and reading time."""
    body = item.content or item.summary
    return ArticleRecord(
        feed_id=feed_id,
        title=item.title,
        content_hash=compute_content_hash(item.title, body, item.link or ""),
        link=item.link,
        guid=item.guid,
        author=item.author,
        content_html=item.content,
        content_markdown=clean_html_to_markdown(item.content, base_url=item.link),
        summary=item.summary,
        published_at=item.published_at or now,
        categories=item.categories,
        media_url=item.media_url,
        reading_time_minutes=calculate_reading_time(html_to_text(body, max_length=None)),
        extensions=item.extensions,
        created_at=now,
    )


class IngestionPipeline:
    def __init__(self, db: DatabaseQueue, fetcher: FeedFetcher, events: Optional[EventBus] = None) -> None:
        self.db = db
        self.fetcher = fetcher
        self.events = events or EventBus()

    @trace_span(
        "pipeline.run",
        tracer_name="pipeline",
        attr_from_args=lambda self, feed_id, now=None: {"feed.id": int(feed_id)},
    )
    async def run(self, feed_id: int, now: Optional[int] = None) -> FeedRefreshResult:
        """Refresh one feed.

        Raises:
            FeedNotFoundError: the feed does not exist.
            FetchError: the fetch failed; the failure is already recorded on the feed.
            PersistenceFailure: storage failed; feed health is left as it was.
        """
        now = int(time()) if now is None else now
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        scheduled = is_due(feed, now)
        if scheduled:
            logger.info(f"Refreshing feed {feed.id} ({feed.label}), status={feed.status}")
        else:
            logger.info(f"Refreshing feed {feed.id} ({feed.label}) ahead of schedule, status={feed.status}")

        try:
            document = await self.fetcher.fetch(feed.url, limit=item_limit_for(feed))
        except FetchError as e:
            await self.record_failure(feed, e, now)
            raise

        result = await self.ingest_document(feed, document, now)
        return result if scheduled else replace(result, ahead_of_schedule=True)

    async def record_failure(self, feed: FeedRecord, error: FetchError, now: int) -> FeedRecord:
        """Persist the failure transition and emit feed.errored (and feed.disabled on the fifth strike)."""
        updated = mark_errored(feed, error.describe(), now)
        await self.db.execute('save_feed_health', feed=updated)
        logger.warning(
            f"Feed {feed.id} fetch failed ({error.reason}), attempt {updated.consecutive_attempts}, "
            f"next try in {(updated.next_fetch_at - now) // 60} minutes: {error}"
        )
        await self.events.emit(FeedErrored(feed.id, error.reason, updated.consecutive_attempts))

        if updated.status == INACTIVE and feed.status != INACTIVE:
            logger.error(f"Feed {feed.id} ({feed.label}) disabled after {updated.consecutive_attempts} consecutive failures")
            # active_feeds changed for every group holding this feed
            await self.recompute_groups(updated.group_ids, now)
            await self.events.emit(FeedDisabled(feed.id))
        return updated

    async def ingest_document(self, feed: FeedRecord, document: FeedDocument, now: int) -> FeedRefreshResult:
        """Store the new items of an already fetched document and record the success."""
        known_links, known_guids = await self.db.execute('get_known_identities', feed_id=feed.id)
        fresh = filter_new(document.items, known_links, known_guids)

        group_ids: List[int] = list(feed.group_ids)
        inserted = 0
        conflicts = 0
        newest: Optional[int] = None
        for item in fresh:
            article = build_article(feed.id, item, now)
            try:
                await self.db.execute('insert_article', article=article, group_ids=group_ids)
            except PersistenceConflict:
                conflicts += 1
                logger.debug(f"Feed {feed.id}: '{item.title[:80]}' already stored, skipping")
                continue
            inserted += 1
            if newest is None or article.published_at > newest:
                newest = article.published_at

        updated = mark_fetched(feed, inserted, now, newest)
        await self.db.execute('save_feed_health', feed=updated)
        metadata = document.metadata
        await self.db.execute(
            'update_feed_metadata',
            feed_id=feed.id,
            title=metadata.title,
            site_link=metadata.site_link,
            language=metadata.language,
            description=metadata.description,
            last_build_date=metadata.last_build_date,
        )

        await self.recompute_groups(group_ids, now)

        logger.info(
            f"Feed {feed.id}: {len(document.items)} items, {len(fresh)} new candidates, "
            f"{inserted} stored, {conflicts} already present"
        )
        await self.events.emit(FeedRefreshed(feed.id, tuple(group_ids), inserted))

        return FeedRefreshResult(
            feed_id=feed.id,
            new_article_count=inserted,
            candidate_count=len(document.items),
            duplicate_count=len(document.items) - len(fresh),
            conflict_count=conflicts,
            group_ids=tuple(group_ids),
            status=updated.status,
            next_fetch_at=updated.next_fetch_at,
        )

    async def recompute_groups(self, group_ids, now: int) -> None:
        """Full recompute of each group's counters from current storage."""
        for group_id in group_ids:
            await self.db.execute('recompute_group_stats', group_id=group_id, now=now)
