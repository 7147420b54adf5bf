#!/usr/bin/env python3
"""
Subscription lifecycle: attaching feeds to groups, detaching them, changing
feed settings and previewing a URL before subscribing.

A new URL is only registered after one successful, validated fetch; its first
items are stored straight away. Detaching a feed from its last group deletes
the feed and its articles.
"""

from dataclasses import dataclass
from time import time
from typing import Any, Dict, List, Optional

from config import config, get_logger
from errors import AlreadySubscribedError, PersistenceConflict, PersistenceFailure
from fetcher import FeedFetcher, FeedMetadata
from models import DatabaseQueue, FeedRecord, validate_update_frequency
from pipeline import IngestionPipeline
from utils import validate_url

# Module-specific logger
logger = get_logger("subscriptions")


@dataclass(frozen=True)
class SubscriptionResult:
    feed: FeedRecord
    group_id: int
    created: bool
    new_article_count: int = 0


@dataclass(frozen=True)
class FeedPreview:
    url: str
    metadata: FeedMetadata
    item_count: int


@dataclass
class SyncReport:
    groups: int = 0
    feeds_created: int = 0
    feeds_attached: int = 0
    feeds_updated: int = 0
    feeds_rejected: int = 0


class SubscriptionManager:
    def __init__(self, db: DatabaseQueue, fetcher: FeedFetcher, pipeline: IngestionPipeline):
        self.db = db
        self.fetcher = fetcher
        self.pipeline = pipeline

    async def subscribe(
        self,
        url: str,
        group_id: int,
        update_frequency_minutes: Optional[int] = None,
        title: Optional[str] = None,
        now: Optional[int] = None,
    ) -> SubscriptionResult:
        """Subscribe a group to a feed URL.

        An already known URL is just attached to the group. An unknown URL is
        fetched first; if that fetch fails the FetchError propagates and
        nothing is stored.

        Raises:
            ValueError: invalid URL or update frequency.
            LookupError: unknown group.
            AlreadySubscribedError: the group already has this feed.
            FetchError: the first fetch of a new feed failed.
        """
        url = (url or "").strip()
        if not validate_url(url):
            raise ValueError(f"Invalid feed URL: {url!r}")
        frequency = validate_update_frequency(
            config.DEFAULT_UPDATE_FREQUENCY if update_frequency_minutes is None else update_frequency_minutes
        )
        now = int(time()) if now is None else now
        await self.db.execute('get_group', group_id=group_id)

        existing = await self.db.execute('get_feed_by_url', url=url)
        if existing is not None:
            return await self._attach_existing(existing, group_id, now)

        document = await self.fetcher.fetch(url, limit=config.FIRST_FETCH_ITEMS)

        try:
            feed_id = await self.db.execute('create_feed', url=url, update_frequency=frequency, now=now, title=title)
        except PersistenceConflict:
            # Registered concurrently by another subscriber
            existing = await self.db.execute('get_feed_by_url', url=url)
            if existing is None:
                raise PersistenceFailure(f"Feed {url} was registered and removed concurrently; retry the subscription")
            return await self._attach_existing(existing, group_id, now)

        await self.db.execute('attach_feed_to_group', feed_id=feed_id, group_id=group_id)
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        refresh = await self.pipeline.ingest_document(feed, document, now)
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        logger.info(f"Subscribed group {group_id} to new feed {feed_id} ({feed.label}), {refresh.new_article_count} articles")
        return SubscriptionResult(feed=feed, group_id=group_id, created=True, new_article_count=refresh.new_article_count)

    async def _attach_existing(self, feed: FeedRecord, group_id: int, now: int) -> SubscriptionResult:
        if group_id in feed.group_ids:
            raise AlreadySubscribedError(f"Group {group_id} is already subscribed to {feed.url}")
        attached = await self.db.execute('attach_feed_to_group', feed_id=feed.id, group_id=group_id)
        if not attached:
            raise AlreadySubscribedError(f"Group {group_id} is already subscribed to {feed.url}")
        await self.db.execute('recompute_group_stats', group_id=group_id, now=now)
        feed = await self.db.execute('get_feed', feed_id=feed.id)
        logger.info(f"Attached existing feed {feed.id} ({feed.label}) to group {group_id}")
        return SubscriptionResult(feed=feed, group_id=group_id, created=False)

    async def detach(self, feed_id: int, group_id: int, now: Optional[int] = None) -> bool:
        """Remove a feed from a group. Returns True when the feed itself was deleted.

        Raises FeedNotFoundError for an unknown feed and LookupError when the
        feed is not in the group.
        """
        now = int(time()) if now is None else now
        feed = await self.db.execute('get_feed', feed_id=feed_id)
        if group_id not in feed.group_ids:
            raise LookupError(f"Feed {feed_id} is not in group {group_id}")

        remaining, articles = await self.db.execute(
            'detach_feed_from_group', feed_id=feed_id, group_id=group_id, delete_orphan=True
        )
        deleted = articles is not None
        if deleted:
            logger.info(f"Feed {feed_id} ({feed.label}) left its last group; deleted with {articles} articles")
        else:
            logger.info(f"Feed {feed_id} detached from group {group_id}; {remaining} groups remain")

        await self.db.execute('recompute_group_stats', group_id=group_id, now=now)
        return deleted

    async def update_feed(
        self,
        feed_id: int,
        update_frequency_minutes: Optional[int] = None,
        is_active: Optional[bool] = None,
        now: Optional[int] = None,
    ) -> FeedRecord:
        """Change a feed's polling frequency and/or switch it on or off.

        A feed switched off is never selected by the scheduler; switching it
        back on does not touch its health. Group counters are recomputed
        because ``active_feeds`` depends on the switch.

        Raises:
            ValueError: update frequency out of range.
            FeedNotFoundError: unknown feed.
        """
        if update_frequency_minutes is not None:
            validate_update_frequency(update_frequency_minutes)
        now = int(time()) if now is None else now
        feed = await self.db.execute('get_feed', feed_id=feed_id)

        if update_frequency_minutes is not None and update_frequency_minutes != feed.update_frequency_minutes:
            await self.db.execute('set_update_frequency', feed_id=feed_id, update_frequency=update_frequency_minutes)
            logger.info(f"Feed {feed_id} now polled every {update_frequency_minutes} minutes")

        if is_active is not None and bool(is_active) != feed.is_active:
            await self.db.execute('set_feed_active', feed_id=feed_id, is_active=is_active)
            logger.info(f"Feed {feed_id} ({feed.label}) switched {'on' if is_active else 'off'}")
            await self.pipeline.recompute_groups(feed.group_ids, now)

        return await self.db.execute('get_feed', feed_id=feed_id)

    async def preview(self, url: str) -> FeedPreview:
        """Fetch a URL once and describe the feed without subscribing to it.

        Raises ValueError for an invalid URL and FetchError when the URL does
        not serve a readable feed. Nothing is stored.
        """
        url = (url or "").strip()
        if not validate_url(url):
            raise ValueError(f"Invalid feed URL: {url!r}")
        document = await self.fetcher.fetch(url, limit=config.FIRST_FETCH_ITEMS)
        logger.info(f"Preview of {url}: {len(document.items)} items")
        return FeedPreview(url=url, metadata=document.metadata, item_count=len(document.items))

    async def sync_from_config(
        self,
        groups: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        now: Optional[int] = None,
    ) -> SyncReport:
        """Make sure the groups and feeds listed in feeds.yaml exist.

        New feeds are registered as pending and due immediately; the next tick
        performs their first fetch. Frequencies of known feeds follow the file.
        """
        groups = config.GROUP_SOURCES if groups is None else groups
        now = int(time()) if now is None else now
        report = SyncReport()

        for group_name, entries in groups.items():
            group_id = await self.db.execute('create_group', name=group_name)
            report.groups += 1
            for entry in entries:
                url = (entry.get('url') or "").strip()
                frequency = entry.get('update_frequency', config.DEFAULT_UPDATE_FREQUENCY)
                try:
                    if not validate_url(url):
                        raise ValueError(f"invalid URL {url!r}")
                    validate_update_frequency(frequency)
                except ValueError as e:
                    logger.warning(f"Skipping feed '{entry.get('slug', url)}' in group '{group_name}': {e}")
                    report.feeds_rejected += 1
                    continue

                feed = await self.db.execute('get_feed_by_url', url=url)
                if feed is None:
                    feed_id = await self.db.execute(
                        'create_feed', url=url, update_frequency=frequency, now=now, title=entry.get('title')
                    )
                    report.feeds_created += 1
                    logger.info(f"Registered feed {feed_id} from {url}")
                else:
                    feed_id = feed.id
                    if feed.update_frequency_minutes != frequency:
                        await self.db.execute('set_update_frequency', feed_id=feed_id, update_frequency=frequency)
                        report.feeds_updated += 1

                if await self.db.execute('attach_feed_to_group', feed_id=feed_id, group_id=group_id):
                    report.feeds_attached += 1

            await self.db.execute('recompute_group_stats', group_id=group_id, now=now)

        logger.info(
            f"Sync complete: {report.groups} groups, {report.feeds_created} feeds created, "
            f"{report.feeds_attached} attached, {report.feeds_updated} updated, {report.feeds_rejected} rejected"
        )
        return report
