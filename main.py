#!/usr/bin/env python3
"""
Feed Ingestion Service entry point

This script wires storage, fetcher, pipeline, scheduler and subscriptions
together and exposes them as command line modes:

- tick: refresh one batch of due feeds
- sweep: call tick periodically (the polling cadence lives here, not in the scheduler)
- refresh / reset: manual single-feed operations
- subscribe / detach: group membership of feeds
- update: change a feed polling frequency or switch it on/off
- test: check a feed URL without subscribing
- sync: register the groups and feeds listed in feeds.yaml
- status: print feed health and group counters
"""

import asyncio
import sys
from datetime import datetime, timezone
from typing import Optional
import argparse

from config import config, get_logger
from errors import AlreadySubscribedError, FetchError, PersistenceFailure
from events import EventBus
from fetcher import FeedFetcher
from models import DatabaseQueue
from pipeline import IngestionPipeline
from scheduler import FeedScheduler, run_sweep
from subscriptions import SubscriptionManager
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("main")


class IngestionService:
    """Owns the shared components for one process."""

    def __init__(self, db_path: Optional[str] = None, fetcher: Optional[FeedFetcher] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = fetcher or FeedFetcher()
        self.events = EventBus()
        self.pipeline = IngestionPipeline(self.db, self.fetcher, self.events)
        self.scheduler = FeedScheduler(self.db, self.pipeline)
        self.subscriptions = SubscriptionManager(self.db, self.fetcher, self.pipeline)

    async def __aenter__(self) -> "IngestionService":
        await self.db.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.fetcher.close()
        await self.db.stop()

    async def status(self) -> dict:
        feeds = await self.db.execute('list_feeds')
        groups = await self.db.execute('list_groups')
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'feeds': feeds,
            'groups': groups,
            'articles': await self.db.execute('count_articles'),
        }


def _format_ts(timestamp: Optional[int]) -> str:
    if not timestamp:
        return "never"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m-%d %H:%M')


def print_status(status: dict) -> None:
    """Print formatted status information."""
    print(f"\n📊 Feed Ingestion Status ({status['timestamp']})")
    print(f"📰 Articles: {status['articles']}")

    print(f"\n📡 Feeds ({len(status['feeds'])}):")
    for feed in status['feeds']:
        line = (
            f"   [{feed.id}] {feed.status:<8} every {feed.update_frequency_minutes}m "
            f"last={_format_ts(feed.last_fetched_at)} next={_format_ts(feed.next_fetch_at)} "
            f"articles={feed.total_articles} avg={feed.average_articles_per_fetch:.1f} {feed.label}"
        )
        if not feed.is_active:
            line += " (switched off)"
        print(line)
        if feed.last_error:
            print(f"        ⚠️  {feed.last_error.message} (attempt {feed.last_error.consecutive_attempts})")

    print(f"\n📁 Groups ({len(status['groups'])}):")
    for group in status['groups']:
        print(
            f"   [{group.id}] {group.name}: feeds={group.total_feeds} active={group.active_feeds} "
            f"articles={group.total_articles} unread={group.unread_articles}"
        )


def print_preview(preview) -> None:
    metadata = preview.metadata
    print(f"\n🔎 {preview.url}")
    print(f"   Title:      {metadata.title or 'Untitled'}")
    print(f"   Link:       {metadata.site_link or '-'}")
    print(f"   Language:   {metadata.language or '-'}")
    print(f"   Last build: {_format_ts(metadata.last_build_date)}")
    print(f"   Items:      {preview.item_count}")


@trace_span("cli.run", tracer_name="cli", attr_from_args=lambda args: {"cli.mode": args.mode})
async def run(args: argparse.Namespace) -> int:
    """Execute one CLI mode and return the process exit code."""
    async with IngestionService() as service:
        if args.mode == 'tick':
            result = await service.scheduler.tick(batch_size=args.batch_size)
            for failure in result.failed:
                logger.warning(f"❌ feed {failure.feed_id}: {failure.kind}: {failure.reason}")
            logger.info(f"✅ Tick complete: {result.summary()}")
            return 1 if any(f.kind != 'fetch' for f in result.failed) else 0

        if args.mode == 'sweep':
            await run_sweep(service.scheduler, interval_seconds=args.interval)
            return 0

        if args.mode == 'refresh':
            result = await service.scheduler.refresh_one(args.feed_id)
            if result.skipped:
                logger.info(f"Feed {args.feed_id} is already being refreshed")
            else:
                logger.info(f"✅ Feed {args.feed_id}: {result.new_article_count} new articles")
            return 0

        if args.mode == 'reset':
            feed = await service.scheduler.reset_health(args.feed_id)
            logger.info(f"✅ Feed {feed.id} reset, status={feed.status}")
            return 0

        if args.mode == 'subscribe':
            outcome = await service.subscriptions.subscribe(
                args.url, args.group, update_frequency_minutes=args.frequency, title=args.title
            )
            verb = "Created" if outcome.created else "Attached"
            logger.info(f"✅ {verb} feed {outcome.feed.id} in group {outcome.group_id} ({outcome.new_article_count} articles)")
            return 0

        if args.mode == 'detach':
            deleted = await service.subscriptions.detach(args.feed_id, args.group)
            logger.info(f"✅ Feed {args.feed_id} detached from group {args.group}{' and deleted' if deleted else ''}")
            return 0

        if args.mode == 'update':
            if args.frequency is None and args.active is None:
                raise ValueError("Nothing to update: pass --frequency, --on or --off")
            feed = await service.subscriptions.update_feed(
                args.feed_id, update_frequency_minutes=args.frequency, is_active=args.active
            )
            state = "on" if feed.is_active else "off"
            logger.info(f"✅ Feed {feed.id}: every {feed.update_frequency_minutes}m, switched {state}")
            return 0

        if args.mode == 'test':
            print_preview(await service.subscriptions.preview(args.url))
            return 0

        if args.mode == 'sync':
            await service.subscriptions.sync_from_config()
            return 0

        if args.mode == 'status':
            print_status(await service.status())
            return 0

    raise ValueError(f"Unknown mode {args.mode}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Ingestion Service')
    modes = parser.add_subparsers(dest='mode', required=True)

    tick = modes.add_parser('tick', help='Refresh one batch of due feeds')
    tick.add_argument('--batch-size', type=int, default=None, help='Maximum feeds to refresh (default: BATCH_SIZE)')

    sweep = modes.add_parser('sweep', help='Run tick periodically until interrupted')
    sweep.add_argument('--interval', type=float, default=None, help='Seconds between ticks (default: SWEEP_INTERVAL_SECONDS)')

    refresh = modes.add_parser('refresh', help='Refresh one feed now')
    refresh.add_argument('feed_id', type=int)

    reset = modes.add_parser('reset', help='Clear a feed error streak and re-enable it')
    reset.add_argument('feed_id', type=int)

    subscribe = modes.add_parser('subscribe', help='Subscribe a group to a feed URL')
    subscribe.add_argument('url')
    subscribe.add_argument('--group', type=int, required=True, help='Group id')
    subscribe.add_argument('--frequency', type=int, default=None, help='Update frequency in minutes (5-1440)')
    subscribe.add_argument('--title', type=str, default=None)

    detach = modes.add_parser('detach', help='Remove a feed from a group')
    detach.add_argument('feed_id', type=int)
    detach.add_argument('--group', type=int, required=True, help='Group id')

    update = modes.add_parser('update', help='Change a feed polling frequency or switch it on/off')
    update.add_argument('feed_id', type=int)
    update.add_argument('--frequency', type=int, default=None, help='Update frequency in minutes (5-1440)')
    switch = update.add_mutually_exclusive_group()
    switch.add_argument('--on', dest='active', action='store_const', const=True, default=None)
    switch.add_argument('--off', dest='active', action='store_const', const=False)

    test = modes.add_parser('test', help='Check that a URL serves a readable feed, without subscribing')
    test.add_argument('url')

    modes.add_parser('sync', help='Register groups and feeds from feeds.yaml')
    modes.add_parser('status', help='Show feed health and group counters')
    return parser


def main():
    """Main entry point."""
    args = build_parser().parse_args()
    init_telemetry("feed-ingest")

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except (FetchError, AlreadySubscribedError, LookupError, ValueError) as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except PersistenceFailure as e:
        logger.error(f"💥 Storage failure: {e}")
        sys.exit(2)


if __name__ == "__main__":
    main()
