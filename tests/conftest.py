import asyncio
from typing import Dict, List, Optional, Union

import pytest_asyncio

from errors import FetchError
from events import EventBus
from fetcher import CandidateItem, FeedDocument, FeedMetadata
from models import DatabaseQueue
from pipeline import IngestionPipeline

T0 = 1_750_000_000  # fixed "now" for deterministic schedules


def make_item(n: int, prefix: str = "post", **overrides) -> CandidateItem:
    fields = dict(
        title=f"{prefix.title()} {n}",
        link=f"https://example.com/{prefix}/{n}",
        guid=f"urn:{prefix}:{n}",
        content=f"<p>Body of {prefix} {n}</p>",
        summary=f"Body of {prefix} {n}",
        published_at=T0 - n * 60,
    )
    fields.update(overrides)
    return CandidateItem(**fields)


def make_document(items, title: str = "Example Feed") -> FeedDocument:
    return FeedDocument(
        metadata=FeedMetadata(title=title, site_link="https://example.com/", language="en"),
        items=tuple(items),
    )


class StubFetcher:
    """Fetcher double: serves canned documents or errors per URL and records calls."""

    def __init__(self, responses: Optional[Dict[str, Union[FeedDocument, Exception]]] = None):
        self.responses = responses or {}
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0

    async def fetch(self, url, timeout=None, limit=None):
        self.calls.append((url, limit))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            response = self.responses.get(url)
            if response is None:
                raise FetchError("http_status", "HTTP 404")
            if isinstance(response, Exception):
                raise response
            if limit is not None:
                return FeedDocument(metadata=response.metadata, items=response.items[:limit])
            return response
        finally:
            self.active -= 1

    async def close(self):
        pass


class RecordingBus(EventBus):
    def __init__(self):
        super().__init__()
        self.seen = []
        self.subscribe(self.seen.append)

    def names(self):
        return [event.name for event in self.seen]


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest_asyncio.fixture
async def group_id(db):
    return await db.execute('create_group', name='tech')


async def add_feed(db, group_id, url="https://example.com/feed.xml", frequency=60, now=T0) -> int:
    feed_id = await db.execute('create_feed', url=url, update_frequency=frequency, now=now)
    await db.execute('attach_feed_to_group', feed_id=feed_id, group_id=group_id)
    return feed_id


def make_pipeline(db, fetcher, bus=None) -> IngestionPipeline:
    return IngestionPipeline(db, fetcher, bus or RecordingBus())
