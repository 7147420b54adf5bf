import asyncio
import sqlite3

import pytest

from conftest import T0, StubFetcher, add_feed, make_document, make_item, make_pipeline
from errors import FeedNotFoundError, PersistenceFailure


@pytest.mark.asyncio
async def test_detach_last_group_deletes_orphan_in_same_operation(db, group_id):
    feed_id = await add_feed(db, group_id)
    await make_pipeline(db, StubFetcher({"https://example.com/feed.xml": make_document([make_item(1)])})).run(feed_id, now=T0)

    remaining, deleted_articles = await db.execute(
        'detach_feed_from_group', feed_id=feed_id, group_id=group_id, delete_orphan=True
    )

    assert (remaining, deleted_articles) == (0, 1)
    with pytest.raises(FeedNotFoundError):
        await db.execute('get_feed', feed_id=feed_id)


@pytest.mark.asyncio
async def test_detach_keeps_feed_that_still_has_groups(db, group_id):
    feed_id = await add_feed(db, group_id)
    other_group = await db.execute('create_group', name='news')
    await db.execute('attach_feed_to_group', feed_id=feed_id, group_id=other_group)

    remaining, deleted_articles = await db.execute(
        'detach_feed_from_group', feed_id=feed_id, group_id=group_id, delete_orphan=True
    )

    assert (remaining, deleted_articles) == (1, None)
    assert (await db.execute('get_feed', feed_id=feed_id)).group_ids == (other_group,)


@pytest.mark.asyncio
async def test_failed_orphan_delete_rolls_back_the_detach(db, group_id, monkeypatch):
    feed_id = await add_feed(db, group_id)

    def failing_delete(feed_id):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "_delete_feed_rows", failing_delete)

    with pytest.raises(PersistenceFailure):
        await db.execute('detach_feed_from_group', feed_id=feed_id, group_id=group_id, delete_orphan=True)

    assert (await db.execute('get_feed', feed_id=feed_id)).group_ids == (group_id,)


@pytest.mark.asyncio
async def test_private_helpers_are_not_operations(db):
    with pytest.raises(AttributeError):
        await db.execute('_delete_feed_rows', feed_id=1)


@pytest.mark.asyncio
async def test_cancelled_caller_leaves_no_pending_state(db):
    waiting = asyncio.create_task(db.execute('count_articles'))
    await asyncio.sleep(0)
    waiting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiting

    await db.queue.join()

    assert db.results == {}
    assert db.events == {}
    assert await db.execute('count_articles') == 0
