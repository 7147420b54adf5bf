import asyncio

import pytest

from conftest import T0, StubFetcher, add_feed, make_document, make_item, make_pipeline
from errors import FetchError
from health import INACTIVE, mark_errored
from scheduler import FeedScheduler, LeaseTable, run_sweep


def feed_url(n: int) -> str:
    return f"https://feeds.example/{n}.xml"


@pytest.mark.asyncio
async def test_tick_selects_most_overdue_first_up_to_batch(db, group_id):
    fetcher = StubFetcher()
    ids = {}
    for n, due_at in ((1, T0 - 10), (2, T0 - 500), (3, T0 + 60), (4, T0 - 100)):
        ids[n] = await add_feed(db, group_id, url=feed_url(n), now=due_at)
        fetcher.responses[feed_url(n)] = make_document([make_item(n, prefix=f"f{n}")])
    scheduler = FeedScheduler(db, make_pipeline(db, fetcher), worker_limit=1)

    result = await scheduler.tick(batch_size=2, now=T0)

    assert [url for url, _ in fetcher.calls] == [feed_url(2), feed_url(4)]
    assert sorted(r.feed_id for r in result.succeeded) == sorted([ids[2], ids[4]])
    assert result.failed == []


@pytest.mark.asyncio
async def test_inactive_and_switched_off_feeds_are_never_selected(db, group_id):
    fetcher = StubFetcher()
    disabled = await add_feed(db, group_id, url=feed_url(1), now=T0 - 1000)
    switched_off = await add_feed(db, group_id, url=feed_url(2), now=T0 - 1000)
    for url in (feed_url(1), feed_url(2)):
        fetcher.responses[url] = make_document([make_item(1)])

    feed = await db.execute('get_feed', feed_id=disabled)
    for _ in range(5):
        feed = mark_errored(feed, "HTTP 500", T0 - 2000)
    assert feed.status == INACTIVE
    assert feed.next_fetch_at <= T0 + 86400
    await db.execute('save_feed_health', feed=feed)
    await db.execute('set_feed_active', feed_id=switched_off, is_active=False)

    scheduler = FeedScheduler(db, make_pipeline(db, fetcher))
    result = await scheduler.tick(now=T0 + 10 * 86400)

    assert fetcher.calls == []
    assert result.succeeded == [] and result.failed == [] and result.skipped == []


@pytest.mark.asyncio
async def test_tick_partitions_results_and_never_raises(db, group_id):
    fetcher = StubFetcher()
    good = await add_feed(db, group_id, url=feed_url(1), now=T0 - 30)
    bad = await add_feed(db, group_id, url=feed_url(2), now=T0 - 20)
    weird = await add_feed(db, group_id, url=feed_url(3), now=T0 - 10)
    fetcher.responses[feed_url(1)] = make_document([make_item(1)])
    fetcher.responses[feed_url(2)] = FetchError("timeout", "Timed out after 10s")
    fetcher.responses[feed_url(3)] = RuntimeError("parser exploded")
    scheduler = FeedScheduler(db, make_pipeline(db, fetcher))

    result = await scheduler.tick(now=T0)

    assert [r.feed_id for r in result.succeeded] == [good]
    failures = {f.feed_id: f for f in result.failed}
    assert failures[bad].kind == "fetch"
    assert failures[bad].reason.startswith("timeout")
    assert failures[weird].kind == "unexpected"
    assert "parser exploded" in failures[weird].reason
    assert (await db.execute('get_feed', feed_id=bad)).status == "error"


@pytest.mark.asyncio
async def test_worker_limit_bounds_concurrency_independently_of_batch(db, group_id):
    fetcher = StubFetcher()
    for n in range(6):
        await add_feed(db, group_id, url=feed_url(n), now=T0 - n)
        fetcher.responses[feed_url(n)] = make_document([make_item(n, prefix=f"f{n}")])
    fetcher.gate = asyncio.Event()
    scheduler = FeedScheduler(db, make_pipeline(db, fetcher), worker_limit=2)

    tick = asyncio.create_task(scheduler.tick(batch_size=6, now=T0))
    for _ in range(50):
        await asyncio.sleep(0.01)
        if fetcher.active == 2:
            break
    assert fetcher.active == 2
    fetcher.gate.set()
    result = await tick

    assert fetcher.max_active == 2
    assert len(result.succeeded) == 6


@pytest.mark.asyncio
async def test_refresh_one_skips_when_already_in_flight(db, group_id):
    feed_id = await add_feed(db, group_id, url=feed_url(1))
    fetcher = StubFetcher({feed_url(1): make_document([make_item(1)])})
    fetcher.gate = asyncio.Event()
    scheduler = FeedScheduler(db, make_pipeline(db, fetcher))

    scheduled = asyncio.create_task(scheduler.tick(now=T0))
    for _ in range(50):
        await asyncio.sleep(0.01)
        if fetcher.active:
            break
    manual = await scheduler.refresh_one(feed_id, now=T0)
    fetcher.gate.set()
    result = await scheduled

    assert manual.skipped is True
    assert len(fetcher.calls) == 1
    assert [r.new_article_count for r in result.succeeded] == [1]
    assert not scheduler.leases.held(feed_id)


@pytest.mark.asyncio
async def test_tick_reports_in_flight_feed_as_skipped(db, group_id):
    feed_id = await add_feed(db, group_id, url=feed_url(1))
    scheduler = FeedScheduler(db, make_pipeline(db, StubFetcher()))
    token = scheduler.leases.acquire(feed_id)

    result = await scheduler.tick(now=T0)

    assert result.skipped == [feed_id]
    scheduler.leases.release(feed_id, token)


@pytest.mark.asyncio
async def test_refresh_one_raises_fetch_error_and_releases_lease(db, group_id):
    feed_id = await add_feed(db, group_id, url=feed_url(1))
    scheduler = FeedScheduler(db, make_pipeline(db, StubFetcher()))

    with pytest.raises(FetchError):
        await scheduler.refresh_one(feed_id, now=T0)

    assert not scheduler.leases.held(feed_id)


@pytest.mark.asyncio
async def test_manual_refresh_bypasses_schedule_and_reactivates(db, group_id):
    feed_id = await add_feed(db, group_id, url=feed_url(1))
    feed = await db.execute('get_feed', feed_id=feed_id)
    for _ in range(5):
        feed = mark_errored(feed, "HTTP 500", T0)
    await db.execute('save_feed_health', feed=feed)
    scheduler = FeedScheduler(db, make_pipeline(db, StubFetcher({feed_url(1): make_document([make_item(1)])})))

    result = await scheduler.refresh_one(feed_id, now=T0)

    assert result.new_article_count == 1
    assert result.ahead_of_schedule is True
    assert (await db.execute('get_feed', feed_id=feed_id)).status == "active"


@pytest.mark.asyncio
async def test_reset_health_makes_inactive_feed_due_again(db, group_id):
    feed_id = await add_feed(db, group_id, url=feed_url(1))
    feed = await db.execute('get_feed', feed_id=feed_id)
    for _ in range(5):
        feed = mark_errored(feed, "HTTP 500", T0)
    await db.execute('save_feed_health', feed=feed)
    await db.execute('recompute_group_stats', group_id=group_id, now=T0)
    fetcher = StubFetcher({feed_url(1): make_document([make_item(1)])})
    scheduler = FeedScheduler(db, make_pipeline(db, fetcher))

    reset = await scheduler.reset_health(feed_id, now=T0 + 60)
    group = await db.execute('get_group', group_id=group_id)
    result = await scheduler.tick(now=T0 + 60)

    assert reset.status == "active"
    assert reset.consecutive_attempts == 0
    assert reset.next_fetch_at == T0 + 60
    assert group.active_feeds == 1
    assert [r.feed_id for r in result.succeeded] == [feed_id]
    assert result.succeeded[0].ahead_of_schedule is False


@pytest.mark.asyncio
async def test_tick_rejects_non_positive_batch(db):
    scheduler = FeedScheduler(db, make_pipeline(db, StubFetcher()))

    with pytest.raises(ValueError):
        await scheduler.tick(batch_size=0)


@pytest.mark.asyncio
async def test_selection_failure_becomes_failed_entry(db):
    scheduler = FeedScheduler(db, make_pipeline(db, StubFetcher()))
    await db.stop()

    result = await scheduler.tick(now=T0)

    assert len(result.failed) == 1
    assert result.failed[0].feed_id is None
    assert result.failed[0].kind == "persistence"


@pytest.mark.asyncio
async def test_run_sweep_stops_after_max_ticks(db, group_id):
    await add_feed(db, group_id, url=feed_url(1), now=0)
    fetcher = StubFetcher({feed_url(1): make_document([make_item(1)])})
    scheduler = FeedScheduler(db, make_pipeline(db, fetcher))

    ticks = await run_sweep(scheduler, interval_seconds=0.01, max_ticks=2)

    assert ticks == 2
    assert len(fetcher.calls) == 1


def test_lease_table_expires_abandoned_leases():
    clock = [100.0]
    leases = LeaseTable(ttl_seconds=30, clock=lambda: clock[0])

    token = leases.acquire(7)
    assert token is not None
    assert leases.acquire(7) is None
    assert len(leases) == 1

    clock[0] += 31
    taken_over = leases.acquire(7)
    assert taken_over is not None
    assert leases.release(7, token) is False
    assert leases.held(7)
    assert leases.release(7, taken_over) is True
    assert not leases.held(7)
