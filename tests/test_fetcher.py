import asyncio
from datetime import datetime, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from errors import FetchError
from fetcher import FeedFetcher, FeedparserDocumentParser, parse_date_enhanced


def rss(count: int, title: str = "Example Feed") -> bytes:
    items = "".join(
        f"""
        <item>
          <title>Item {i}</title>
          <link>https://example.com/items/{i}</link>
          <guid>urn:item:{i}</guid>
          <pubDate>Mon, 17 Nov 2025 {i % 24:02d}:00:00 +0000</pubDate>
          <description>&lt;p&gt;Body {i}&lt;/p&gt;</description>
        </item>"""
        for i in range(count)
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>{title}</title>
    <link>https://example.com/</link>
    <language>en-us</language>
    <description>Things happen</description>
    <lastBuildDate>Mon, 17 Nov 2025 12:00:00 +0000</lastBuildDate>
    {items}
  </channel>
</rss>""".encode("utf-8")


RICH_RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">
  <channel>
    <title>Rich</title>
    <link>https://rich.example/</link>
    <item>
      <title>  Launch day  </title>
      <link>https://rich.example/launch</link>
      <guid isPermaLink="false">launch-1</guid>
      <author>ops@rich.example (Ops)</author>
      <category>news</category>
      <category>space</category>
      <comments>https://rich.example/launch#comments</comments>
      <enclosure url="https://rich.example/launch.mp3" length="100" type="audio/mpeg"/>
      <pubDate>Sat, 15 Nov 2025 16:00:00 +0000</pubDate>
      <description>&lt;p&gt;We have liftoff&lt;/p&gt;</description>
    </item>
    <item>
      <description>No title, no link</description>
    </item>
  </channel>
</rss>"""


@pytest.fixture
def release():
    return asyncio.Event()


async def start_server(release):
    async def feed(request):
        return web.Response(body=rss(60), content_type="application/rss+xml")

    async def missing(request):
        return web.Response(status=404, text="nope")

    async def broken(request):
        return web.Response(text="this is not a feed <<< at all", content_type="text/plain")

    async def slow(request):
        await release.wait()
        return web.Response(body=rss(1), content_type="application/rss+xml")

    async def echo_agent(request):
        return web.Response(body=rss(1, title=request.headers.get("User-Agent", "")), content_type="application/rss+xml")

    app = web.Application()
    app.router.add_get("/feed", feed)
    app.router.add_get("/missing", missing)
    app.router.add_get("/broken", broken)
    app.router.add_get("/slow", slow)
    app.router.add_get("/agent", echo_agent)
    server = TestServer(app)
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_fetch_bounds_items_in_source_order(release):
    server = await start_server(release)
    fetcher = FeedFetcher()
    try:
        first = await fetcher.fetch(str(server.make_url("/feed")), limit=20)
        refresh = await fetcher.fetch(str(server.make_url("/feed")), limit=50)
    finally:
        await fetcher.close()
        await server.close()

    assert len(first.items) == 20
    assert len(refresh.items) == 50
    assert [item.guid for item in first.items[:3]] == ["urn:item:0", "urn:item:1", "urn:item:2"]
    assert first.metadata.title == "Example Feed"
    assert first.metadata.site_link == "https://example.com/"
    assert first.metadata.language == "en-us"
    assert first.metadata.last_build_date == int(datetime(2025, 11, 17, 12, tzinfo=timezone.utc).timestamp())


@pytest.mark.asyncio
async def test_non_2xx_is_fetch_error(release):
    server = await start_server(release)
    fetcher = FeedFetcher()
    try:
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch(str(server.make_url("/missing")))
    finally:
        await fetcher.close()
        await server.close()

    assert excinfo.value.reason == "http_status"
    assert "404" in excinfo.value.describe()


@pytest.mark.asyncio
async def test_malformed_document_is_fetch_error(release):
    server = await start_server(release)
    fetcher = FeedFetcher()
    try:
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch(str(server.make_url("/broken")))
    finally:
        await fetcher.close()
        await server.close()

    assert excinfo.value.reason == "malformed"


@pytest.mark.asyncio
async def test_stalled_fetch_times_out(release):
    server = await start_server(release)
    fetcher = FeedFetcher()
    try:
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch(str(server.make_url("/slow")), timeout=0.2)
    finally:
        release.set()
        await fetcher.close()
        await server.close()

    assert excinfo.value.reason == "timeout"


@pytest.mark.asyncio
async def test_connection_refused_is_network_error():
    fetcher = FeedFetcher()
    try:
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch("http://127.0.0.1:1/feed", timeout=2)
    finally:
        await fetcher.close()

    assert excinfo.value.reason in ("network", "timeout")
    assert excinfo.value.cause is not None


@pytest.mark.asyncio
async def test_user_agent_from_config(release, monkeypatch):
    from config import config
    monkeypatch.setattr(config, "USER_AGENT", "FeedIngestTest/2.0")
    server = await start_server(release)
    fetcher = FeedFetcher()
    try:
        document = await fetcher.fetch(str(server.make_url("/agent")))
    finally:
        await fetcher.close()
        await server.close()

    assert document.metadata.title == "FeedIngestTest/2.0"


def test_parser_maps_item_fields_and_passes_extensions_through():
    document = FeedparserDocumentParser().parse(RICH_RSS, "https://rich.example/rss", 50)

    launch, bare = document.items
    assert launch.title == "Launch day"
    assert launch.link == "https://rich.example/launch"
    assert launch.guid == "launch-1"
    assert launch.categories == ("news", "space")
    assert launch.media_url == "https://rich.example/launch.mp3"
    assert launch.summary == "We have liftoff"
    assert "liftoff" in launch.content
    assert launch.published_at == int(datetime(2025, 11, 15, 16, tzinfo=timezone.utc).timestamp())
    assert launch.extensions.get("comments") == "https://rich.example/launch#comments"

    assert bare.title == "Untitled"
    assert bare.link is None
    assert bare.guid is None


def test_parser_respects_zero_limit():
    document = FeedparserDocumentParser().parse(rss(5), "https://example.com/rss", 0)

    assert document.items == ()
    assert document.metadata.title == "Example Feed"


class DummyEntry(dict):
    """Dict that also exposes attributes like feedparser entries."""

    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as exc:
            raise AttributeError(item) from exc


def test_parse_date_without_weekday():
    entry = DummyEntry(
        pubDate="17 Nov 2025 00:00:00 +0000",
        id="https://example.com/2025/11/17/post",
    )

    expected = int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())
    assert parse_date_enhanced(entry) == expected


def test_parse_date_falls_back_to_id_then_none():
    assert parse_date_enhanced(DummyEntry(id="https://example.com/2024/02/29/leap")) == int(
        datetime(2024, 2, 29, tzinfo=timezone.utc).timestamp()
    )
    assert parse_date_enhanced(DummyEntry(title="undated")) is None
