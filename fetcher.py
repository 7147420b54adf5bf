#!/usr/bin/env python3
"""
Feed fetcher and document parser.

This module performs one bounded-time HTTP retrieval of a feed and hands the
body to a DocumentParser, which turns raw bytes into feed metadata plus an
ordered, bounded list of candidate items. Retry policy does not live here:
every failure is surfaced once, as a FetchError, and the feed health state
decides when to try again.
"""

from asyncio import get_event_loop, wait_for, TimeoutError
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from itertools import islice
from typing import Any, Dict, List, Optional, Tuple
import re

from aiohttp import ClientError, ClientSession, ClientTimeout
import feedparser
from feedparser.datetimes import _parse_date

from config import config, get_logger
from errors import FetchError
from telemetry import trace_span
from utils import html_to_text

# Module-specific logger
logger = get_logger("fetcher")

# Entry keys mapped onto CandidateItem fields; anything else is passed through
KNOWN_ENTRY_KEYS = {
    'title', 'title_detail', 'link', 'links', 'id', 'guidislink', 'author', 'author_detail',
    'authors', 'content', 'summary', 'summary_detail', 'description', 'published',
    'published_parsed', 'updated', 'updated_parsed', 'created', 'created_parsed',
    'tags', 'enclosures', 'media_content', 'media_thumbnail',
}


@dataclass(frozen=True)
class FeedMetadata:
    title: Optional[str] = None
    site_link: Optional[str] = None
    language: Optional[str] = None
    description: Optional[str] = None
    last_build_date: Optional[int] = None


@dataclass(frozen=True)
class CandidateItem:
    """One entry as published by the source, before deduplication."""

    title: str
    link: Optional[str] = None
    guid: Optional[str] = None
    author: Optional[str] = None
    content: str = ""
    summary: str = ""
    published_at: Optional[int] = None
    categories: Tuple[str, ...] = ()
    media_url: Optional[str] = None
    extensions: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FeedDocument:
    metadata: FeedMetadata
    items: Tuple[CandidateItem, ...] = ()


class DocumentParser:
    """Turns a raw feed body into a FeedDocument.

    Implementations must materialize at most ``limit`` items, in source order,
    and raise FetchError(reason="malformed") for documents they cannot read.
    """

    def parse(self, content: bytes, url: str, limit: int) -> FeedDocument:
        raise NotImplementedError


class FeedparserDocumentParser(DocumentParser):
    """RSS/Atom/RDF parser backed by feedparser."""

    def parse(self, content: bytes, url: str, limit: int) -> FeedDocument:
        parsed = feedparser.parse(
            content,
            sanitize_html=True,
            resolve_relative_uris=True,
            response_headers={'content-location': url},
        )
        entries = parsed.get('entries') or []
        feed_info = parsed.get('feed') or {}

        if parsed.get('bozo'):
            problem = parsed.get('bozo_exception')
            # feedparser is lenient; only give up when nothing usable came out
            if not entries and not feed_info.get('title'):
                raise FetchError("malformed", f"Unparsable feed document from {url}: {problem}", problem)
            logger.warning(f"Feed parsing warning for {url}: {problem}")
        elif not parsed.get('version') and not entries:
            raise FetchError("malformed", f"Unrecognized feed format at {url}")

        metadata = FeedMetadata(
            title=_clean_text(feed_info.get('title')),
            site_link=_clean_text(feed_info.get('link')),
            language=_clean_text(feed_info.get('language')),
            description=html_to_text(feed_info.get('subtitle')) or None,
            last_build_date=parse_date_enhanced(feed_info, ('updated', 'published', 'lastbuilddate')),
        )

        items = tuple(self._to_candidate(entry) for entry in islice(entries, max(limit, 0)))
        logger.debug(f"Parsed {len(items)} of {len(entries)} entries from {url} ({parsed.get('version') or 'unknown'})")
        return FeedDocument(metadata=metadata, items=items)

    def _to_candidate(self, entry) -> CandidateItem:
        content = extract_content(entry)
        summary_source = entry.get('summary') or content
        return CandidateItem(
            title=_clean_text(entry.get('title')) or "Untitled",
            link=_clean_text(entry.get('link')),
            guid=_clean_text(entry.get('id')),
            author=_clean_text(entry.get('author')),
            content=content,
            summary=html_to_text(summary_source),
            published_at=parse_date_enhanced(entry),
            categories=tuple(
                tag.get('term').strip() for tag in entry.get('tags') or [] if tag.get('term')
            ),
            media_url=extract_media_url(entry),
            extensions={
                key: _json_safe(value) for key, value in entry.items() if key not in KNOWN_ENTRY_KEYS
            },
        )


def _clean_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _json_safe(value: Any) -> Any:
    """Reduce feedparser values to plain JSON types for opaque storage."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return str(value)


def extract_content(entry) -> str:
    """Return the richest HTML body available on an entry."""
    for content_item in entry.get('content') or []:
        value = content_item.get('value')
        if value:
            return value
    return entry.get('summary') or entry.get('description') or ""


def extract_media_url(entry) -> Optional[str]:
    """Pick the primary media URL: media:content, then enclosures, then thumbnails."""
    for media in entry.get('media_content') or []:
        if media.get('url'):
            return media['url']
    for enclosure in entry.get('enclosures') or []:
        href = enclosure.get('href') or enclosure.get('url')
        if href:
            return href
    for thumb in entry.get('media_thumbnail') or []:
        if thumb.get('url'):
            return thumb['url']
    return None


DATE_FIELDS = ('published', 'updated', 'created', 'modified', 'date', 'pubDate', 'pubdate', 'issued')


def parse_date_enhanced(entry, fields=DATE_FIELDS) -> Optional[int]:
    """Find a publication timestamp on an entry, trying several fields and formats.

    Returns None when no usable date is present; callers pick their own default.
    """
    if not entry:
        return None

    for name in fields:
        for key in (name, f"{name}_parsed"):
            timestamp = _date_value_to_timestamp(_get_entry_value(entry, key))
            if timestamp:
                return timestamp

    # Some sources only carry the date inside the entry id
    entry_id = _get_entry_value(entry, 'id')
    if isinstance(entry_id, str):
        for pattern in (r'(\d{4})-(\d{2})-(\d{2})', r'(\d{4})/(\d{2})/(\d{2})'):
            match = re.search(pattern, entry_id)
            if match:
                try:
                    year, month, day = map(int, match.groups())
                    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())
                except ValueError:
                    continue
    return None


def _get_entry_value(entry, key: str) -> Any:
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(key)
    return getattr(entry, key, None)


def _date_value_to_timestamp(value: Any) -> Optional[int]:
    if value in (None, ''):
        return None

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())

    if isinstance(value, (list, tuple)):
        # feedparser *_parsed values are UTC struct_times
        try:
            return int(timegm(tuple(value)))
        except (OverflowError, ValueError, TypeError):
            return None

    if isinstance(value, str):
        return _parse_date_string(value.strip())

    return None


def _parse_date_string(date_str: str) -> Optional[int]:
    try:
        time_struct = _parse_date(date_str)
        if time_struct:
            return int(timegm(time_struct))
    except (ValueError, TypeError, OverflowError):
        pass

    try:
        dt = parsedate_to_datetime(date_str)
        if dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
    except (TypeError, ValueError, OverflowError):
        pass

    for fmt in ("%d %b %Y %H:%M:%S %z", "%d %b %Y %H:%M:%S %Z", "%d %b %Y %H:%M:%S"):
        try:
            dt = datetime.strptime(date_str, fmt)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    return None


class FeedFetcher:
    """Single-attempt feed retrieval with a hard timeout."""

    def __init__(self, parser: Optional[DocumentParser] = None, session: Optional[ClientSession] = None) -> None:
        self.parser = parser or FeedparserDocumentParser()
        self.session = session
        self.executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="feed-parse")

    @trace_span(
        "feed.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, timeout=None, limit=None: {
            "http.url": url,
            "feed.item_limit": int(limit or 0),
        },
    )
    async def fetch(self, url: str, timeout: Optional[float] = None, limit: Optional[int] = None) -> FeedDocument:
        """Fetch and parse one feed.

        Raises:
            FetchError: on timeout, network failure, non-2xx status or an unreadable document.
        """
        timeout = timeout or config.HTTP_TIMEOUT
        limit = config.REFRESH_FETCH_ITEMS if limit is None else limit

        try:
            content = await wait_for(self._download(url, timeout), timeout=timeout)
        except TimeoutError as e:
            raise FetchError("timeout", f"Timed out after {timeout}s fetching {url}", e) from e
        except ClientError as e:
            raise FetchError("network", self._format_client_error(e), e) from e
        except OSError as e:
            raise FetchError("network", f"{e.__class__.__name__}: {e}", e) from e

        try:
            document = await get_event_loop().run_in_executor(
                self.executor, partial(self.parser.parse, content, url, limit)
            )
        except FetchError:
            raise
        except (ValueError, TypeError, AttributeError) as e:
            raise FetchError("malformed", f"Failed to parse feed from {url}: {e}", e) from e

        logger.info(f"Fetched {url}: {len(document.items)} items")
        return document

    async def _download(self, url: str, timeout: float) -> bytes:
        if self.session is not None:
            return await self._get(self.session, url, timeout)
        async with ClientSession() as session:
            return await self._get(session, url, timeout)

    async def _get(self, session: ClientSession, url: str, timeout: float) -> bytes:
        async with session.get(
            url,
            headers={'User-Agent': config.USER_AGENT},
            timeout=ClientTimeout(total=timeout),
            max_redirects=config.MAX_REDIRECTS,
        ) as response:
            if not 200 <= response.status < 300:
                logger.warning(f"Error fetching {url}: HTTP {response.status}")
                raise FetchError("http_status", f"HTTP {response.status}")
            return await response.read()

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None and getattr(os_error, 'errno', None) is not None:
            parts.append(f"errno={os_error.errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        """Release the parser thread pool."""
        self.executor.shutdown(wait=False)
        logger.debug("FeedFetcher closed")
