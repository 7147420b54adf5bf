#!/usr/bin/env python3
"""
Records and database operations for the ingestion service.

This module contains the typed records passed between components and the
DatabaseQueue, which serializes all sqlite access through one worker task.
Uniqueness of articles (link, guid, content hash) is enforced here by the
schema, not by callers.
"""

from os import path, access, R_OK
from time import time
import json
import sqlite3
from sqlite3 import connect, Row
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from dataclasses import dataclass, field
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any, Tuple

from config import config, get_logger
from errors import FeedNotFoundError, PersistenceConflict, PersistenceFailure
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

FEED_STATUSES = ("pending", "active", "error", "inactive")
MIN_UPDATE_FREQUENCY = 5
MAX_UPDATE_FREQUENCY = 1440


def validate_update_frequency(minutes: int) -> int:
    """Return ``minutes`` if it is a valid polling frequency, else raise ValueError."""
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ValueError(f"update frequency must be an integer, got {minutes!r}")
    if not MIN_UPDATE_FREQUENCY <= minutes <= MAX_UPDATE_FREQUENCY:
        raise ValueError(
            f"update frequency must be between {MIN_UPDATE_FREQUENCY} and {MAX_UPDATE_FREQUENCY} minutes, got {minutes}"
        )
    return minutes


@dataclass(frozen=True)
class LastError:
    """Most recent fetch failure of a feed."""

    message: str
    occurred_at: int
    consecutive_attempts: int


@dataclass(frozen=True)
class FeedRecord:
    """One subscribed source together with its health and aggregate stats."""

    id: int
    url: str
    next_fetch_at: int
    update_frequency_minutes: int = 60
    status: str = "pending"
    is_active: bool = True
    title: Optional[str] = None
    site_link: Optional[str] = None
    language: Optional[str] = None
    description: Optional[str] = None
    last_build_date: Optional[int] = None
    last_fetched_at: Optional[int] = None
    last_error: Optional[LastError] = None
    fetch_count: int = 0
    error_count: int = 0
    total_articles: int = 0
    average_articles_per_fetch: float = 0.0
    last_article_at: Optional[int] = None
    created_at: int = 0
    group_ids: Tuple[int, ...] = ()

    @property
    def consecutive_attempts(self) -> int:
        return self.last_error.consecutive_attempts if self.last_error else 0

    @property
    def label(self) -> str:
        return self.title or self.url

    @classmethod
    def from_row(cls, row: Row, group_ids: Tuple[int, ...] = ()) -> "FeedRecord":
        last_error = None
        if row["last_error_message"] is not None or row["consecutive_attempts"]:
            last_error = LastError(
                message=row["last_error_message"] or "",
                occurred_at=row["last_error_at"] or 0,
                consecutive_attempts=row["consecutive_attempts"] or 0,
            )
        return cls(
            id=row["id"],
            url=row["url"],
            next_fetch_at=row["next_fetch_at"],
            update_frequency_minutes=row["update_frequency"],
            status=row["status"],
            is_active=bool(row["is_active"]),
            title=row["title"],
            site_link=row["site_link"],
            language=row["language"],
            description=row["description"],
            last_build_date=row["last_build_date"],
            last_fetched_at=row["last_fetched_at"],
            last_error=last_error,
            fetch_count=row["fetch_count"],
            error_count=row["error_count"],
            total_articles=row["total_articles"],
            average_articles_per_fetch=float(row["average_articles_per_fetch"]),
            last_article_at=row["last_article_at"],
            created_at=row["created_at"],
            group_ids=group_ids,
        )


@dataclass(frozen=True)
class ArticleRecord:
    """An ingested item, ready to be inserted."""

    feed_id: int
    title: str
    content_hash: str
    link: Optional[str] = None
    guid: Optional[str] = None
    author: Optional[str] = None
    content_html: str = ""
    content_markdown: str = ""
    summary: str = ""
    published_at: Optional[int] = None
    categories: Tuple[str, ...] = ()
    media_url: Optional[str] = None
    reading_time_minutes: int = 1
    extensions: Dict[str, Any] = field(default_factory=dict)
    created_at: int = 0


@dataclass(frozen=True)
class GroupRecord:
    """Aggregate counters of a group, as last recomputed."""

    id: int
    name: str
    total_feeds: int = 0
    active_feeds: int = 0
    total_articles: int = 0
    unread_articles: int = 0
    stats_updated_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Row) -> "GroupRecord":
        return cls(
            id=row["id"],
            name=row["name"],
            total_feeds=row["total_feeds"],
            active_feeds=row["active_feeds"],
            total_articles=row["total_articles"],
            unread_articles=row["unread_articles"],
            stats_updated_at=row["stats_updated_at"],
        )


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def _translate_error(error: BaseException) -> BaseException:
    """Map sqlite errors onto the ingestion error taxonomy."""
    if isinstance(error, sqlite3.IntegrityError):
        return PersistenceConflict(str(error))
    if isinstance(error, sqlite3.Error):
        return PersistenceFailure(str(error))
    return error


class DatabaseQueue:
    """A queue for database operations so that one connection serves all tasks.

    Operations are the public synchronous methods below; callers run them with
    ``await db.execute('operation_name', **params)``. Errors raised by an
    operation are re-raised in the caller, translated to PersistenceConflict or
    PersistenceFailure when they come from sqlite.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Event] = {}
        self.conn: Optional[sqlite3.Connection] = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the worker."""
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot open database {self.db_path}: {e}") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Wake any callers still waiting; execute() reports them as failures
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if method is None or operation_name.startswith('_'):
                        raise AttributeError(f"Unknown operation: {operation_name}")
                    outcome = {"result": method(**params)}
                except Exception as e:
                    if not isinstance(e, (sqlite3.IntegrityError, LookupError)):
                        logger.error(f"Database operation error in {operation_name}: {e}")
                    outcome = {"error": e}
                finally:
                    self.queue.task_done()

                # A caller cancelled while queued is no longer waiting
                if operation_id in self.events:
                    self.results[operation_id] = outcome
                    self.events[operation_id].set()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation."""
        if not self.running:
            raise PersistenceFailure("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise PersistenceFailure(f"Database stopped before {operation_name} completed")
            if "error" in result:
                error = result["error"]
                translated = _translate_error(error)
                if translated is error:
                    raise error
                raise translated from error
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Group Operations
    def create_group(self, name: str) -> int:
        """Create a group if missing and return its id."""
        with self.conn:
            self.conn.execute("INSERT OR IGNORE INTO feed_groups (name) VALUES (?)", (name,))
        row = self.conn.execute("SELECT id FROM feed_groups WHERE name = ?", (name,)).fetchone()
        return row["id"]

    def get_group(self, group_id: int) -> GroupRecord:
        row = self.conn.execute("SELECT * FROM feed_groups WHERE id = ?", (group_id,)).fetchone()
        if row is None:
            raise LookupError(f"Group {group_id} not found")
        return GroupRecord.from_row(row)

    def list_groups(self) -> List[GroupRecord]:
        rows = self.conn.execute("SELECT * FROM feed_groups ORDER BY name").fetchall()
        return [GroupRecord.from_row(row) for row in rows]

    def recompute_group_stats(self, group_id: int, now: Optional[int] = None) -> GroupRecord:
        """Recompute a group's counters from current storage state.

        Unread means no reader at all, across every user.
        """
        now = int(time()) if now is None else now
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN f.is_active = 1 AND f.status != 'inactive' THEN 1 ELSE 0 END), 0) AS active
                FROM feed_group_members m
                JOIN feeds f ON f.id = m.feed_id
                WHERE m.group_id = ?
                """,
                (group_id,),
            )
            feeds_row = cursor.fetchone()
            cursor.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN NOT EXISTS (
                           SELECT 1 FROM article_reads r WHERE r.article_id = a.id
                       ) THEN 1 ELSE 0 END), 0) AS unread
                FROM articles a
                WHERE a.feed_id IN (SELECT feed_id FROM feed_group_members WHERE group_id = ?)
                """,
                (group_id,),
            )
            articles_row = cursor.fetchone()
            with self.conn:
                cursor.execute(
                    """
                    UPDATE feed_groups
                    SET total_feeds = ?, active_feeds = ?, total_articles = ?, unread_articles = ?, stats_updated_at = ?
                    WHERE id = ?
                    """,
                    (feeds_row["total"], feeds_row["active"], articles_row["total"], articles_row["unread"], now, group_id),
                )
                if cursor.rowcount == 0:
                    raise LookupError(f"Group {group_id} not found")
        finally:
            cursor.close()
        return self.get_group(group_id)

    # Feed Management Operations
    def create_feed(
        self,
        url: str,
        update_frequency: int,
        now: Optional[int] = None,
        title: Optional[str] = None,
    ) -> int:
        """Register a new pending feed, due immediately. Raises on duplicate URL."""
        validate_update_frequency(update_frequency)
        now = int(time()) if now is None else now
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO feeds (url, title, update_frequency, status, next_fetch_at, created_at)
                VALUES (?, ?, ?, 'pending', ?, ?)
                """,
                (url, title, update_frequency, now, now),
            )
        return cursor.lastrowid

    def _group_ids_for(self, feed_id: int) -> Tuple[int, ...]:
        rows = self.conn.execute(
            "SELECT group_id FROM feed_group_members WHERE feed_id = ? ORDER BY group_id", (feed_id,)
        ).fetchall()
        return tuple(row["group_id"] for row in rows)

    def get_feed(self, feed_id: int) -> FeedRecord:
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        if row is None:
            raise FeedNotFoundError(feed_id)
        return FeedRecord.from_row(row, self._group_ids_for(feed_id))

    def get_feed_by_url(self, url: str) -> Optional[FeedRecord]:
        row = self.conn.execute("SELECT * FROM feeds WHERE url = ?", (url,)).fetchone()
        if row is None:
            return None
        return FeedRecord.from_row(row, self._group_ids_for(row["id"]))

    def list_feeds(self) -> List[FeedRecord]:
        rows = self.conn.execute("SELECT * FROM feeds ORDER BY id").fetchall()
        return [FeedRecord.from_row(row, self._group_ids_for(row["id"])) for row in rows]

    def select_due_feeds(self, now: int, limit: int) -> List[FeedRecord]:
        """Feeds eligible for polling, most overdue first."""
        rows = self.conn.execute(
            """
            SELECT * FROM feeds
            WHERE is_active = 1 AND status != 'inactive' AND next_fetch_at <= ?
            ORDER BY next_fetch_at ASC, id ASC
            LIMIT ?
            """,
            (now, limit),
        ).fetchall()
        return [FeedRecord.from_row(row, self._group_ids_for(row["id"])) for row in rows]

    def attach_feed_to_group(self, feed_id: int, group_id: int) -> bool:
        """Add a feed to a group. Returns False if it was already a member."""
        with self.conn:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO feed_group_members (group_id, feed_id) VALUES (?, ?)",
                (group_id, feed_id),
            )
        return cursor.rowcount > 0

    def detach_feed_from_group(self, feed_id: int, group_id: int, delete_orphan: bool = False) -> Tuple[int, Optional[int]]:
        """Remove a feed (and its articles) from a group.

        Returns the number of groups the feed still belongs to and, when
        ``delete_orphan`` removed a feed left without groups, how many articles
        went with it (None otherwise). Both steps share one transaction.
        """
        deleted_articles = None
        with self.conn:
            self.conn.execute(
                "DELETE FROM feed_group_members WHERE group_id = ? AND feed_id = ?", (group_id, feed_id)
            )
            self.conn.execute(
                """
                DELETE FROM article_group_members
                WHERE group_id = ? AND article_id IN (SELECT id FROM articles WHERE feed_id = ?)
                """,
                (group_id, feed_id),
            )
            remaining = len(self._group_ids_for(feed_id))
            if delete_orphan and remaining == 0:
                deleted_articles = self._delete_feed_rows(feed_id)
        return remaining, deleted_articles

    def _delete_feed_rows(self, feed_id: int) -> int:
        """Delete a feed and, by cascade, its articles. Runs inside the caller's transaction."""
        articles = self.conn.execute(
            "SELECT COUNT(*) FROM articles WHERE feed_id = ?", (feed_id,)
        ).fetchone()[0]
        cursor = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        if cursor.rowcount == 0:
            raise FeedNotFoundError(feed_id)
        return articles

    def set_feed_active(self, feed_id: int, is_active: bool) -> None:
        with self.conn:
            cursor = self.conn.execute("UPDATE feeds SET is_active = ? WHERE id = ?", (int(is_active), feed_id))
        if cursor.rowcount == 0:
            raise FeedNotFoundError(feed_id)

    def set_update_frequency(self, feed_id: int, update_frequency: int) -> None:
        validate_update_frequency(update_frequency)
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE feeds SET update_frequency = ? WHERE id = ?", (update_frequency, feed_id)
            )
        if cursor.rowcount == 0:
            raise FeedNotFoundError(feed_id)

    def save_feed_health(self, feed: FeedRecord) -> None:
        """Persist the health and statistics fields of a feed record."""
        last_error = feed.last_error
        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE feeds SET
                    status = ?, last_fetched_at = ?, next_fetch_at = ?,
                    last_error_message = ?, last_error_at = ?, consecutive_attempts = ?,
                    fetch_count = ?, error_count = ?, total_articles = ?,
                    average_articles_per_fetch = ?, last_article_at = ?
                WHERE id = ?
                """,
                (
                    feed.status,
                    feed.last_fetched_at,
                    feed.next_fetch_at,
                    last_error.message if last_error else None,
                    last_error.occurred_at if last_error else None,
                    feed.consecutive_attempts,
                    feed.fetch_count,
                    feed.error_count,
                    feed.total_articles,
                    feed.average_articles_per_fetch,
                    feed.last_article_at,
                    feed.id,
                ),
            )
        if cursor.rowcount == 0:
            raise FeedNotFoundError(feed.id)

    def update_feed_metadata(
        self,
        feed_id: int,
        title: Optional[str] = None,
        site_link: Optional[str] = None,
        language: Optional[str] = None,
        description: Optional[str] = None,
        last_build_date: Optional[int] = None,
    ) -> None:
        """Store feed-level metadata. None values keep what is stored; an existing title is never replaced."""
        with self.conn:
            self.conn.execute(
                """
                UPDATE feeds SET
                    title = COALESCE(title, ?),
                    site_link = COALESCE(?, site_link),
                    language = COALESCE(?, language),
                    description = COALESCE(?, description),
                    last_build_date = COALESCE(?, last_build_date)
                WHERE id = ?
                """,
                (title, site_link, language, description, last_build_date, feed_id),
            )

    # Article Operations
    def get_known_identities(self, feed_id: int) -> Tuple[Set[str], Set[str]]:
        """Links and guids of articles already stored for a feed."""
        rows = self.conn.execute("SELECT link, guid FROM articles WHERE feed_id = ?", (feed_id,)).fetchall()
        links = {row["link"] for row in rows if row["link"]}
        guids = {row["guid"] for row in rows if row["guid"]}
        return links, guids

    def insert_article(self, article: ArticleRecord, group_ids: List[int]) -> int:
        """Insert one article and its group links atomically.

        A uniqueness violation rolls the transaction back and surfaces to the
        caller as PersistenceConflict.
        """
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO articles (
                    feed_id, title, link, guid, content_hash, author, content_html, content_markdown,
                    summary, published_at, categories, media_url, reading_time, extensions, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    article.feed_id,
                    article.title,
                    article.link,
                    article.guid,
                    article.content_hash,
                    article.author,
                    article.content_html,
                    article.content_markdown,
                    article.summary,
                    article.published_at,
                    json.dumps(list(article.categories)),
                    article.media_url,
                    article.reading_time_minutes,
                    json.dumps(article.extensions, default=str) if article.extensions else None,
                    article.created_at,
                ),
            )
            article_id = cursor.lastrowid
            self.conn.executemany(
                "INSERT OR IGNORE INTO article_group_members (article_id, group_id) VALUES (?, ?)",
                [(article_id, group_id) for group_id in group_ids],
            )
        return article_id

    def list_articles(self, feed_id: int) -> List[Dict[str, Any]]:
        """Articles of a feed, newest first, with their group ids."""
        rows = self.conn.execute(
            "SELECT * FROM articles WHERE feed_id = ? ORDER BY published_at DESC, id DESC", (feed_id,)
        ).fetchall()
        articles = []
        for row in rows:
            item = dict(row)
            item['categories'] = json.loads(row['categories']) if row['categories'] else []
            item['extensions'] = json.loads(row['extensions']) if row['extensions'] else {}
            item['group_ids'] = [
                r["group_id"] for r in self.conn.execute(
                    "SELECT group_id FROM article_group_members WHERE article_id = ? ORDER BY group_id",
                    (row['id'],),
                ).fetchall()
            ]
            articles.append(item)
        return articles

    def count_articles(self, feed_id: Optional[int] = None) -> int:
        """Return number of stored articles, optionally for one feed."""
        if feed_id is None:
            row = self.conn.execute("SELECT COUNT(*) FROM articles").fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM articles WHERE feed_id = ?", (feed_id,)).fetchone()
        return int(row[0]) if row else 0

    def mark_article_read(self, article_id: int, user_id: str, now: Optional[int] = None) -> bool:
        """Record that a user read an article (used by the reading collaborator)."""
        now = int(time()) if now is None else now
        with self.conn:
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO article_reads (article_id, user_id, read_at) VALUES (?, ?, ?)",
                (article_id, user_id, now),
            )
        return cursor.rowcount > 0
