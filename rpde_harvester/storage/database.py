"""Database storage for rpde_harvester.

This module provides async SQLite operations for the control table (one row
per feed: cursor, enabled flag, status) and the per-feed snapshots.
Database location: ~/.rpde_harvester/rpde_harvester.db (or RPDE_HARVESTER_DB_PATH env var)

Every snapshot or cursor save replaces the whole record inside one
transaction. Feed workers share a single connection, so statements are
serialized through a per-connection lock; readers take the same lock and
never observe a half-written snapshot.
"""

import asyncio
import json
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional

import aiosqlite

from rpde_harvester.config import default_db_path
from rpde_harvester.exceptions import PersistenceError
from rpde_harvester.logging_config import get_logger
from rpde_harvester.models.schemas import Feed, FeedStatus, Item, ItemState, Snapshot


# Singleton connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_path_override: Optional[Path] = None

_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


def configure_database(db_path: Optional[Path]) -> None:
    """Use ``db_path`` for the next connection opened by get_database()."""
    global _db_path_override
    _db_path_override = Path(db_path) if db_path else None


async def get_database() -> aiosqlite.Connection:
    """Get or create a singleton database connection.

    Returns:
        Active database connection

    Raises:
        PersistenceError: If the database cannot be opened
    """
    global _db_connection

    if _db_connection is None:
        db_path = _db_path_override or default_db_path()
        try:
            # Ensure directory exists
            db_path.parent.mkdir(parents=True, exist_ok=True)

            connection = await aiosqlite.connect(db_path)
            connection.row_factory = aiosqlite.Row
            await connection.execute("PRAGMA journal_mode=WAL")
            await init_database(connection)
        except (OSError, aiosqlite.Error) as e:
            raise PersistenceError(f"Cannot open database {db_path}: {e}") from e
        _db_connection = connection

    return _db_connection


async def init_database(db: Optional[aiosqlite.Connection] = None) -> None:
    """Initialize database tables if they don't exist.

    Args:
        db: Optional database connection (uses singleton if not provided)
    """
    if db is None:
        db = await get_database()

    await db.execute("""
        CREATE TABLE IF NOT EXISTS feeds (
            id INTEGER PRIMARY KEY,
            stem TEXT NOT NULL UNIQUE,
            cursor TEXT NOT NULL,
            enabled BOOLEAN NOT NULL DEFAULT FALSE,
            last_attempt_at TIMESTAMP,
            last_success_at TIMESTAMP,
            last_error TEXT,
            last_error_kind TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS items (
            feed_id INTEGER NOT NULL,
            item_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            modified TEXT NOT NULL,
            state TEXT NOT NULL,
            kind TEXT,
            payload TEXT,
            source_url TEXT,
            PRIMARY KEY (feed_id, item_id),
            FOREIGN KEY (feed_id) REFERENCES feeds(id)
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_feeds_enabled ON feeds(enabled)
    """)

    await db.commit()


def _lock_for(db: aiosqlite.Connection) -> asyncio.Lock:
    lock = _locks.get(db)
    if lock is None:
        lock = asyncio.Lock()
        _locks[db] = lock
    return lock


@asynccontextmanager
async def _transaction(action: str) -> AsyncIterator[aiosqlite.Connection]:
    """Run the body as one committed unit, rolling back on failure."""
    db = await get_database()
    async with _lock_for(db):
        try:
            yield db
            await db.commit()
        except aiosqlite.Error as e:
            await _rollback(db)
            raise PersistenceError(f"Failed to {action}: {e}") from e
        except BaseException:
            # Never leave an open transaction behind on the shared connection
            await _rollback(db)
            raise


async def _rollback(db: aiosqlite.Connection) -> None:
    try:
        await db.rollback()
    except aiosqlite.Error as e:
        get_logger(__name__).error(f"Rollback failed: {e}")


@asynccontextmanager
async def _reading(action: str) -> AsyncIterator[aiosqlite.Connection]:
    db = await get_database()
    async with _lock_for(db):
        try:
            yield db
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to {action}: {e}") from e


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_feed(row: aiosqlite.Row) -> Feed:
    return Feed(
        id=row["id"],
        stem=row["stem"],
        cursor=row["cursor"],
        enabled=bool(row["enabled"]),
        last_attempt_at=_parse_ts(row["last_attempt_at"]),
        last_success_at=_parse_ts(row["last_success_at"]),
        last_error=row["last_error"],
        last_error_kind=row["last_error_kind"],
    )


def _row_to_item(row: aiosqlite.Row) -> Item:
    return Item(
        id=row["item_id"],
        modified=json.loads(row["modified"]),
        state=ItemState(row["state"]),
        payload=json.loads(row["payload"]) if row["payload"] is not None else None,
        kind=row["kind"],
        source_url=row["source_url"],
    )


# ---------------------------------------------------------------------------
# Control table
# ---------------------------------------------------------------------------


async def register_feed(stem: str) -> Feed:
    """Add a feed to the control table, or return the existing one.

    The cursor starts at the stem and the feed starts disabled.

    Args:
        stem: First page URL of the feed

    Returns:
        The registered Feed
    """
    async with _transaction("register feed") as db:
        await db.execute(
            "INSERT OR IGNORE INTO feeds (stem, cursor, enabled) VALUES (?, ?, 0)",
            (stem, stem),
        )
        cursor = await db.execute("SELECT * FROM feeds WHERE stem = ?", (stem,))
        row = await cursor.fetchone()

    return _row_to_feed(row)


async def register_feeds(stems: Iterable[str]) -> int:
    """Register many feeds at once.

    Returns:
        Number of feeds that were not registered before
    """
    added = 0
    async with _transaction("register feeds") as db:
        for stem in stems:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO feeds (stem, cursor, enabled) VALUES (?, ?, 0)",
                (stem, stem),
            )
            added += cursor.rowcount
    return added


async def get_feed(feed_id: int) -> Optional[Feed]:
    """Get a feed by id.

    Returns:
        Feed if found, None otherwise
    """
    async with _reading("read feed") as db:
        cursor = await db.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        row = await cursor.fetchone()

    return _row_to_feed(row) if row is not None else None


async def list_feeds(enabled_only: bool = False) -> List[Feed]:
    """List feeds ordered by id.

    Args:
        enabled_only: Only return feeds with the enabled flag set
    """
    query = "SELECT * FROM feeds"
    if enabled_only:
        query += " WHERE enabled = 1"
    query += " ORDER BY id"

    async with _reading("list feeds") as db:
        cursor = await db.execute(query)
        rows = await cursor.fetchall()

    return [_row_to_feed(row) for row in rows]


async def set_enabled(feed_ids: Iterable[int], enabled: bool = True) -> int:
    """Set or clear the enabled flag on the given feeds.

    Returns:
        Number of feeds updated
    """
    ids = list(feed_ids)
    if not ids:
        return 0

    placeholders = ",".join("?" * len(ids))
    async with _transaction("update enabled flags") as db:
        cursor = await db.execute(
            f"UPDATE feeds SET enabled = ? WHERE id IN ({placeholders})",
            [1 if enabled else 0] + ids,
        )
    return cursor.rowcount


async def enable_only(feed_ids: Iterable[int]) -> int:
    """Enable exactly the given feeds and disable every other feed.

    Returns:
        Number of feeds enabled
    """
    ids = list(feed_ids)
    placeholders = ",".join("?" * len(ids))

    async with _transaction("select feeds") as db:
        await db.execute("UPDATE feeds SET enabled = 0")
        if not ids:
            return 0
        cursor = await db.execute(
            f"UPDATE feeds SET enabled = 1 WHERE id IN ({placeholders})",
            ids,
        )
    return cursor.rowcount


async def load_cursor(feed_id: int) -> str:
    """Get the URL a feed should be read from next.

    Raises:
        ValueError: If the feed does not exist
    """
    async with _reading("load cursor") as db:
        cursor = await db.execute("SELECT cursor FROM feeds WHERE id = ?", (feed_id,))
        row = await cursor.fetchone()

    if row is None:
        raise ValueError(f"Feed {feed_id} not found")
    return row["cursor"]


async def save_cursor(feed_id: int, url: str) -> None:
    """Replace the feed's cursor."""
    async with _transaction("save cursor") as db:
        await db.execute("UPDATE feeds SET cursor = ? WHERE id = ?", (url, feed_id))


async def record_success(feed_id: int) -> None:
    """Stamp a successful page fetch and clear the last error."""
    now = _now()
    async with _transaction("record success") as db:
        await db.execute(
            """
            UPDATE feeds
            SET last_attempt_at = ?, last_success_at = ?,
                last_error = NULL, last_error_kind = NULL
            WHERE id = ?
            """,
            (now, now, feed_id),
        )


async def record_error(feed_id: int, kind: str, message: str) -> None:
    """Stamp a failed attempt with its error kind and message."""
    async with _transaction("record error") as db:
        await db.execute(
            """
            UPDATE feeds
            SET last_attempt_at = ?, last_error = ?, last_error_kind = ?
            WHERE id = ?
            """,
            (_now(), message, kind, feed_id),
        )


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


async def load_snapshot(feed_id: int) -> Snapshot:
    """Load a feed's snapshot.

    Returns:
        Mapping of item id to Item in stored order (empty if nothing stored)
    """
    async with _reading("load snapshot") as db:
        cursor = await db.execute(
            "SELECT * FROM items WHERE feed_id = ? ORDER BY position",
            (feed_id,),
        )
        rows = await cursor.fetchall()

    return {row["item_id"]: _row_to_item(row) for row in rows}


async def save_snapshot(feed_id: int, snapshot: Snapshot) -> None:
    """Replace a feed's stored snapshot with ``snapshot``.

    Raises:
        PersistenceError: If the write fails; the previous snapshot is kept
    """
    try:
        rows = [
            (
                feed_id,
                item.id,
                position,
                json.dumps(item.modified),
                item.state.value,
                item.kind,
                json.dumps(item.payload) if item.payload is not None else None,
                item.source_url,
            )
            for position, item in enumerate(snapshot.values())
        ]
    except (TypeError, ValueError) as e:
        raise PersistenceError(f"Snapshot for feed {feed_id} is not serializable: {e}") from e

    async with _transaction("save snapshot") as db:
        await db.execute("DELETE FROM items WHERE feed_id = ?", (feed_id,))
        await db.executemany(
            """
            INSERT INTO items
                (feed_id, item_id, position, modified, state, kind, payload, source_url)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )


async def count_items(feed_id: int) -> int:
    """Number of items in a feed's snapshot."""
    async with _reading("count items") as db:
        cursor = await db.execute(
            "SELECT COUNT(*) as count FROM items WHERE feed_id = ?", (feed_id,)
        )
        row = await cursor.fetchone()
    return row["count"]


async def feed_statuses(feed_ids: Optional[Iterable[int]] = None) -> List[FeedStatus]:
    """Status rows for all feeds, or only the given ones."""
    wanted = set(feed_ids) if feed_ids is not None else None

    async with _reading("read feed status") as db:
        cursor = await db.execute("""
            SELECT f.*, COUNT(i.item_id) as item_count
            FROM feeds f
            LEFT JOIN items i ON f.id = i.feed_id
            GROUP BY f.id
            ORDER BY f.id
        """)
        rows = await cursor.fetchall()

    return [
        FeedStatus(feed=_row_to_feed(row), item_count=row["item_count"])
        for row in rows
        if wanted is None or row["id"] in wanted
    ]


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    if _db_connection is not None:
        await _db_connection.close()
        _db_connection = None
