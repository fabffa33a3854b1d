"""Persistent SQLite store for captures."""

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Union

from loguru import logger

from .capture import Capture, CaptureType, utc_now
from .errors import MigrationError, StorageError, StoreOpenError

IN_MEMORY = ":memory:"

# Each entry brings the schema from version index to index + 1.
MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS captures (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        source_app TEXT,
        content TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        capture_type TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );

    CREATE INDEX IF NOT EXISTS idx_captures_timestamp
    ON captures(timestamp DESC);

    CREATE INDEX IF NOT EXISTS idx_captures_content_hash
    ON captures(content_hash);

    CREATE INDEX IF NOT EXISTS idx_captures_source_app
    ON captures(source_app);

    CREATE INDEX IF NOT EXISTS idx_captures_capture_type
    ON captures(capture_type);

    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
    """,
    """
    DELETE FROM captures
    WHERE id NOT IN (SELECT MIN(id) FROM captures GROUP BY content_hash);

    DROP INDEX IF EXISTS idx_captures_content_hash;

    CREATE UNIQUE INDEX IF NOT EXISTS idx_captures_content_hash_unique
    ON captures(content_hash);
    """,
]

SCHEMA_VERSION = len(MIGRATIONS)

CAPTURE_COLUMNS = "id, timestamp, source_app, content, content_hash, capture_type"


@dataclass
class StorageStats:
    """Summary of what the store holds."""
    total_captures: int
    oldest_capture: Optional[datetime]
    newest_capture: Optional[datetime]
    db_size_bytes: int

    def to_dict(self) -> dict:
        return {
            "total_captures": self.total_captures,
            "oldest_capture": self.oldest_capture.isoformat() if self.oldest_capture else None,
            "newest_capture": self.newest_capture.isoformat() if self.newest_capture else None,
            "db_size_bytes": self.db_size_bytes,
        }


def format_timestamp(ts: datetime) -> str:
    """
    Fixed-width UTC ISO-8601 text, so that string order equals time order.

    Naive datetimes are taken to be UTC.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CaptureStore:
    """
    Durable, deduplicated capture storage.

    A single connection is shared by every caller and guarded by a lock, so
    operations are serialized and the duplicate check on insert is atomic.
    Queries return captures newest first.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = path if path == IN_MEMORY else Path(path).expanduser()
        self._lock = threading.Lock()
        self._conn = self._open()
        logger.info(f"Opened capture store at {self.path} (schema v{SCHEMA_VERSION})")

    @classmethod
    def open_in_memory(cls) -> "CaptureStore":
        return cls(IN_MEMORY)

    @property
    def in_memory(self) -> bool:
        return self.path == IN_MEMORY

    def _open(self) -> sqlite3.Connection:
        if not self.in_memory:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StoreOpenError(self.path, f"cannot create directory: {e}") from e

        conn = None
        try:
            conn = sqlite3.connect(
                str(self.path), timeout=30, check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            if not self.in_memory:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
            self._migrate(conn)
        except (sqlite3.Error, MigrationError) as e:
            if conn is not None:
                conn.close()
            raise StoreOpenError(self.path, str(e)) from e
        return conn

    @staticmethod
    def _read_version(conn: sqlite3.Connection) -> int:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='metadata'"
        ).fetchone()
        if row is None:
            return 0
        row = conn.execute(
            "SELECT value FROM metadata WHERE key = 'schema_version'"
        ).fetchone()
        return int(row[0]) if row else 0

    def _migrate(self, conn: sqlite3.Connection) -> None:
        version = self._read_version(conn)
        if version > SCHEMA_VERSION:
            raise MigrationError(
                f"database schema v{version} is newer than supported v{SCHEMA_VERSION}"
            )

        for target in range(version + 1, SCHEMA_VERSION + 1):
            script = (
                "BEGIN;\n"
                f"{MIGRATIONS[target - 1]}\n"
                "INSERT OR REPLACE INTO metadata(key, value) "
                f"VALUES ('schema_version', '{target}');\n"
                "COMMIT;"
            )
            try:
                conn.executescript(script)
            except sqlite3.Error as e:
                conn.rollback()
                raise MigrationError(f"migration to v{target} failed: {e}") from e
            logger.info(f"Migrated capture store to schema v{target}")

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    @staticmethod
    def _row_to_capture(row: sqlite3.Row) -> Capture:
        return Capture(
            id=int(row["id"]),
            timestamp=parse_timestamp(row["timestamp"]),
            source_app=row["source_app"],
            content=row["content"],
            content_hash=row["content_hash"],
            capture_type=CaptureType(row["capture_type"]),
        )

    def _select(self, where: str, params: tuple, limit: int) -> List[Capture]:
        sql = f"SELECT {CAPTURE_COLUMNS} FROM captures"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        with self._connection() as conn:
            rows = conn.execute(sql, params + (max(0, limit),)).fetchall()
        return [self._row_to_capture(row) for row in rows]

    def insert(self, capture: Capture) -> Optional[int]:
        """
        Persist a capture unless its content is already stored.

        Returns:
            The new row id, or None when a capture with the same content hash
            already exists.
        """
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO captures(
                    timestamp, source_app, content, content_hash, capture_type
                )
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    format_timestamp(capture.timestamp),
                    capture.source_app,
                    capture.content,
                    capture.content_hash,
                    capture.capture_type.value,
                ),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
            return int(cursor.lastrowid)

    def get(self, capture_id: int) -> Optional[Capture]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {CAPTURE_COLUMNS} FROM captures WHERE id = ?",
                (capture_id,),
            ).fetchone()
        return self._row_to_capture(row) if row else None

    def query(
        self,
        limit: int,
        text: Optional[str] = None,
        app: Optional[str] = None,
        capture_type: Optional[Union[CaptureType, str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[Capture]:
        """
        Captures matching every given predicate, newest first.

        Args:
            limit: Maximum number of captures to return.
            text: Substring of content. Case-insensitive for ASCII letters
                only (SQLite LIKE); % and _ match literally.
            app: Exact source application name.
            capture_type: Capture type to match.
            since: Inclusive lower bound on timestamp.
            until: Inclusive upper bound on timestamp.
        """
        clauses = []
        params = []
        if text is not None:
            clauses.append("content LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(text)}%")
        if app is not None:
            clauses.append("source_app = ?")
            params.append(app)
        if capture_type is not None:
            clauses.append("capture_type = ?")
            params.append(CaptureType(capture_type).value)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(format_timestamp(since))
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(format_timestamp(until))
        return self._select(" AND ".join(clauses), tuple(params), limit)

    def get_recent(self, limit: int) -> List[Capture]:
        return self.query(limit)

    def get_by_app(self, app: str, limit: int) -> List[Capture]:
        return self.query(limit, app=app)

    def get_by_type(self, capture_type: Union[CaptureType, str], limit: int) -> List[Capture]:
        return self.query(limit, capture_type=capture_type)

    def search(self, query: str, limit: int) -> List[Capture]:
        """Substring search over content; see query()."""
        return self.query(limit, text=query)

    def get_by_time_range(self, since: datetime, until: datetime, limit: int) -> List[Capture]:
        """Captures with since <= timestamp <= until."""
        return self.query(limit, since=since, until=until)

    def count(self) -> int:
        with self._connection() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM captures").fetchone()[0])

    def delete(self, capture_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM captures WHERE id = ?", (capture_id,))
            conn.commit()
            return cursor.rowcount > 0

    def prune_older_than(self, max_age: timedelta) -> int:
        """Delete captures older than now - max_age; returns the number removed."""
        cutoff = format_timestamp(utc_now() - max_age)
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM captures WHERE timestamp < ?", (cutoff,))
            conn.commit()
            deleted = cursor.rowcount
        if deleted:
            logger.debug(f"Pruned {deleted} captures older than {cutoff}")
        return deleted

    def prune_keep_recent(self, keep: int) -> int:
        """Delete all but the keep newest captures; returns the number removed."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM captures WHERE id NOT IN (
                    SELECT id FROM captures
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ?
                )
                """,
                (max(0, keep),),
            )
            conn.commit()
            deleted = cursor.rowcount
        if deleted:
            logger.debug(f"Pruned {deleted} captures beyond the newest {keep}")
        return deleted

    def stats(self) -> StorageStats:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*), MIN(timestamp), MAX(timestamp) FROM captures"
            ).fetchone()
            if self.in_memory:
                size = 0
            else:
                page_count = conn.execute("PRAGMA page_count").fetchone()[0]
                page_size = conn.execute("PRAGMA page_size").fetchone()[0]
                size = int(page_count) * int(page_size)

        return StorageStats(
            total_captures=int(row[0]),
            oldest_capture=parse_timestamp(row[1]) if row[1] else None,
            newest_capture=parse_timestamp(row[2]) if row[2] else None,
            db_size_bytes=size,
        )

    def schema_version(self) -> int:
        with self._connection() as conn:
            return self._read_version(conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug(f"Closed capture store at {self.path}")

    def __enter__(self) -> "CaptureStore":
        return self

    def __exit__(self, *args) -> None:
        self.close()
