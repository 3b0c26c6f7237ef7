"""
Index store using SQLite.

Persistent mapping from URL to IndexedItem. The store is the source of
truth for:
- Item identity (URL)
- Title, hostname and captured page metadata
- Visit statistics
- Derived tokens (persisted so scans need not re-tokenize)

It also holds the small ingestion state record used to decide whether a
first-run full ingest is needed.

Writes go through one connection guarded by a lock and are committed
before upsert() returns. Scans open their own connection and iterate a
single read transaction, so a scan sees one consistent snapshot even
while upserts continue (WAL mode).
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .errors import IndexStoreError
from .types import IndexedItem, IngestionState

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Rows fetched per round trip while scanning
SCAN_BATCH_SIZE = 500

_STATE_KEY = "ingestion"

_ITEM_COLUMNS = (
    "url, title, hostname, meta_description, meta_keywords_json, "
    "visit_count, last_visit, tokens"
)


def _row_to_item(row) -> IndexedItem:
    return IndexedItem(
        url=row["url"],
        title=row["title"],
        hostname=row["hostname"],
        meta_description=row["meta_description"],
        meta_keywords=tuple(json.loads(row["meta_keywords_json"])),
        visit_count=row["visit_count"],
        last_visit=row["last_visit"],
        tokens=tuple(row["tokens"].split()),
    )


class IndexStore:
    """
    SQLite-backed store for IndexedItem records.

    Keyed by exact URL string. No eviction: capacity is bounded only by
    the host's disk.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = Path(store_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        try:
            self._init_db()
        except sqlite3.Error as e:
            raise IndexStoreError(f"Cannot open index at {self._db_path}: {e}") from e

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        # Wait up to 5 seconds for locks instead of failing immediately
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._connect()

        # WAL lets scans read a stable snapshot while the writer commits
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version > SCHEMA_VERSION:
            raise IndexStoreError(
                f"Index schema version {version} is newer than supported ({SCHEMA_VERSION})"
            )

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS items (
                url TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '',
                hostname TEXT NOT NULL DEFAULT '',
                meta_description TEXT,
                meta_keywords_json TEXT NOT NULL DEFAULT '[]',
                visit_count INTEGER NOT NULL DEFAULT 1,
                last_visit INTEGER NOT NULL DEFAULT 0,
                tokens TEXT NOT NULL DEFAULT '',
                updated_at TEXT NOT NULL
            )
        """)

        # Index for recency listing
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_items_last_visit
            ON items(last_visit)
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS index_state (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL
            )
        """)

        self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        self._conn.commit()

    def _now(self) -> str:
        """Current timestamp in ISO format."""
        return datetime.now(timezone.utc).isoformat()

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise IndexStoreError("Index store is closed")
        return self._conn

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def upsert(self, item: IndexedItem) -> IndexedItem:
        """
        Insert or overwrite the record for item.url.

        The write is committed before this returns, so any later get() or
        scan() from any thread observes it.

        Returns:
            The stored item
        """
        params = (
            item.url,
            item.title,
            item.hostname,
            item.meta_description,
            json.dumps(list(item.meta_keywords), ensure_ascii=False),
            item.visit_count,
            item.last_visit,
            " ".join(item.tokens),
            self._now(),
        )
        with self._lock:
            conn = self._require_conn()
            try:
                # ON CONFLICT keeps the rowid stable, unlike INSERT OR REPLACE
                conn.execute("""
                    INSERT INTO items
                    (url, title, hostname, meta_description, meta_keywords_json,
                     visit_count, last_visit, tokens, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(url) DO UPDATE SET
                        title = excluded.title,
                        hostname = excluded.hostname,
                        meta_description = excluded.meta_description,
                        meta_keywords_json = excluded.meta_keywords_json,
                        visit_count = excluded.visit_count,
                        last_visit = excluded.last_visit,
                        tokens = excluded.tokens,
                        updated_at = excluded.updated_at
                """, params)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise IndexStoreError(f"upsert failed for {item.url}: {e}") from e
        return item

    def put_state(self, state: IngestionState) -> None:
        """Persist the ingestion state record."""
        with self._lock:
            conn = self._require_conn()
            try:
                conn.execute("""
                    INSERT INTO index_state (key, value_json) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json
                """, (_STATE_KEY, json.dumps(state.to_dict())))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise IndexStoreError(f"Cannot write ingestion state: {e}") from e

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, url: str) -> Optional[IndexedItem]:
        """
        Get the item for a URL.

        Returns:
            IndexedItem if found, None otherwise
        """
        with self._lock:
            conn = self._require_conn()
            try:
                row = conn.execute(
                    f"SELECT {_ITEM_COLUMNS} FROM items WHERE url = ?", (url,)
                ).fetchone()
            except sqlite3.Error as e:
                raise IndexStoreError(f"get failed for {url}: {e}") from e
        if row is None:
            return None
        return _row_to_item(row)

    def exists(self, url: str) -> bool:
        """Check if an item exists."""
        with self._lock:
            conn = self._require_conn()
            try:
                row = conn.execute(
                    "SELECT 1 FROM items WHERE url = ?", (url,)
                ).fetchone()
            except sqlite3.Error as e:
                raise IndexStoreError(f"exists failed for {url}: {e}") from e
        return row is not None

    def count(self) -> int:
        """Count indexed items."""
        with self._lock:
            conn = self._require_conn()
            try:
                return conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]
            except sqlite3.Error as e:
                raise IndexStoreError(f"count failed: {e}") from e

    def list_urls(self, limit: Optional[int] = None) -> list[str]:
        """
        List URLs, most recently visited first.

        Args:
            limit: Maximum number to return (None for all)
        """
        sql = "SELECT url FROM items ORDER BY last_visit DESC, url ASC"
        params: tuple = ()
        if limit:
            sql += " LIMIT ?"
            params = (limit,)
        with self._lock:
            conn = self._require_conn()
            try:
                return [row["url"] for row in conn.execute(sql, params)]
            except sqlite3.Error as e:
                raise IndexStoreError(f"list_urls failed: {e}") from e

    def scan(self, batch_size: int = SCAN_BATCH_SIZE) -> Iterator[IndexedItem]:
        """
        Lazily iterate every item.

        Runs on a dedicated connection inside one read transaction, so the
        whole iteration sees a single committed snapshot: writes landing
        mid-scan are either fully visible or not at all, and no item is
        yielded twice. The connection is released when the iterator is
        exhausted or closed.
        """
        if self._conn is None:
            raise IndexStoreError("Index store is closed")
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise IndexStoreError(f"Cannot open scan connection: {e}") from e
        try:
            try:
                conn.execute("BEGIN")
                cursor = conn.execute(f"SELECT {_ITEM_COLUMNS} FROM items")
                while True:
                    rows = cursor.fetchmany(batch_size)
                    if not rows:
                        break
                    for row in rows:
                        yield _row_to_item(row)
            except sqlite3.Error as e:
                raise IndexStoreError(f"scan failed: {e}") from e
        finally:
            try:
                conn.rollback()
            finally:
                conn.close()

    def get_state(self) -> IngestionState:
        """Read the ingestion state record (defaults if never written)."""
        with self._lock:
            conn = self._require_conn()
            try:
                row = conn.execute(
                    "SELECT value_json FROM index_state WHERE key = ?", (_STATE_KEY,)
                ).fetchone()
            except sqlite3.Error as e:
                raise IndexStoreError(f"Cannot read ingestion state: {e}") from e
        if row is None:
            return IngestionState()
        try:
            return IngestionState.from_dict(json.loads(row["value_json"]))
        except (json.JSONDecodeError, TypeError, AttributeError):
            logger.warning("Corrupt ingestion state record, treating as never indexed")
            return IngestionState()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass
