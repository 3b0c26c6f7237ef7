"""
History sources: where browsing history records come from.

Each source answers search(text, limit) with HistoryRecords, most recently
visited first. Browser databases are opened read-only; the browser may hold
a lock on its live file, so pointing a source at a copy is the safe choice.

Sources are created by name from the [history] config section:

    [history]
    name = "chrome"
    path = "/home/me/.config/google-chrome/Default/History"
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from .config import ProviderConfig
from .errors import HistorySourceError
from .types import HistoryRecord

logger = logging.getLogger(__name__)

# Chrome stores times as microseconds since 1601-01-01 UTC
_WEBKIT_EPOCH_OFFSET_MS = int(
    (datetime(1970, 1, 1, tzinfo=timezone.utc)
     - datetime(1601, 1, 1, tzinfo=timezone.utc)).total_seconds() * 1000
)


def webkit_to_epoch_ms(raw_value) -> Optional[int]:
    """Convert a Chrome/WebKit timestamp (µs since 1601) to epoch ms."""
    if raw_value is None:
        return None
    try:
        microseconds = int(raw_value)
    except (TypeError, ValueError):
        return None
    if microseconds <= 0:
        return None
    return microseconds // 1000 - _WEBKIT_EPOCH_OFFSET_MS


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _matches(record: HistoryRecord, text: str) -> bool:
    if not text:
        return True
    needle = text.casefold()
    return needle in record.url.casefold() or needle in record.title.casefold()


class StaticHistorySource:
    """History held in memory, e.g. records loaded from an export."""

    def __init__(self, records: Iterable[HistoryRecord] = ()):
        self._records = list(records)

    def search(self, text: str, limit: int) -> list[HistoryRecord]:
        matched = [r for r in self._records if _matches(r, text)]
        matched.sort(key=lambda r: r.last_visit_time or 0, reverse=True)
        return matched[:limit]

    def __len__(self) -> int:
        return len(self._records)


class NullHistorySource:
    """No history available; metadata capture still works."""

    def search(self, text: str, limit: int) -> list[HistoryRecord]:
        return []


def load_history_jsonl(path: Path) -> Sequence[Mapping[str, object]]:
    """Load a history export stored as JSON lines (one row object per line)."""
    resolved = path if path.is_absolute() else path.resolve()
    if not resolved.exists():
        raise FileNotFoundError(resolved)
    payload: list[Mapping[str, object]] = []
    with resolved.open("r", encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("Skipping line %d of %s: %s", lineno, resolved, e)
                continue
            if isinstance(row, dict):
                payload.append(row)
    return payload


class JsonlHistorySource:
    """
    History from a JSON-lines export.

    Rows use the browser history API shape:
    {"url": ..., "title": ..., "visitCount": ..., "lastVisitTime": ...}
    The file is re-read on every search so a refreshed export is picked up.
    """

    def __init__(self, path: Path):
        self._path = Path(path)

    def search(self, text: str, limit: int) -> list[HistoryRecord]:
        try:
            rows = load_history_jsonl(self._path)
        except OSError as e:
            raise HistorySourceError(f"Cannot read history export {self._path}: {e}") from e
        records = [HistoryRecord.from_mapping(row) for row in rows]
        return StaticHistorySource(records).search(text, limit)


class _SqliteHistorySource:
    """Shared plumbing for browser history databases."""

    _QUERY = ""
    _browser = "browser"

    def __init__(self, path: Path):
        self._path = Path(path)

    def _connect(self) -> sqlite3.Connection:
        if not self._path.exists():
            raise HistorySourceError(f"{self._browser} history not found: {self._path}")
        uri = f"{self._path.resolve().as_uri()}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=2000")
        return conn

    def _convert(self, row) -> HistoryRecord:
        raise NotImplementedError

    def search(self, text: str, limit: int) -> list[HistoryRecord]:
        pattern = _like_pattern(text or "")
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise HistorySourceError(f"Cannot open {self._browser} history: {e}") from e
        try:
            rows = conn.execute(self._QUERY, (pattern, pattern, limit)).fetchall()
        except sqlite3.Error as e:
            raise HistorySourceError(f"{self._browser} history query failed: {e}") from e
        finally:
            conn.close()
        return [self._convert(row) for row in rows]


class ChromeHistorySource(_SqliteHistorySource):
    """Chrome / Edge / Chromium ``History`` database (``urls`` table)."""

    _browser = "Chrome"
    _QUERY = """
        SELECT url, title, visit_count, last_visit_time
        FROM urls
        WHERE hidden = 0
          AND (url LIKE ? ESCAPE '\\' OR title LIKE ? ESCAPE '\\')
        ORDER BY last_visit_time DESC
        LIMIT ?
    """

    def _convert(self, row) -> HistoryRecord:
        return HistoryRecord(
            url=row["url"] or "",
            title=row["title"] or "",
            visit_count=max(1, row["visit_count"] or 0),
            last_visit_time=webkit_to_epoch_ms(row["last_visit_time"]),
        )


class FirefoxHistorySource(_SqliteHistorySource):
    """Firefox ``places.sqlite`` database (``moz_places`` table)."""

    _browser = "Firefox"
    _QUERY = """
        SELECT url, title, visit_count, last_visit_date
        FROM moz_places
        WHERE hidden = 0
          AND last_visit_date IS NOT NULL
          AND (url LIKE ? ESCAPE '\\' OR title LIKE ? ESCAPE '\\')
        ORDER BY last_visit_date DESC
        LIMIT ?
    """

    def _convert(self, row) -> HistoryRecord:
        last_visit = row["last_visit_date"]
        return HistoryRecord(
            url=row["url"] or "",
            title=row["title"] or "",
            visit_count=max(1, row["visit_count"] or 0),
            last_visit_time=int(last_visit) // 1000 if last_visit else None,
        )


_SOURCES = {
    "chrome": ChromeHistorySource,
    "edge": ChromeHistorySource,
    "chromium": ChromeHistorySource,
    "firefox": FirefoxHistorySource,
    "jsonl": JsonlHistorySource,
}


def create_history_source(config: ProviderConfig):
    """
    Create a history source from its [history] config section.

    ``none`` (the default) gives a NullHistorySource. File-backed sources
    require a ``path`` parameter.
    """
    name = (config.name or "none").lower()
    if name == "none":
        return NullHistorySource()
    factory = _SOURCES.get(name)
    if factory is None:
        raise ValueError(
            f"Unknown history source: {config.name!r}. "
            f"Available: {['none', *sorted(_SOURCES)]}"
        )
    path = config.params.get("path")
    if not path:
        raise ValueError(f"History source {config.name!r} requires a 'path' parameter")
    return factory(Path(path).expanduser())
