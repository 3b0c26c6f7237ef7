"""
Ingestion: turning history records and captured page metadata into
IndexedItem writes.

Three ways in:
- ingest_history(): bulk pass over the most recent history window.
  Single-flight: concurrent requests share one pass.
- merge_metadata(): fold a page's description/keywords into its item,
  creating a stub if history has not reached it yet.
- on_visited(): new-visit events reset a debounce timer; one bulk pass
  runs per burst of visits.

Both write paths converge through per-field merge rules applied under a
per-URL lock, never by whole-record replacement, so a metadata capture
racing a bulk pass for the same URL loses nothing.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from .config import IngestConfig
from .errors import HistorySourceError, InvalidURLError
from .protocol import HistorySourceProtocol, IndexStoreProtocol
from .scheduling import Debouncer, EventChannel, KeyedLock, SingleFlight
from .types import (
    HistoryRecord,
    IndexedItem,
    VisitEvent,
    canonicalize_url,
    derive_hostname,
    utc_now_ms,
)

logger = logging.getLogger(__name__)

# Lock key for the ingestion state record; no URL is empty
_STATE_LOCK_KEY = ""


@dataclass
class IngestReport:
    """Outcome of one bulk ingest or record import."""
    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: list[tuple[str, str]] = field(default_factory=list)  # (url, reason)
    timed_out: bool = False
    elapsed: float = 0.0

    @property
    def written(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": len(self.skipped),
            "timedOut": self.timed_out,
            "elapsed": round(self.elapsed, 3),
        }


# ---------------------------------------------------------------------------
# Merge rules (pure)
# ---------------------------------------------------------------------------


def merge_history_record(
    existing: Optional[IndexedItem],
    record: HistoryRecord,
    *,
    url: str,
    hostname: str,
    now_ms: int,
) -> IndexedItem:
    """Fold one history record into the current item for its URL.

    visit_count and last_visit only move forward. The title follows the
    newest visit. Captured metadata is carried over untouched.
    """
    visit_time = record.last_visit_time
    if existing is None:
        return IndexedItem(
            url=url,
            title=record.title or "",
            hostname=hostname,
            visit_count=max(1, record.visit_count),
            last_visit=visit_time if visit_time is not None else now_ms,
        )

    if visit_time is None and existing.last_visit == 0:
        # Stub from a metadata capture: this is its first real visit
        visit_time = now_ms
    newer = visit_time is not None and visit_time >= existing.last_visit

    title = existing.title
    if record.title and (newer or not existing.title):
        title = record.title

    return existing.evolve(
        title=title,
        hostname=hostname,
        visit_count=max(existing.visit_count, record.visit_count, 1),
        last_visit=max(existing.last_visit, visit_time or 0),
    )


def normalize_keywords(keywords: Union[str, Iterable[Any], None]) -> list[str]:
    """Clean captured keywords: strip, drop empties, dedupe in order.

    A single string is treated like a <meta name="keywords"> value and
    split on commas.
    """
    if not keywords:
        return []
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    cleaned = []
    for kw in keywords:
        if not isinstance(kw, str):
            continue
        kw = kw.strip()
        if kw:
            cleaned.append(kw)
    return list(dict.fromkeys(cleaned))


def merge_metadata_fields(
    existing: Optional[IndexedItem],
    *,
    url: str,
    hostname: str,
    description: Optional[str],
    keywords: list[str],
) -> IndexedItem:
    """Fold captured metadata into the current item (or a fresh stub).

    A non-empty description overwrites; keywords are unioned and never
    removed. A stub has no title, one visit and no visit time yet.
    """
    base = existing or IndexedItem(url=url, hostname=hostname, visit_count=1, last_visit=0)
    merged_keywords = list(base.meta_keywords)
    merged_keywords.extend(kw for kw in keywords if kw not in base.meta_keywords)
    return base.evolve(
        hostname=hostname,
        meta_description=description if description else base.meta_description,
        meta_keywords=tuple(dict.fromkeys(merged_keywords)),
    )


def _call_with_timeout(fn: Callable[[], Any], timeout: float):
    """Run fn on a daemon thread and wait at most timeout seconds.

    Raises TimeoutError if fn has not finished; a hung call is abandoned
    rather than blocking the caller or interpreter exit.
    """
    outcome: dict[str, Any] = {}
    done = threading.Event()

    def _target():
        try:
            outcome["result"] = fn()
        except BaseException as exc:
            outcome["error"] = exc
        finally:
            done.set()

    threading.Thread(target=_target, name="history-source", daemon=True).start()
    if not done.wait(timeout):
        raise TimeoutError(f"no answer within {timeout:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class IngestionCoordinator:
    """
    Owns every write to the index.

    Thread-safe. Bulk passes are single-flight; writes to the same URL are
    serialized by a per-URL lock; writes to different URLs proceed in
    parallel.
    """

    def __init__(
        self,
        store: IndexStoreProtocol,
        history: HistorySourceProtocol,
        config: Optional[IngestConfig] = None,
        *,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], int] = utc_now_ms,
    ):
        self._store = store
        self._history = history
        self._config = config or IngestConfig()
        self._locks = locks or KeyedLock()
        self._clock = clock
        self._flight: SingleFlight[IngestReport] = SingleFlight(self._ingest_pass)
        self._debouncer = Debouncer(
            self._config.debounce_seconds, self._debounced_ingest, name="visit-ingest",
        )
        self._visit_thread: Optional[threading.Thread] = None

    @property
    def config(self) -> IngestConfig:
        return self._config

    @property
    def ingest_in_flight(self) -> bool:
        return self._flight.in_flight

    @property
    def ingest_pending(self) -> bool:
        """True while a debounced ingest is waiting for its quiet period."""
        return self._debouncer.pending

    def key_for(self, url: str) -> str:
        """The item key for a URL: the URL itself, or its canonical form.

        Raises InvalidURLError for unparseable URLs.
        """
        if self._config.canonicalize_urls:
            return canonicalize_url(url)
        derive_hostname(url)
        return url

    # -------------------------------------------------------------------------
    # Bulk ingest
    # -------------------------------------------------------------------------

    def ingest_history(self, *, fresh: bool = False) -> IngestReport:
        """
        Run a bulk pass over the most recent history window.

        If a pass is already running, a plain call waits for it and returns
        its report. With fresh=True the call is guaranteed a pass that
        started after it was made (it queues behind a running one).

        Raises:
            HistorySourceError: The history source failed
            IndexStoreError: The store failed; items already written stay written
        """
        return self._flight.run(fresh=fresh)

    def _ingest_pass(self) -> IngestReport:
        start = time.monotonic()
        report = IngestReport()
        records = self._fetch_history(report)
        self._apply_records(records, report)
        report.elapsed = time.monotonic() - start
        if not report.timed_out:
            self._record_pass()
        logger.info(
            "Ingest pass: %d fetched, %d created, %d updated, %d unchanged, %d skipped in %.2fs%s",
            report.fetched, report.created, report.updated, report.unchanged,
            len(report.skipped), report.elapsed, " (history timed out)" if report.timed_out else "",
        )
        return report

    def _fetch_history(self, report: IngestReport) -> list[HistoryRecord]:
        window = self._config.history_window
        try:
            records = _call_with_timeout(
                lambda: self._history.search("", window),
                self._config.history_timeout,
            )
        except TimeoutError as e:
            logger.warning("History source timed out, no new items this pass: %s", e)
            report.timed_out = True
            return []
        except HistorySourceError:
            raise
        except Exception as e:
            raise HistorySourceError(f"History source failed: {e}") from e
        records = list(records or [])[:window]
        report.fetched = len(records)
        return records

    def ingest_records(
        self, records: Iterable[Union[HistoryRecord, Mapping[str, Any]]],
    ) -> IngestReport:
        """
        Merge caller-supplied history records (e.g. an imported export).

        Uses the same merge rules and per-URL locking as a bulk pass, but
        does not consult the history source and is not single-flight.
        """
        start = time.monotonic()
        report = IngestReport()
        batch = [
            r if isinstance(r, HistoryRecord) else HistoryRecord.from_mapping(r)
            for r in records
        ]
        report.fetched = len(batch)
        self._apply_records(batch, report)
        report.elapsed = time.monotonic() - start
        logger.info(
            "Imported %d records: %d created, %d updated, %d skipped",
            report.fetched, report.created, report.updated, len(report.skipped),
        )
        return report

    def _apply_records(self, records: Iterable[HistoryRecord], report: IngestReport) -> None:
        for record in records:
            try:
                self._merge_record(record, report)
            except InvalidURLError as e:
                report.skipped.append((record.url, str(e)))
                logger.debug("Skipping history record: %s", e)

    def _merge_record(self, record: HistoryRecord, report: IngestReport) -> None:
        url = self.key_for(record.url)
        hostname = derive_hostname(url)
        with self._locks.hold(url):
            existing = self._store.get(url)
            merged = merge_history_record(
                existing, record, url=url, hostname=hostname, now_ms=self._clock(),
            )
            if existing is not None and merged == existing and merged.tokens == existing.tokens:
                report.unchanged += 1
                return
            self._store.upsert(merged)
        if existing is None:
            report.created += 1
        else:
            report.updated += 1

    def _record_pass(self) -> None:
        with self._locks.hold(_STATE_LOCK_KEY):
            state = self._store.get_state()
            self._store.put_state(replace(state, last_ingest_at=self._clock()))

    # -------------------------------------------------------------------------
    # Metadata merge
    # -------------------------------------------------------------------------

    def merge_metadata(
        self,
        url: str,
        description: Optional[str] = None,
        keywords: Union[str, Iterable[str], None] = None,
    ) -> IndexedItem:
        """
        Merge a page's captured description and keywords into its item.

        Creates a minimal item if the URL has not been ingested yet; a
        later bulk pass enriches it. Applying the same capture twice
        gives the same item.

        Raises:
            InvalidURLError: url cannot be parsed
            IndexStoreError: The store failed
        """
        key = self.key_for(url)
        hostname = derive_hostname(key)
        if isinstance(description, str):
            description = description.strip() or None
        else:
            description = None
        cleaned = normalize_keywords(keywords)

        with self._locks.hold(key):
            existing = self._store.get(key)
            merged = merge_metadata_fields(
                existing, url=key, hostname=hostname,
                description=description, keywords=cleaned,
            )
            if existing is not None and merged == existing and merged.tokens == existing.tokens:
                return existing
            self._store.upsert(merged)
        logger.debug(
            "Merged metadata for %s (%s, %d keywords)",
            key, "new stub" if existing is None else "existing", len(merged.meta_keywords),
        )
        return merged

    # -------------------------------------------------------------------------
    # Incremental trigger
    # -------------------------------------------------------------------------

    def on_visited(self, event: VisitEvent) -> None:
        """Note a new visit; a bulk pass follows after the quiet period."""
        logger.debug("New visit: %s", event.url)
        self._debouncer.trigger()

    def _debounced_ingest(self) -> None:
        self.ingest_history(fresh=True)

    def attach_visits(self, channel: EventChannel) -> threading.Thread:
        """Consume a channel of VisitEvents on a background thread."""
        self._visit_thread = channel.consume(self.on_visited, name="visit-events")
        return self._visit_thread

    def flush(self) -> bool:
        """Run a pending debounced ingest now. Returns True if one ran."""
        return self._debouncer.flush()

    # -------------------------------------------------------------------------
    # First-run state
    # -------------------------------------------------------------------------

    def ensure_indexed(self, version: str) -> bool:
        """
        Run a full ingest if this index has never completed one, or was
        last fully indexed by a different engine version.

        Returns True if a pass ran.
        """
        state = self._store.get_state()
        if state.indexed_once and state.last_indexed_version == version:
            logger.debug("Index already built by version %s", version)
            return False

        logger.info(
            "Full ingest needed (indexed_once=%s, last version=%s, current=%s)",
            state.indexed_once, state.last_indexed_version, version,
        )
        report = self.ingest_history(fresh=True)
        if report.timed_out:
            logger.warning("Initial ingest timed out; will retry on next start")
            return True

        with self._locks.hold(_STATE_LOCK_KEY):
            state = self._store.get_state()
            self._store.put_state(replace(
                state, last_indexed_version=version, indexed_once=True,
            ))
        return True

    def close(self) -> None:
        """Cancel any pending debounced ingest and wait for an in-flight pass."""
        self._debouncer.close()
        self._flight.wait_idle()
