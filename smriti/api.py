"""
Core API for the browsing-history index.

HistoryIndex wires one store directory together:
- config (smriti.toml)
- the SQLite index store
- the history source named in config
- ingestion coordinator, search engine and request router

Typical use:

    index = HistoryIndex()          # ~/.smriti, or SMRITI_STORE_PATH
    index.start()                   # first-run ingest, visit consumer
    index.visit(VisitEvent(url, title))
    index.search("rust guide")
    index.close()
"""

import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from . import __version__
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .history import create_history_source
from .index_store import IndexStore
from .ingestion import IngestionCoordinator, IngestReport
from .logging_config import configure_ops_log, remove_ops_log
from .protocol import HistorySourceProtocol
from .router import RequestRouter
from .scheduling import EventChannel
from .search import SearchEngine, SearchHit
from .types import HistoryRecord, IndexedItem, VisitEvent

logger = logging.getLogger(__name__)


class HistoryIndex:
    """
    A local, searchable index over browsing history.

    Args:
        store_path: Store directory (created if missing). Defaults to
            SMRITI_STORE_PATH or ~/.smriti.
        history: History source to use instead of the one named in config.
        config: Explicit configuration instead of loading smriti.toml.
        ops_log: Attach the rotating operations log in the store directory.
    """

    def __init__(
        self,
        store_path: Union[str, Path, None] = None,
        *,
        history: Optional[HistorySourceProtocol] = None,
        config: Optional[StoreConfig] = None,
        ops_log: bool = True,
    ):
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser() if store_path else get_default_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        self._ops_handler = configure_ops_log(self._store_path) if ops_log else None

        self._store = IndexStore(self._config.index_path)
        self._history = history if history is not None else create_history_source(self._config.history)
        self._coordinator = IngestionCoordinator(self._store, self._history, self._config.ingest)
        self._engine = SearchEngine.from_config(self._store, self._config.search)
        self._router = RequestRouter(self._coordinator, self._engine, self._store)
        self._visits: Optional[EventChannel[VisitEvent]] = None
        self._visit_thread: Optional[threading.Thread] = None
        self._closed = False

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store(self) -> IndexStore:
        return self._store

    @property
    def coordinator(self) -> IngestionCoordinator:
        return self._coordinator

    @property
    def engine(self) -> SearchEngine:
        return self._engine

    @property
    def router(self) -> RequestRouter:
        return self._router

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, version: Optional[str] = None) -> bool:
        """
        Bring the index up to date and start listening for visits.

        Runs a full ingest on first use (or after an engine upgrade).
        Returns True if that ingest ran.
        """
        logger.info("Starting index at %s", self._store_path)
        ran = self._coordinator.ensure_indexed(version or __version__)
        if self._visits is None:
            self._visits = EventChannel()
            self._visit_thread = self._coordinator.attach_visits(self._visits)
        logger.info("Ready: %d items indexed", self._store.count())
        return ran

    def drain(self) -> bool:
        """
        Stop listening and ingest every visit already reported.

        Closes the visit channel, waits for the consumer to hand over the
        queued events, then runs the pending debounced ingest now instead
        of after its quiet period. Returns True if an ingest ran.
        """
        if self._visits is not None:
            self._visits.close()
        if self._visit_thread is not None:
            self._visit_thread.join()
            self._visit_thread = None
        return self._coordinator.flush()

    def close(self) -> None:
        """Stop listening, cancel pending ingests, close the store.

        A bulk pass already running is allowed to finish first. Call
        drain() before close() to keep visits still waiting for their
        quiet period.
        """
        if self._closed:
            return
        self._closed = True
        if self._visits is not None:
            self._visits.close()
        self._coordinator.close()
        self._store.close()
        remove_ops_log(self._ops_handler)
        self._ops_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def visit(self, event: VisitEvent) -> None:
        """Report a new visit. Ingestion follows after the quiet period.

        Before start(), the visit is handed to the coordinator directly.
        """
        if self._visits is not None and not self._visits.closed:
            self._visits.put(event)
        else:
            self._coordinator.on_visited(event)

    def search(self, query: str, *, limit: Optional[int] = None) -> list[IndexedItem]:
        return self._engine.search(query, limit=limit)

    def search_hits(self, query: str, *, limit: Optional[int] = None) -> list[SearchHit]:
        return self._engine.search_hits(query, limit=limit)

    def get(self, url: str) -> Optional[IndexedItem]:
        return self._store.get(self._coordinator.key_for(url))

    def rebuild(self) -> IngestReport:
        """Run a fresh bulk ingest now."""
        return self._coordinator.ingest_history(fresh=True)

    def merge_metadata(
        self,
        url: str,
        description: Optional[str] = None,
        keywords: Optional[Iterable[str]] = None,
    ) -> IndexedItem:
        return self._coordinator.merge_metadata(url, description=description, keywords=keywords)

    def import_records(
        self, records: Iterable[Union[HistoryRecord, Mapping[str, Any]]],
    ) -> IngestReport:
        """Merge history records from an export or another browser."""
        return self._coordinator.ingest_records(records)

    def handle(self, request: Any) -> dict:
        """Route one boundary request; always returns exactly one response."""
        return self._router.handle(request)

    def status(self) -> dict:
        state = self._store.get_state()
        return {
            "store": str(self._store_path),
            "count": self._store.count(),
            "history": self._config.history.name,
            "ingestInFlight": self._coordinator.ingest_in_flight,
            "ingestPending": self._coordinator.ingest_pending,
            **state.to_dict(),
        }
