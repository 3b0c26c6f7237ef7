"""
Shared pytest fixtures for smriti tests.

Provides in-memory history sources so ingestion can be exercised without a
browser database, plus store/coordinator fixtures on a temporary directory.
"""

import threading
import time
from pathlib import Path

import pytest

from smriti.config import IngestConfig, ProviderConfig, StoreConfig
from smriti.errors import HistorySourceError
from smriti.index_store import IndexStore
from smriti.ingestion import IngestionCoordinator
from smriti.types import HistoryRecord


class CountingHistorySource:
    """
    In-memory history source that counts queries.

    Records can be replaced between calls to simulate new visits. An
    optional delay keeps each query in flight long enough for concurrency
    tests to overlap with it.
    """

    def __init__(self, records=(), delay: float = 0.0):
        self.records = list(records)
        self.delay = delay
        self.calls = 0
        self.started = threading.Event()
        self._lock = threading.Lock()

    def search(self, text: str, limit: int) -> list[HistoryRecord]:
        with self._lock:
            self.calls += 1
            snapshot = list(self.records)
        self.started.set()
        if self.delay:
            threading.Event().wait(self.delay)
        snapshot.sort(key=lambda r: r.last_visit_time or 0, reverse=True)
        return snapshot[:limit]


class FailingHistorySource:
    """History source whose every query raises."""

    def __init__(self, error: Exception = None):
        self.error = error or HistorySourceError("history unavailable")
        self.calls = 0

    def search(self, text: str, limit: int) -> list[HistoryRecord]:
        self.calls += 1
        raise self.error


class HangingHistorySource:
    """History source that blocks until released (or forever)."""

    def __init__(self):
        self.release = threading.Event()
        self.calls = 0

    def search(self, text: str, limit: int) -> list[HistoryRecord]:
        self.calls += 1
        self.release.wait()
        return []


def record(url: str, title: str = "", visits: int = 1, last_visit: int = None) -> HistoryRecord:
    """Shorthand for building a HistoryRecord."""
    return HistoryRecord(url=url, title=title, visit_count=visits, last_visit_time=last_visit)


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll predicate until it returns truthy or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def store(tmp_path: Path):
    s = IndexStore(tmp_path / "index.db")
    yield s
    s.close()


@pytest.fixture
def history():
    return CountingHistorySource()


@pytest.fixture
def ingest_config():
    return IngestConfig(debounce_seconds=0.05, history_timeout=2.0)


@pytest.fixture
def coordinator(store, history, ingest_config):
    c = IngestionCoordinator(store, history, ingest_config)
    yield c
    c.close()


@pytest.fixture
def store_config(tmp_path: Path):
    """A StoreConfig with short timings and no history source."""
    return StoreConfig(
        path=tmp_path / "store",
        ingest=IngestConfig(debounce_seconds=0.05, history_timeout=2.0),
        history=ProviderConfig("none"),
    )
