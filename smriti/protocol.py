"""
Protocol definitions for the index engine's collaborators.

Defines interface contracts for:
- IndexStoreProtocol: persistent url -> IndexedItem storage (SQLite locally)
- HistorySourceProtocol: the host's browsing history (browser databases,
  exports, or an in-memory list in tests)
"""

from typing import Iterator, Optional, Protocol, runtime_checkable

from .types import HistoryRecord, IndexedItem, IngestionState


@runtime_checkable
class IndexStoreProtocol(Protocol):
    """
    Durable key-value storage of IndexedItems keyed by URL.

    upsert() must be visible to every later get()/scan() in the process.
    scan() must never yield an item twice or a partially written item.
    No multi-key atomicity is assumed.
    """

    def get(self, url: str) -> Optional[IndexedItem]: ...

    def upsert(self, item: IndexedItem) -> IndexedItem: ...

    def scan(self) -> Iterator[IndexedItem]: ...

    def count(self) -> int: ...

    def get_state(self) -> IngestionState: ...

    def put_state(self, state: IngestionState) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class HistorySourceProtocol(Protocol):
    """
    Read access to the host's browsing history.

    search() returns at most ``limit`` records matching ``text`` (empty
    text matches everything), most recently visited first. It may be slow
    and may raise HistorySourceError.
    """

    def search(self, text: str, limit: int) -> list[HistoryRecord]: ...
