"""
smriti: a local, searchable index over browsing history.

Quick Start:
    from smriti import HistoryIndex, VisitEvent

    index = HistoryIndex()      # uses ~/.smriti/
    index.start()               # first-run full ingest from the history source
    index.visit(VisitEvent("https://ex.com/a", "Rust Guide"))
    results = index.search("rust")

CLI Usage:
    smriti search "rust guide"
    smriti import ~/Downloads/history.jsonl --format jsonl
    smriti meta https://ex.com/a -k lang -d "A guide to Rust"

Default Store:
    ~/.smriti/ (created automatically).
    Override with SMRITI_STORE_PATH or an explicit path argument.

Environment Variables:
    SMRITI_STORE_PATH   - Override default store location
    SMRITI_VERBOSE      - Set to 1 for debug logging from the CLI

Configuration is persisted in smriti.toml within the store directory.
"""

__version__ = "0.1.0"

from .api import HistoryIndex
from .errors import HistorySourceError, IndexStoreError, InvalidURLError, SmritiError
from .index_store import IndexStore
from .ingestion import IngestionCoordinator, IngestReport
from .router import RequestRouter
from .search import ScoringWeights, SearchEngine, SearchHit
from .tokenizer import tokenize
from .types import HistoryRecord, IndexedItem, IngestionState, VisitEvent

__all__ = [
    "HistoryIndex",
    "IndexStore",
    "IngestionCoordinator",
    "IngestReport",
    "SearchEngine",
    "SearchHit",
    "ScoringWeights",
    "RequestRouter",
    "IndexedItem",
    "HistoryRecord",
    "VisitEvent",
    "IngestionState",
    "tokenize",
    "SmritiError",
    "InvalidURLError",
    "IndexStoreError",
    "HistorySourceError",
]
