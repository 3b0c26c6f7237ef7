"""
Request router: the boundary between callers (UI, transports) and the
engine.

Requests are plain objects tagged by ``type``:

    {"type": "SEARCH_QUERY", "query": "rust"}          -> {"results": [...]}
    {"type": "REBUILD_INDEX"}                          -> {"status": "OK"}
    {"type": "METADATA_CAPTURE", "url": ...,
     "description": ..., "keywords": [...]}            -> {"status": "ok"}
    {"type": "INDEX_STATUS"}                           -> {"status": "ok", "count": ...}
    anything else                                      -> {"error": "Unknown message type"}

Every request gets exactly one response. Handler failures become
``{"error": message}`` responses; nothing propagates to the caller.
An ``id`` field on the request is copied to its response.
"""

import asyncio
import logging
from typing import Any, Callable, Mapping, Optional

from .errors import SmritiError
from .ingestion import IngestionCoordinator
from .protocol import IndexStoreProtocol
from .search import SearchEngine

logger = logging.getLogger(__name__)

UNKNOWN_TYPE_ERROR = "Unknown message type"


class BadRequest(SmritiError):
    """A request is missing a field or has one of the wrong type."""


class RequestRouter:
    """Dispatches tagged requests to the coordinator and search engine."""

    def __init__(
        self,
        coordinator: IngestionCoordinator,
        engine: SearchEngine,
        store: Optional[IndexStoreProtocol] = None,
    ):
        self._coordinator = coordinator
        self._engine = engine
        self._store = store
        self._handlers: dict[str, Callable[[Mapping[str, Any]], dict]] = {
            "SEARCH_QUERY": self._search_query,
            "REBUILD_INDEX": self._rebuild_index,
            "METADATA_CAPTURE": self._metadata_capture,
            "INDEX_STATUS": self._index_status,
        }

    @property
    def request_types(self) -> list[str]:
        return sorted(self._handlers)

    def handle(self, request: Any) -> dict:
        """Produce the single response for a request. Never raises."""
        request_id = request.get("id") if isinstance(request, Mapping) else None
        try:
            response = self._dispatch(request)
        except BadRequest as e:
            response = {"error": str(e)}
        except Exception as e:
            kind = request.get("type") if isinstance(request, Mapping) else None
            logger.warning("Request %s failed: %s", kind, e, exc_info=True)
            response = {"error": str(e) or type(e).__name__}
        if request_id is not None:
            response["id"] = request_id
        return response

    async def handle_async(self, request: Any) -> dict:
        """Handle a request without blocking the event loop."""
        return await asyncio.to_thread(self.handle, request)

    def _dispatch(self, request: Any) -> dict:
        if not isinstance(request, Mapping):
            raise BadRequest("Request must be an object")
        kind = request.get("type")
        handler = self._handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            return {"error": UNKNOWN_TYPE_ERROR}
        return handler(request)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _search_query(self, request: Mapping[str, Any]) -> dict:
        query = request.get("query", "")
        if query is None:
            query = ""
        if not isinstance(query, str):
            raise BadRequest("SEARCH_QUERY.query must be a string")
        limit = request.get("limit")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int)):
            raise BadRequest("SEARCH_QUERY.limit must be an integer")
        results = self._engine.search(query, limit=limit)
        return {"results": [item.to_dict() for item in results]}

    def _rebuild_index(self, request: Mapping[str, Any]) -> dict:
        self._coordinator.ingest_history(fresh=True)
        return {"status": "OK"}

    def _metadata_capture(self, request: Mapping[str, Any]) -> dict:
        url = request.get("url")
        if not isinstance(url, str) or not url:
            raise BadRequest("METADATA_CAPTURE.url is required")
        description = request.get("description")
        if description is not None and not isinstance(description, str):
            raise BadRequest("METADATA_CAPTURE.description must be a string")
        keywords = request.get("keywords")
        if keywords is not None and not isinstance(keywords, (list, tuple, str)):
            raise BadRequest("METADATA_CAPTURE.keywords must be a list of strings")
        self._coordinator.merge_metadata(url, description=description, keywords=keywords)
        return {"status": "ok"}

    def _index_status(self, request: Mapping[str, Any]) -> dict:
        response: dict[str, Any] = {
            "status": "ok",
            "ingestInFlight": self._coordinator.ingest_in_flight,
            "ingestPending": self._coordinator.ingest_pending,
        }
        if self._store is not None:
            response["count"] = self._store.count()
            response.update(self._store.get_state().to_dict())
        return response
