"""Vector store protocol and the Qdrant REST adapter.

The pipeline only needs a narrow verb set: count, scroll, patch_payload,
search and upsert, plus collection bootstrap and a health probe. Every state
transition is expressed as a filtered conditional patch so that concurrent
invocations converge instead of overwriting each other.

Usage:
    store = QdrantVectorStore("http://localhost:6333")
    pending = Filter().eq("pending_score", True)
    records = store.scroll("session-embeddings", pending, limit=1000)
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from ..errors import ServiceError
from .http import probe, request_json

logger = logging.getLogger(__name__)

PointId = int | str

# Namespace for deterministic point ids derived from string keys
_POINT_NAMESPACE = uuid.UUID("6f1c3e2a-9b4d-5c7e-8f10-2a3b4c5d6e7f")

_SCROLL_PAGE_SIZE = 256


def point_id(key: str) -> str:
    """Derive a stable Qdrant-compatible point id (UUID) from a string key."""
    return str(uuid.uuid5(_POINT_NAMESPACE, key))


# =============================================================================
# Records and Filters
# =============================================================================


@dataclass
class Record:
    """A stored point: id, payload and (optionally) its vector."""

    id: PointId
    payload: dict[str, Any]
    vector: list[float] | None = None


@dataclass
class ScoredRecord(Record):
    """A search hit with its similarity score."""

    score: float = 0.0


class Filter:
    """Builder for Qdrant payload filters.

    Supports field equality, any-of, numeric range and id conditions, composed
    with must / must_not. Every builder method returns ``self`` for chaining:

        Filter().eq("session_id", "s1").range("quality_score", gte=7)
    """

    def __init__(self) -> None:
        self.must: list[dict[str, Any]] = []
        self.must_not: list[dict[str, Any]] = []

    def eq(self, key: str, value: Any) -> Filter:
        self.must.append({"key": key, "match": {"value": value}})
        return self

    def not_eq(self, key: str, value: Any) -> Filter:
        self.must_not.append({"key": key, "match": {"value": value}})
        return self

    def any_of(self, key: str, values: Iterable[Any]) -> Filter:
        self.must.append({"key": key, "match": {"any": list(values)}})
        return self

    def none_of(self, key: str, values: Iterable[Any]) -> Filter:
        self.must_not.append({"key": key, "match": {"any": list(values)}})
        return self

    def range(
        self,
        key: str,
        *,
        gte: float | None = None,
        lte: float | None = None,
        gt: float | None = None,
        lt: float | None = None,
    ) -> Filter:
        bounds = {
            name: value
            for name, value in (("gte", gte), ("lte", lte), ("gt", gt), ("lt", lt))
            if value is not None
        }
        if not bounds:
            raise ValueError("range() needs at least one bound")
        self.must.append({"key": key, "range": bounds})
        return self

    def has_id(self, ids: Iterable[PointId]) -> Filter:
        self.must.append({"has_id": list(ids)})
        return self

    def is_empty(self, key: str) -> Filter:
        self.must.append({"is_empty": {"key": key}})
        return self

    def copy(self) -> Filter:
        clone = Filter()
        clone.must = list(self.must)
        clone.must_not = list(self.must_not)
        return clone

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.must:
            body["must"] = list(self.must)
        if self.must_not:
            body["must_not"] = list(self.must_not)
        return body

    def __bool__(self) -> bool:
        return bool(self.must or self.must_not)

    def __repr__(self) -> str:
        return f"Filter({self.to_dict()!r})"


# =============================================================================
# Protocol
# =============================================================================


@runtime_checkable
class VectorStore(Protocol):
    """Protocol for the external vector store.

    Implementations must treat ``patch_payload(..., filter=...)`` as a
    conditional update: only points matching both the id list and the filter
    are changed.
    """

    def health(self) -> bool: ...

    def ensure_collection(self, collection: str, vector_size: int) -> None: ...

    def count(self, collection: str, filter: Filter | None = None) -> int: ...

    def scroll(
        self, collection: str, filter: Filter | None = None, limit: int = 100
    ) -> list[Record]: ...

    def patch_payload(
        self,
        collection: str,
        ids: list[PointId],
        payload: dict[str, Any],
        filter: Filter | None = None,
    ) -> None: ...

    def search(
        self,
        collection: str,
        vector: list[float],
        filter: Filter | None = None,
        score_threshold: float | None = None,
        limit: int = 10,
    ) -> list[ScoredRecord]: ...

    def upsert(
        self, collection: str, id: PointId, vector: list[float], payload: dict[str, Any]
    ) -> None: ...


# =============================================================================
# Qdrant Adapter
# =============================================================================


class QdrantVectorStore:
    """Vector store backed by the Qdrant REST API.

    Args:
        url: Base URL, e.g. ``http://localhost:6333``.
        timeout: Per-request timeout in seconds.
        health_timeout: Timeout for the start-up health probe.
        client: Optional preconfigured httpx.Client (tests pass a MockTransport).
    """

    service = "qdrant"

    def __init__(
        self,
        url: str = "http://localhost:6333",
        timeout: float = 30.0,
        health_timeout: float = 3.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._health_timeout = health_timeout
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self) -> None:
        self._client.close()

    def _call(self, method: str, path: str, body: Any = None, **params: Any) -> Any:
        data = request_json(
            self._client, self.service, method, f"{self._url}{path}", json=body, params=params
        )
        return data.get("result") if isinstance(data, dict) else None

    def health(self) -> bool:
        return probe(self._client, f"{self._url}/collections", self._health_timeout)

    def ensure_collection(self, collection: str, vector_size: int) -> None:
        try:
            self._call("GET", f"/collections/{collection}")
            return
        except ServiceError as e:
            if e.status_code != 404:
                raise
        logger.info("Creating collection %s (size=%d)", collection, vector_size)
        self._call(
            "PUT",
            f"/collections/{collection}",
            {"vectors": {"size": vector_size, "distance": "Cosine"}},
        )

    def count(self, collection: str, filter: Filter | None = None) -> int:
        body: dict[str, Any] = {"exact": True}
        if filter:
            body["filter"] = filter.to_dict()
        result = self._call("POST", f"/collections/{collection}/points/count", body)
        return int((result or {}).get("count", 0))

    def scroll(
        self, collection: str, filter: Filter | None = None, limit: int = 100
    ) -> list[Record]:
        records: list[Record] = []
        offset: PointId | None = None

        while len(records) < limit:
            body: dict[str, Any] = {
                "limit": min(_SCROLL_PAGE_SIZE, limit - len(records)),
                "with_payload": True,
                "with_vector": False,
            }
            if filter:
                body["filter"] = filter.to_dict()
            if offset is not None:
                body["offset"] = offset

            result = self._call("POST", f"/collections/{collection}/points/scroll", body) or {}
            for point in result.get("points", []):
                records.append(Record(id=point["id"], payload=point.get("payload") or {}))

            offset = result.get("next_page_offset")
            if offset is None:
                break

        return records

    def patch_payload(
        self,
        collection: str,
        ids: list[PointId],
        payload: dict[str, Any],
        filter: Filter | None = None,
    ) -> None:
        if not ids:
            return
        body: dict[str, Any] = {"payload": payload}
        if filter:
            # Conditional update: identity AND current-state filter
            conditional = filter.copy()
            conditional.has_id(ids)
            body["filter"] = conditional.to_dict()
        else:
            body["points"] = list(ids)
        self._call("POST", f"/collections/{collection}/points/payload", body, wait="true")

    def search(
        self,
        collection: str,
        vector: list[float],
        filter: Filter | None = None,
        score_threshold: float | None = None,
        limit: int = 10,
    ) -> list[ScoredRecord]:
        body: dict[str, Any] = {"vector": vector, "limit": limit, "with_payload": True}
        if filter:
            body["filter"] = filter.to_dict()
        if score_threshold is not None:
            body["score_threshold"] = score_threshold
        result = self._call("POST", f"/collections/{collection}/points/search", body) or []
        return [
            ScoredRecord(id=hit["id"], payload=hit.get("payload") or {}, score=hit.get("score", 0.0))
            for hit in result
        ]

    def upsert(
        self, collection: str, id: PointId, vector: list[float], payload: dict[str, Any]
    ) -> None:
        self._call(
            "PUT",
            f"/collections/{collection}/points",
            {"points": [{"id": id, "vector": vector, "payload": payload}]},
            wait="true",
        )
