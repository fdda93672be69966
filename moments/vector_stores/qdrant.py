"""
Qdrant vector store.

Qdrant point ids must be unsigned integers or UUIDs, so each record id is
mapped to a deterministic ``uuid5`` and the record id rides along in the
payload as ``back_reference_id``. Search results are mapped back before
they leave this module.

The collection is created on first upsert, sized from that first vector,
with cosine distance. Transport failures raise ``StoreUnavailableError``
and are not retried here.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

import httpx
from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from ..errors import SchemaError, StoreUnavailableError, ValidationError
from .base import ID_FILTER_KEY, VectorFilter, VectorMatch, validate_id, validate_vector

logger = logging.getLogger(__name__)

BACK_REFERENCE_KEY = "back_reference_id"

# Fixed namespace so the same record id always maps to the same point id
POINT_NAMESPACE = uuid.UUID("6f1c2b7e-3d4a-5e8f-9a0b-1c2d3e4f5a6b")

_TRANSPORT_ERRORS = (ResponseHandlingException, UnexpectedResponse, httpx.HTTPError, OSError)


def point_id(record_id: str) -> str:
    """Synthetic Qdrant point id for a record id."""
    return str(uuid.uuid5(POINT_NAMESPACE, record_id))


def build_filter(filter: Optional[VectorFilter]) -> Optional[Filter]:
    """Translate a VectorFilter into a Qdrant payload filter."""
    if not filter:
        return None
    conditions = []
    for key, value in filter.items():
        payload_key = BACK_REFERENCE_KEY if key == ID_FILTER_KEY else key
        if isinstance(value, (list, tuple, set, frozenset)):
            match = MatchAny(any=list(value))
        else:
            match = MatchValue(value=value)
        conditions.append(FieldCondition(key=payload_key, match=match))
    return Filter(must=conditions)


class QdrantVectorStore:
    """
    Vector store on a remote Qdrant collection.

    Args:
        url: Qdrant server URL
        api_key: Optional API key
        collection: Collection name
        timeout: Request timeout in seconds
        client: Pre-built client (tests inject a mock)
    """

    supports_filtering = True

    def __init__(
        self,
        url: str = "http://localhost:6333",
        api_key: Optional[str] = None,
        collection: str = "moments",
        timeout: float = 30.0,
        client: Optional[QdrantClient] = None,
    ):
        self._collection = collection
        self._client = client or QdrantClient(url=url, api_key=api_key, timeout=int(timeout))
        self._dimension: Optional[int] = None
        self._collection_ready = False

    @property
    def name(self) -> str:
        return f"qdrant:{self._collection}"

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    # -------------------------------------------------------------------------
    # Collection management
    # -------------------------------------------------------------------------

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except _TRANSPORT_ERRORS as e:
            raise StoreUnavailableError(f"Qdrant {what} failed: {e}") from e

    def _discover(self) -> bool:
        """Pick up an existing collection's dimension. True if it exists."""
        if self._collection_ready:
            return True
        exists = self._call("collection check", self._client.collection_exists, self._collection)
        if not exists:
            return False
        info = self._call("collection info", self._client.get_collection, self._collection)
        vectors = info.config.params.vectors
        self._dimension = vectors.size
        self._collection_ready = True
        return True

    def _ensure_collection(self, dimension: int) -> None:
        if self._discover():
            return
        self._call(
            "collection create",
            self._client.create_collection,
            collection_name=self._collection,
            vectors_config=VectorParams(size=dimension, distance=Distance.COSINE),
        )
        self._dimension = dimension
        self._collection_ready = True
        logger.info("Created Qdrant collection %s (dimension %d)", self._collection, dimension)

    def _check_dimension(self, vector: list[float], what: str) -> None:
        if self._dimension is not None and len(vector) != self._dimension:
            raise SchemaError(
                f"{what} has dimension {len(vector)}, collection "
                f"'{self._collection}' expects {self._dimension}"
            )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def upsert(self, id: str, vector: list[float], metadata: Optional[dict[str, Any]] = None) -> None:
        validate_id(id)
        vector = validate_vector(vector)
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a dict")
        self._ensure_collection(len(vector))
        self._check_dimension(vector, f"Vector for {id}")
        payload = {**(metadata or {}), BACK_REFERENCE_KEY: id}
        self._call(
            "upsert",
            self._client.upsert,
            collection_name=self._collection,
            points=[PointStruct(id=point_id(id), vector=vector, payload=payload)],
        )

    def search(
        self,
        vector: list[float],
        filter: Optional[VectorFilter] = None,
        limit: int = 10,
    ) -> list[VectorMatch]:
        vector = validate_vector(vector)
        if not self._discover():
            return []
        self._check_dimension(vector, "Query")
        response = self._call(
            "search",
            self._client.query_points,
            collection_name=self._collection,
            query=vector,
            query_filter=build_filter(filter),
            limit=limit,
            with_payload=True,
        )
        matches = []
        for point in response.points:
            payload = dict(point.payload or {})
            record_id = payload.pop(BACK_REFERENCE_KEY, None)
            if record_id is None:
                # Not written by us; no way to map it back
                continue
            matches.append(VectorMatch(id=record_id, score=float(point.score), metadata=payload))
        return matches

    def delete(self, id: str) -> None:
        validate_id(id)
        if not self._discover():
            return
        self._call(
            "delete",
            self._client.delete,
            collection_name=self._collection,
            points_selector=PointIdsList(points=[point_id(id)]),
        )

    def is_available(self) -> bool:
        try:
            self._client.get_collections()
        except _TRANSPORT_ERRORS as e:
            logger.info("Qdrant unavailable: %s", e)
            return False
        return True

    def close(self) -> None:
        self._client.close()
