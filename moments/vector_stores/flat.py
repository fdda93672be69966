"""
Flat file vector store.

Every vector lives in memory and is persisted to one JSON file. Search is
brute force: score every entry, sort, truncate. Sized for thousands of
records, not millions.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional

from ..errors import SchemaError, ValidationError
from ..types import utc_now
from .base import (
    VectorFilter,
    VectorMatch,
    cosine_similarity,
    is_zero_vector,
    matches_filter,
    validate_id,
    validate_vector,
)

logger = logging.getLogger(__name__)


class FlatVectorStore:
    """
    JSON-backed in-memory vector store.

    The file holds ``{"dimension": n, "entries": [{id, vector, metadata,
    created, updated}, ...]}``. Dimension is fixed by the first vector
    stored; a later vector of another length is a SchemaError.
    """

    name = "flat"
    supports_filtering = True

    def __init__(self, path: Path):
        self._path = Path(path)
        self._entries: dict[str, dict[str, Any]] = {}
        self._dimension: Optional[int] = None
        self._lock = threading.Lock()
        self._load()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, id: str) -> bool:
        return id in self._entries

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        if not self._path.exists():
            return
        with open(self._path, "r", encoding="utf-8") as f:
            data = json.load(f)
        self._dimension = data.get("dimension")
        self._entries = {e["id"]: e for e in data.get("entries", [])}
        logger.debug("Loaded %d vectors from %s", len(self._entries), self._path)

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {"dimension": self._dimension, "entries": list(self._entries.values())}
        fd, tmp_path = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def upsert(self, id: str, vector: list[float], metadata: Optional[dict[str, Any]] = None) -> None:
        validate_id(id)
        vector = validate_vector(vector)
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a dict")
        with self._lock:
            if self._dimension is None:
                self._dimension = len(vector)
            elif len(vector) != self._dimension:
                raise SchemaError(
                    f"Vector for {id} has dimension {len(vector)}, store expects {self._dimension}"
                )
            now = utc_now()
            previous = self._entries.get(id)
            self._entries[id] = {
                "id": id,
                "vector": vector,
                "metadata": dict(metadata or {}),
                "created": previous["created"] if previous else now,
                "updated": now,
            }
            self._save()

    def search(
        self,
        vector: list[float],
        filter: Optional[VectorFilter] = None,
        limit: int = 10,
    ) -> list[VectorMatch]:
        vector = validate_vector(vector)
        if self._dimension is not None and len(vector) != self._dimension:
            raise SchemaError(
                f"Query has dimension {len(vector)}, store expects {self._dimension}"
            )
        query_is_zero = is_zero_vector(vector)
        matches = []
        for entry in self._entries.values():
            if not matches_filter(entry["id"], entry["metadata"], filter):
                continue
            # Zero vectors carry no signal against a real query
            if not query_is_zero and is_zero_vector(entry["vector"]):
                continue
            score = cosine_similarity(vector, entry["vector"])
            matches.append(VectorMatch(
                id=entry["id"],
                score=score,
                metadata={**entry["metadata"], "created": entry["created"], "updated": entry["updated"]},
            ))
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:limit]

    def delete(self, id: str) -> None:
        with self._lock:
            if self._entries.pop(id, None) is not None:
                self._save()

    def get(self, id: str) -> Optional[list[float]]:
        entry = self._entries.get(id)
        return list(entry["vector"]) if entry else None

    def is_available(self) -> bool:
        return True

    def close(self) -> None:
        pass
