"""
Vector store protocol and the similarity math shared by stores.

Callers always address entries by record id. A store that needs its own id
shape keeps the record id in the entry metadata and maps back on the way
out, so synthetic ids never leave the store.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from ..errors import SchemaError, ValidationError

# Filter: metadata key -> value (equality) or list of values (any-of).
# The key "id" matches record ids.
VectorFilter = dict[str, Any]

ID_FILTER_KEY = "id"


@dataclass
class VectorMatch:
    """One ranked search hit."""
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class VectorStore(Protocol):
    """
    Persists vectors keyed by record id and answers similarity queries.

    Implemented by:
    - FlatVectorStore (single JSON file, brute-force cosine)
    - QdrantVectorStore (remote Qdrant collection)
    """

    @property
    def name(self) -> str: ...

    @property
    def supports_filtering(self) -> bool:
        """True if ``search`` can restrict candidates natively."""
        ...

    def upsert(self, id: str, vector: list[float], metadata: Optional[dict[str, Any]] = None) -> None:
        """
        Insert or replace the vector for ``id``. Idempotent.

        Raises:
            SchemaError: vector length differs from the store's dimension
            StoreUnavailableError: transport failure (remote stores)
        """
        ...

    def search(
        self,
        vector: list[float],
        filter: Optional[VectorFilter] = None,
        limit: int = 10,
    ) -> list[VectorMatch]:
        """Entries most similar to ``vector``, best first, at most ``limit``."""
        ...

    def delete(self, id: str) -> None:
        """Remove the entry for ``id``; a missing entry is not an error."""
        ...

    def is_available(self) -> bool: ...


def validate_vector(vector: Any) -> list[float]:
    """Non-empty list of finite numbers, returned as floats."""
    if not isinstance(vector, (list, tuple)) or not vector:
        raise ValidationError("Vector must be a non-empty list of numbers")
    out = []
    for x in vector:
        if isinstance(x, bool) or not isinstance(x, (int, float)):
            raise ValidationError("Vector must contain only numbers")
        if math.isnan(x):
            raise ValidationError("Vector contains NaN")
        out.append(float(x))
    return out


def validate_id(id: Any) -> str:
    if not isinstance(id, str) or not id.strip():
        raise ValidationError("Vector id must be a non-empty string")
    return id


def is_zero_vector(vector: list[float]) -> bool:
    return all(x == 0 for x in vector)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """
    dot(a, b) / (|a| * |b|), or 0.0 when either norm is zero.

    Raises:
        SchemaError: vectors have different lengths
    """
    if len(a) != len(b):
        raise SchemaError(f"Vector dimension mismatch: {len(a)} vs {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def matches_filter(record_id: str, metadata: dict[str, Any], filter: Optional[VectorFilter]) -> bool:
    """Evaluate a VectorFilter against one entry."""
    if not filter:
        return True
    for key, expected in filter.items():
        actual = record_id if key == ID_FILTER_KEY else metadata.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True
