"""
moments: a journal of experiential records with semantic search.

Records carry a signature of phenomenological qualities and can reflect on
earlier records. Search combines structured filters with optional semantic
ranking, degrading to filter-only results when no embedding provider or
vector store is reachable.

Quick start:
    from moments import Journal

    journal = Journal()
    rid = journal.create("anxious about tomorrow", who="Ava",
                         qualities={"mood": "tight", "time": "future"})
    response = journal.search(semantic_query="worry", filters={"who": ["Ava"]})
"""

__version__ = "0.3.0"

from .api import Journal
from .errors import (
    AlreadyReleasedError,
    InvalidQualityError,
    JournalError,
    NotFoundError,
    ProviderUnavailableError,
    SchemaError,
    StoreUnavailableError,
    ValidationError,
)
from .types import Record

__all__ = [
    "Journal",
    "Record",
    "JournalError",
    "ValidationError",
    "InvalidQualityError",
    "NotFoundError",
    "AlreadyReleasedError",
    "ProviderUnavailableError",
    "StoreUnavailableError",
    "SchemaError",
]
