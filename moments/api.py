"""
Core API for the experiential journal.

``Journal`` composes the record store, the embedding registry, the vector
store and the search engine:

- create(): validate → persist → embed → index
- update(): merge → re-embed when the embedded text changed
- delete(): drop the vector entry, then the record and its embedding
- search(): filters → keyword/semantic relevance → sort → page
- reembed(): sequential, rate-limited, cancellable batch re-indexing
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .backend import create_stores, create_vector_store
from .config import JournalConfig, get_default_store_path, load_or_create_config
from .errors import (
    AlreadyReleasedError,
    JournalError,
    NotFoundError,
    ProviderUnavailableError,
    SchemaError,
    StoreUnavailableError,
)
from .logging_config import configure_ops_log, remove_ops_log
from .providers.registry import EmbeddingRegistry
from .record_store import RecordListing, RecordStore
from .search import SearchEngine, SearchResponse
from .types import Record
from .vector_stores.base import VectorStore

logger = logging.getLogger(__name__)

# Failures that cost a record its vector but never the record itself
_EMBEDDING_ERRORS = (ProviderUnavailableError, StoreUnavailableError, SchemaError)

# Changes to these fields change the embedding text
_EMBEDDED_FIELDS = frozenset({"content", "qualities", "context"})

# Changes to these fields only change the vector store payload
_METADATA_FIELDS = frozenset({"who", "processing", "perspective"})


@dataclass
class BatchFailure:
    id: str
    error: str
    message: str


@dataclass
class BatchResult:
    """Outcome of a re-embedding batch."""
    total: int = 0
    succeeded: int = 0
    failed: list[BatchFailure] = field(default_factory=list)
    skipped: int = 0
    cancelled: bool = False
    elapsed: float = 0.0
    note: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": [f.__dict__ for f in self.failed],
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "elapsed": round(self.elapsed, 3),
            "note": self.note,
        }


class Journal:
    """
    An experiential-record journal with optional semantic search.

    The embedding provider is resolved lazily, on the first write or
    semantic search, so read-only use never touches the network.
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[JournalConfig] = None,
        record_store: Optional[RecordStore] = None,
        vector_store: Optional[VectorStore] = None,
        registry: Optional[EmbeddingRegistry] = None,
    ) -> None:
        """
        Open (or create) a journal.

        Args:
            store_path: Store directory. Defaults to MOMENTS_STORE_PATH or ~/.moments.
            config: Pre-loaded config (skips filesystem config discovery).
            record_store: Injected record store (skips default creation).
            vector_store: Injected vector store (skips default creation).
            registry: Injected embedding registry (skips default creation).
        """
        if config is None:
            path = Path(store_path).resolve() if store_path else get_default_store_path()
            config = load_or_create_config(path)
        self._config = config

        if record_store is None and vector_store is None:
            bundle = create_stores(config)
            record_store, vector_store = bundle.record_store, bundle.vector_store
        else:
            record_store = record_store or RecordStore(config.data_path)
            vector_store = vector_store or create_vector_store(config)
        self._records = record_store
        self._vectors = vector_store
        self._registry = registry or EmbeddingRegistry(config.embedding)
        self._search = SearchEngine(
            self._records, self._registry, self._vectors,
            snippet_length=config.snippet_length,
        )

        self._ops_handler = None
        if config.ops_log:
            config.path.mkdir(parents=True, exist_ok=True)
            self._ops_handler = configure_ops_log(config.path)

    @property
    def config(self) -> JournalConfig:
        return self._config

    @property
    def registry(self) -> EmbeddingRegistry:
        return self._registry

    @property
    def record_store(self) -> RecordStore:
        return self._records

    @property
    def vector_store(self) -> VectorStore:
        return self._vectors

    # -------------------------------------------------------------------------
    # Embedding
    # -------------------------------------------------------------------------

    @staticmethod
    def _vector_metadata(record: Record) -> dict[str, Any]:
        return {
            "who": record.who_list,
            "processing": record.processing,
            "perspective": record.perspective,
            "created": record.created,
        }

    def _embed_and_index(self, record: Record) -> bool:
        """
        Embed a record and index the vector. False when there is no
        semantic provider to embed with.

        Raises:
            ProviderUnavailableError, StoreUnavailableError, SchemaError
        """
        if self._registry.is_fallback:
            return False
        vector = self._registry.generate_embedding(record.embedding_text())
        self._vectors.upsert(record.id, vector, self._vector_metadata(record))
        self._records.set_embedding(record.id, vector)
        return True

    def _try_embed(self, record: Record, action: str) -> None:
        try:
            self._embed_and_index(record)
        except _EMBEDDING_ERRORS as e:
            # The record is saved; reembed() can fill the vector in later
            logger.warning("%s %s: not indexed (%s: %s)", action, record.id, type(e).__name__, e)

    def _refresh_metadata(self, record: Record) -> None:
        """Re-index the stored vector under the record's current payload."""
        vector = self._records.get_embedding(record.id)
        if vector is None:
            return
        try:
            self._vectors.upsert(record.id, vector, self._vector_metadata(record))
        except _EMBEDDING_ERRORS as e:
            logger.warning("update %s: payload not refreshed (%s: %s)", record.id, type(e).__name__, e)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(
        self,
        content: str,
        *,
        who: str | list[str] | None = None,
        qualities: Optional[dict[str, Any]] = None,
        reflects: Optional[list[str]] = None,
        processing: Optional[str] = None,
        perspective: Optional[str] = None,
        occurred: Optional[str] = None,
        context: Optional[str] = None,
    ) -> str:
        """
        Record an experience.

        Returns:
            The new record id

        Raises:
            ValidationError: bad content, quality, processing or self-reference
            NotFoundError: a reflects target does not exist
        """
        record_id = self._records.create(
            content,
            who=who,
            qualities=qualities,
            reflects=reflects,
            processing=processing,
            perspective=perspective,
            occurred=occurred,
            context=context,
        )
        logger.info("create %s", record_id)
        self._try_embed(self._records.get(record_id), "create")
        return record_id

    def update(self, id: str, **changes: Any) -> Record:
        """
        Change some fields of a record. Re-embeds when content, qualities
        or context change; refreshes the vector payload when only who,
        processing or perspective change.

        Raises:
            NotFoundError: unknown id
            AlreadyReleasedError: the record was deleted
            ValidationError: bad or immutable field
        """
        record = self._records.update(id, changes)
        logger.info("update %s (%s)", id, ", ".join(sorted(changes)))
        if _EMBEDDED_FIELDS.intersection(changes):
            self._try_embed(record, "update")
        elif _METADATA_FIELDS.intersection(changes):
            self._refresh_metadata(record)
        return record

    def delete(self, id: str) -> None:
        """
        Delete a record, its embedding and its vector entry.

        The vector entry goes first. If the vector store cannot be reached
        the error propagates and the record stays, so no vector is left
        without its record.

        Raises:
            NotFoundError: unknown id
            AlreadyReleasedError: already deleted
            StoreUnavailableError: vector store unreachable; nothing deleted
        """
        if not self._records.exists(id):
            if self._records.is_released(id):
                raise AlreadyReleasedError(id)
            raise NotFoundError(id)
        self._vectors.delete(id)
        self._records.delete(id)
        logger.info("delete %s", id)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Record:
        """Raises NotFoundError for unknown or deleted ids."""
        return self._records.get(id)

    def list(self, who=None, created_from=None, created_to=None) -> RecordListing:
        return self._records.list(who=who, created_from=created_from, created_to=created_to)

    def search(
        self,
        query: Optional[str] = None,
        semantic_query: Optional[str] = None,
        filters: Any = None,
        sort_by: str = "relevance",
        limit: Optional[int] = None,
        offset: int = 0,
        min_similarity: Optional[float] = None,
        group_by: Optional[str] = None,
    ) -> SearchResponse:
        """See SearchEngine.search."""
        response = self._search.search(
            query=query,
            semantic_query=semantic_query,
            filters=filters,
            sort_by=sort_by,
            limit=limit,
            offset=offset,
            min_similarity=min_similarity,
            group_by=group_by,
        )
        logger.info(
            "search returned %d of %d (semantic_ranked=%s)",
            len(response.results), response.total, response.debug.get("semantic_ranked"),
        )
        return response

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    def reembed(
        self,
        ids: Optional[list[str]] = None,
        *,
        delay: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        only_missing: bool = False,
        on_progress: Optional[Callable[[int, int, str], None]] = None,
    ) -> BatchResult:
        """
        Re-embed records one at a time.

        Sleeps ``delay`` seconds (default ``config.batch_delay``) after each
        provider call. ``cancel`` is checked between records, never in the
        middle of one. A failure on one record is collected and the batch
        moves on. Safe to run again after an interruption: indexing a
        record twice overwrites the same entry.

        Args:
            ids: Records to process; all live records when omitted
            delay: Seconds between provider calls
            cancel: Set to stop after the current record
            only_missing: Skip records that already have an embedding
            on_progress: Called with (done, total, id) after each record
        """
        delay = self._config.batch_delay if delay is None else delay
        if ids is None:
            targets = [r.id for r in self._records.list()]
        else:
            targets = list(dict.fromkeys(ids))
        if only_missing:
            embedded = self._records.embeddings()
            targets = [t for t in targets if t not in embedded]

        result = BatchResult(total=len(targets))
        if self._registry.is_fallback:
            result.skipped = len(targets)
            result.note = f"no embedding provider available ({self._registry.name})"
            logger.warning("reembed skipped: %s", result.note)
            return result

        started = time.monotonic()
        for done, id in enumerate(targets, 1):
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                result.skipped = len(targets) - (done - 1)
                logger.info("reembed cancelled after %d of %d", done - 1, len(targets))
                break
            try:
                self._embed_and_index(self._records.get(id))
                result.succeeded += 1
            except (JournalError, OSError) as e:
                result.failed.append(BatchFailure(id=id, error=type(e).__name__, message=str(e)))
                logger.warning("reembed %s failed: %s", id, e)
            if delay > 0:
                time.sleep(delay)
            if on_progress is not None:
                on_progress(done, len(targets), id)

        result.elapsed = time.monotonic() - started
        logger.info(
            "reembed: %d succeeded, %d failed, %d skipped",
            result.succeeded, len(result.failed), result.skipped,
        )
        return result

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Store counts and the state of the semantic layer."""
        embedded = self._records.embeddings()
        return {
            "store": str(self._config.path),
            "records": self._records.count(),
            "embedded": len(embedded),
            "released": len(self._records.released_ids()),
            "provider": self._registry.name,
            "provider_state": self._registry.state.value,
            "provider_requested": self._registry.requested.value if self._registry.requested else None,
            "fallback_reason": self._registry.fallback_reason,
            "vector_store": self._vectors.name,
            "vector_store_available": self._vectors.is_available(),
        }

    def close(self) -> None:
        """Release clients and the ops log handler."""
        self._registry.close()
        closer = getattr(self._vectors, "close", None)
        if callable(closer):
            closer()
        if self._ops_handler is not None:
            remove_ops_log(self._ops_handler)
            self._ops_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
