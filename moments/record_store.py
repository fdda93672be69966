"""
Record store backed by a single JSON document.

The document holds three things:

    {
      "sources": [ {record}, ... ],        # live records, creation order
      "embeddings": { "<id>": [floats] },  # one vector per live record
      "released": [ "<id>", ... ]          # tombstones of deleted records
    }

Every mutation rewrites the whole document through a temp file and an
atomic rename, so a crash leaves either the old or the new document, never
a partial record. Every operation re-reads the file; there is no cache to
go stale. Writers are expected to be serialized by the caller.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .errors import AlreadyReleasedError, NotFoundError, ValidationError
from .qualities import validate_signature
from .types import (
    DEFAULT_PERSPECTIVE,
    DEFAULT_PROCESSING,
    DEFAULT_WHO,
    PROCESSING_LEVELS,
    Record,
    new_record_id,
    normalize_who,
    parse_utc_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

# Fields update() may change
MUTABLE_FIELDS = frozenset({
    "content", "who", "processing", "perspective", "qualities",
    "reflects", "occurred", "context",
})
IMMUTABLE_FIELDS = frozenset({"id", "created", "updated"})


def _empty_document() -> dict[str, Any]:
    return {"sources": [], "embeddings": {}, "released": []}


def _to_datetime(value: datetime | str | None, name: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        # Stored timestamps are UTC-aware; treat naive bounds as UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    try:
        return parse_utc_timestamp(value)
    except (ValueError, TypeError):
        raise ValidationError(f"Invalid {name}: '{value}'") from None


class RecordListing:
    """
    Lazy, restartable view over the records matching a filter.

    Nothing is read until iteration starts, and each new iteration reads
    the store's current state rather than a snapshot.
    """

    def __init__(
        self,
        store: "RecordStore",
        who: Optional[list[str]] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ):
        self._store = store
        self._who = set(who) if who else None
        self._from = created_from
        self._to = created_to

    def __iter__(self) -> Iterator[Record]:
        for raw in self._store._read()["sources"]:
            record = Record.from_dict(raw)
            if self._who is not None and not self._who.intersection(record.who_list):
                continue
            if self._from is not None or self._to is not None:
                created = parse_utc_timestamp(record.created)
                if self._from is not None and created < self._from:
                    continue
                if self._to is not None and created > self._to:
                    continue
            yield record


class RecordStore:
    """
    JSON-file store for experiential records and their embeddings.

    Owns the reflects graph (validated at write time) and the
    record -> embedding map. Knows nothing about providers or vector stores.
    """

    def __init__(self, path: Path):
        """
        Args:
            path: Path to the JSON document (created on first write)
        """
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    # -------------------------------------------------------------------------
    # File I/O
    # -------------------------------------------------------------------------

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return _empty_document()
        with open(self._path, "r", encoding="utf-8") as f:
            data = json.load(f)
        data.setdefault("sources", [])
        data.setdefault("embeddings", {})
        data.setdefault("released", [])
        return data

    def _write(self, data: dict[str, Any]) -> None:
        """Write the whole document atomically."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    @staticmethod
    def _index(data: dict[str, Any]) -> dict[str, int]:
        return {src["id"]: i for i, src in enumerate(data["sources"])}

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate_fields(fields: dict[str, Any]) -> dict[str, Any]:
        """Validate and normalize record fields. Only keys present are checked."""
        out = dict(fields)
        if "content" in out:
            content = out["content"]
            if not isinstance(content, str) or not content.strip():
                raise ValidationError("content is required and must be non-empty")
        if "processing" in out:
            if out["processing"] is None:
                out["processing"] = DEFAULT_PROCESSING
            elif out["processing"] not in PROCESSING_LEVELS:
                raise ValidationError(
                    f"Invalid processing '{out['processing']}'. "
                    f"Valid: {', '.join(PROCESSING_LEVELS)}"
                )
        if "perspective" in out:
            perspective = out["perspective"]
            if perspective is None or perspective == "":
                out["perspective"] = DEFAULT_PERSPECTIVE
            elif not isinstance(perspective, str):
                raise ValidationError("perspective must be a string")
        if "who" in out:
            who = out["who"]
            if who is None or who == "" or who == []:
                out["who"] = DEFAULT_WHO
            elif isinstance(who, list):
                if not all(isinstance(w, str) and w.strip() for w in who):
                    raise ValidationError("who must be a name or a list of non-empty names")
            elif not isinstance(who, str):
                raise ValidationError("who must be a name or a list of names")
        if "qualities" in out:
            out["qualities"] = validate_signature(out["qualities"])
        if "occurred" in out and out["occurred"] is not None:
            _to_datetime(out["occurred"], "occurred")
        if "reflects" in out:
            reflects = out["reflects"] or []
            if isinstance(reflects, str) or not all(isinstance(r, str) and r for r in reflects):
                raise ValidationError("reflects must be a list of record ids")
            # Ordered set: first occurrence wins
            out["reflects"] = list(dict.fromkeys(reflects))
        return out

    @staticmethod
    def _check_reflects(record_id: str, reflects: list[str], known: dict[str, int]) -> None:
        if record_id in reflects:
            raise ValidationError(f"Record {record_id} cannot reflect on itself")
        missing = [r for r in reflects if r not in known]
        if missing:
            raise NotFoundError(
                missing, f"Reflects target not found: {', '.join(missing)}"
            )

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
        id: Optional[str] = None,
    ) -> str:
        """
        Validate and persist a new record.

        Args:
            content: Required, non-empty
            id: Explicit id; generated when omitted

        Returns:
            The record id

        Raises:
            ValidationError: bad field, unknown quality, self-reference
            NotFoundError: a reflects target does not exist (lists every missing id)
        """
        fields = self._validate_fields({
            "content": content,
            "who": who,
            "qualities": qualities,
            "reflects": reflects,
            "processing": processing,
            "perspective": perspective,
            "occurred": occurred,
        })
        with self._lock:
            data = self._read()
            known = self._index(data)
            record_id = id or new_record_id()
            if record_id in known or record_id in data["released"]:
                raise ValidationError(f"Record id already used: {record_id}")
            self._check_reflects(record_id, fields["reflects"], known)

            record = Record(
                id=record_id,
                content=fields["content"],
                created=utc_now(),
                who=fields["who"],
                processing=fields["processing"],
                perspective=fields["perspective"],
                qualities=fields["qualities"],
                reflects=fields["reflects"],
                occurred=occurred,
                context=context or None,
            )
            data["sources"].append(record.to_dict())
            self._write(data)
        logger.debug("Created record %s", record_id)
        return record_id

    def update(self, id: str, changes: dict[str, Any]) -> Record:
        """
        Merge ``changes`` into an existing record.

        Only the provided fields change; ``id`` and ``created`` never do.

        Raises:
            NotFoundError: unknown id
            AlreadyReleasedError: the record was deleted
            ValidationError: bad field or an attempt to change an immutable one
        """
        immutable = IMMUTABLE_FIELDS.intersection(changes)
        if immutable:
            raise ValidationError(f"Cannot change {', '.join(sorted(immutable))}")
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        fields = self._validate_fields(changes)

        with self._lock:
            data = self._read()
            known = self._index(data)
            if id not in known:
                if id in data["released"]:
                    raise AlreadyReleasedError(id)
                raise NotFoundError(id)

            current = data["sources"][known[id]]
            if "reflects" in fields:
                # Existing pointers stay valid even if their targets were released
                previous = set(current.get("reflects") or [])
                new_targets = [r for r in fields["reflects"] if r not in previous]
                self._check_reflects(id, new_targets, known)

            merged = {**current, **fields, "updated": utc_now()}
            record = Record.from_dict(merged)
            data["sources"][known[id]] = record.to_dict()
            self._write(data)
        logger.debug("Updated record %s (%s)", id, ", ".join(sorted(changes)))
        return record

    def delete(self, id: str) -> None:
        """
        Remove a record and its embedding in one atomic write.

        The id is kept as a tombstone so a second delete is distinguishable
        from deleting something that never existed.

        Raises:
            AlreadyReleasedError: the record was already deleted
            NotFoundError: the id was never known
        """
        with self._lock:
            data = self._read()
            known = self._index(data)
            if id not in known:
                if id in data["released"]:
                    raise AlreadyReleasedError(id)
                raise NotFoundError(id)
            del data["sources"][known[id]]
            data["embeddings"].pop(id, None)
            data["released"].append(id)
            self._write(data)
        logger.debug("Deleted record %s", id)

    def set_embedding(self, id: str, vector: list[float]) -> None:
        """Store the embedding for a live record."""
        with self._lock:
            data = self._read()
            if id not in self._index(data):
                if id in data["released"]:
                    raise AlreadyReleasedError(id)
                raise NotFoundError(id)
            data["embeddings"][id] = [float(x) for x in vector]
            self._write(data)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Record:
        """
        Fetch a record by id.

        Raises:
            NotFoundError: unknown or deleted id
        """
        for raw in self._read()["sources"]:
            if raw["id"] == id:
                return Record.from_dict(raw)
        raise NotFoundError(id)

    def exists(self, id: str) -> bool:
        return id in self._index(self._read())

    def is_released(self, id: str) -> bool:
        return id in self._read()["released"]

    def list(
        self,
        who: str | list[str] | None = None,
        created_from: datetime | str | None = None,
        created_to: datetime | str | None = None,
    ) -> RecordListing:
        """
        Records matching the filter, in creation order.

        Args:
            who: A name or names; a record matches if any is in its who-list
            created_from: Inclusive lower bound on ``created``
            created_to: Inclusive upper bound on ``created``
        """
        names = normalize_who(who) if who else None
        return RecordListing(
            self,
            who=names,
            created_from=_to_datetime(created_from, "created_from"),
            created_to=_to_datetime(created_to, "created_to"),
        )

    def get_embedding(self, id: str) -> Optional[list[float]]:
        return self._read()["embeddings"].get(id)

    def embeddings(self) -> dict[str, list[float]]:
        """Copy of the id -> vector map."""
        return dict(self._read()["embeddings"])

    def count(self) -> int:
        return len(self._read()["sources"])

    def released_ids(self) -> list[str]:
        return list(self._read()["released"])
