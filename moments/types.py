"""
Data types for experiential records.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .qualities import present_qualities

DEFAULT_WHO = "self"
DEFAULT_PERSPECTIVE = "I"
DEFAULT_PROCESSING = "during"

# How close to the moment the record was written
PROCESSING_LEVELS = ("during", "right-after", "long-after", "crafted")

RECORD_ID_PREFIX = "mom_"

DEFAULT_SNIPPET_LENGTH = 120


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.ffffff.

    All timestamps are UTC, stored without timezone suffix. Microseconds
    keep records created in the same second ordered.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical format as well as 'Z' or '+00:00' suffixes and
    bare dates.
    """
    ts = ts.strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_record_id() -> str:
    return f"{RECORD_ID_PREFIX}{uuid.uuid4().hex[:12]}"


def normalize_who(who: Any) -> list[str]:
    """Experiencer as a list of names, defaulting to ``["self"]``."""
    if who is None or who == "" or who == []:
        return [DEFAULT_WHO]
    if isinstance(who, str):
        return [who]
    return [str(w) for w in who]


def smart_truncate(text: str, max_length: int = DEFAULT_SNIPPET_LENGTH) -> str:
    """
    Shorten ``text`` to at most ``max_length`` characters plus an ellipsis.

    Cuts at the last space before the limit so words stay whole; a single
    unbroken word longer than the limit is cut hard.
    """
    if not text or len(text) <= max_length:
        return text
    cut = text[:max_length]
    space = cut.rfind(" ")
    if space > 0:
        cut = cut[:space]
    return cut.rstrip() + "..."


@dataclass
class Record:
    """
    One experiential record.

    Attributes:
        id: Opaque unique identifier, immutable
        content: What was experienced, in the experiencer's words
        created: UTC timestamp of persistence, immutable
        who: Experiencer name or ordered list of names
        processing: during | right-after | long-after | crafted
        perspective: Free-form point of view tag (default "I")
        qualities: Quality signature, tag -> description or False
        reflects: Ids of earlier records this one comments on
        occurred: When the experience happened, if not at ``created``
        context: Situational context, included in the embedding text
        updated: UTC timestamp of the last update
    """
    id: str
    content: str
    created: str
    who: str | list[str] = DEFAULT_WHO
    processing: str = DEFAULT_PROCESSING
    perspective: str = DEFAULT_PERSPECTIVE
    qualities: dict[str, str | bool] = field(default_factory=dict)
    reflects: list[str] = field(default_factory=list)
    occurred: Optional[str] = None
    context: Optional[str] = None
    updated: Optional[str] = None

    @property
    def who_list(self) -> list[str]:
        return normalize_who(self.who)

    @property
    def event_time(self) -> str:
        """When it happened: ``occurred`` if set, else ``created``."""
        return self.occurred or self.created

    def embedding_text(self) -> str:
        """Text handed to the embedding provider for this record."""
        text = f'"{self.content}"'
        if self.context:
            text = f"Context: {self.context}. {text}"
        present = present_qualities(self.qualities)
        if present:
            parts = ", ".join(f"{tag}: {self.qualities[tag]}" for tag in present)
            text = f"{text} [{parts}]"
        return text

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Record":
        return cls(
            id=data["id"],
            content=data["content"],
            created=data["created"],
            who=data.get("who", DEFAULT_WHO),
            processing=data.get("processing", DEFAULT_PROCESSING),
            perspective=data.get("perspective", DEFAULT_PERSPECTIVE),
            qualities=dict(data.get("qualities") or {}),
            reflects=list(data.get("reflects") or []),
            occurred=data.get("occurred"),
            context=data.get("context"),
            updated=data.get("updated"),
        )
