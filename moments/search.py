"""
Search over experiential records.

One pipeline, in order:

1. validate arguments (bad time bounds fail before any I/O)
2. structured filters over the record store listing
3. optional keyword relevance for ``query``
4. optional semantic ranking for ``semantic_query``
5. merge into scored results with snippets
6. sort by relevance or creation time
7. paginate

Semantic ranking is an enhancement. If the provider is the no-op
fallback, or the provider or vector store fails, the search still returns
the structured results and says why in ``debug``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Mapping, Optional, Sequence

from .errors import ProviderUnavailableError, SchemaError, StoreUnavailableError, ValidationError
from .providers.registry import EmbeddingRegistry
from .qualities import QualityPredicate, compile_quality_filter
from .record_store import RecordStore
from .types import DEFAULT_SNIPPET_LENGTH, PROCESSING_LEVELS, Record, parse_utc_timestamp, smart_truncate, utc_now
from .vector_stores.base import ID_FILTER_KEY, VectorStore, cosine_similarity, is_zero_vector

logger = logging.getLogger(__name__)

SORT_KEYS = ("relevance", "created", "occurred")
GROUP_KEYS = ("none", "day", "week", "month", "experiencer")

# Relevance when nothing ranked the result
PLACEHOLDER_RELEVANCE = 1.0

FILTER_KEYS = frozenset({
    "who", "time_range", "system_time_range", "perspective",
    "processing", "qualities", "reflects",
})

_DURATION_RE = re.compile(r"^P(?!$)(\d+Y)?(\d+M)?(\d+W)?(\d+D)?(T(?=\d)(\d+H)?(\d+M)?(\d+S)?)?$")


# ---------------------------------------------------------------------------
# Time bounds
# ---------------------------------------------------------------------------

def _parse_duration(value: str) -> timedelta:
    """ISO 8601 duration (P3D, P1W, PT1H, P1DT12H). Months and years are approximate."""
    match = _DURATION_RE.match(value.upper())
    if not match:
        raise ValueError(value)

    def num(group: Optional[str]) -> int:
        return int(group[:-1]) if group else 0

    years, months, weeks, days = (num(match.group(i)) for i in (1, 2, 3, 4))
    hours, minutes, seconds = (num(match.group(i)) for i in (6, 7, 8))
    total_days = years * 365 + months * 30 + weeks * 7 + days
    return timedelta(days=total_days, hours=hours, minutes=minutes, seconds=seconds)


def parse_time_bound(value: Any, *, end: bool = False, now: Optional[datetime] = None) -> datetime:
    """
    Parse one side of a time range into a UTC datetime.

    Accepts:
    - ISO 8601 duration, relative to now: P3D, PT1H, P1W
    - ``today`` / ``yesterday``
    - ISO date: 2026-01-15 (start of day, or end of day when ``end``)
    - ISO datetime: 2026-01-15T09:30:00Z

    Raises:
        ValidationError: anything else
    """
    now = now or datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid time bound: {value!r}")
    text = value.strip()
    lowered = text.lower()

    day = None
    if lowered == "today":
        day = now.date()
    elif lowered == "yesterday":
        day = now.date() - timedelta(days=1)
    elif lowered.startswith("p"):
        try:
            return now - _parse_duration(text)
        except ValueError:
            raise ValidationError(
                f"Invalid duration: '{value}'. Use ISO duration (P3D, PT1H, P1W)"
            ) from None
        except OverflowError:
            raise ValidationError(f"Duration out of range: '{value}'") from None
    elif len(text) == 10:
        try:
            day = datetime.strptime(text.replace("/", "-"), "%Y-%m-%d").date()
        except ValueError:
            raise ValidationError(
                f"Invalid date: '{value}'. Use a date (2026-01-15) or ISO duration (P3D)"
            ) from None

    if day is not None:
        # Date-only bounds cover the whole day
        return datetime.combine(day, time.max if end else time.min, tzinfo=timezone.utc)

    try:
        return parse_utc_timestamp(text)
    except ValueError:
        raise ValidationError(
            f"Invalid time bound: '{value}'. "
            "Use a date (2026-01-15), datetime, today, yesterday, or ISO duration (P3D)"
        ) from None


@dataclass
class TimeRange:
    """Inclusive range; either side may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment > self.end:
            return False
        return True

    @classmethod
    def parse(cls, value: Any, now: Optional[datetime] = None) -> "TimeRange":
        """
        Build from a single bound (that whole day), a ``{start, end}``
        mapping, or a ``(start, end)`` pair.
        """
        if isinstance(value, TimeRange):
            return value
        if isinstance(value, str):
            start = parse_time_bound(value, now=now)
            end = parse_time_bound(value, end=True, now=now)
            if value.strip().lower().startswith("p"):
                # A duration means "since then", not a single day
                end = None
            return cls(start, end)
        if isinstance(value, Mapping):
            unknown = set(value) - {"start", "end"}
            if unknown:
                raise ValidationError(f"Unknown time range keys: {', '.join(sorted(unknown))}")
            start_raw, end_raw = value.get("start"), value.get("end")
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            start_raw, end_raw = value
        else:
            raise ValidationError(f"Invalid time range: {value!r}")
        start = parse_time_bound(start_raw, now=now) if start_raw else None
        end = parse_time_bound(end_raw, end=True, now=now) if end_raw else None
        if start and end and start > end:
            raise ValidationError(f"Time range start is after end: {value!r}")
        return cls(start, end)


# ---------------------------------------------------------------------------
# Filters and results
# ---------------------------------------------------------------------------

def _as_list(value: Any, name: str) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple, set)) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ValidationError(f"{name} must be a string or a list of strings")


@dataclass
class SearchFilters:
    """
    Structured filters. All given filters must match.

    ``time_range`` applies to when the experience occurred (falling back
    to ``created``); ``system_time_range`` applies to ``created``.
    ``qualities`` is a tag, a list of tags, or a boolean expression (see
    ``compile_quality_filter``).
    """
    who: Optional[list[str]] = None
    time_range: Optional[TimeRange] = None
    system_time_range: Optional[TimeRange] = None
    perspective: Optional[list[str]] = None
    processing: Optional[list[str]] = None
    qualities: Any = None
    reflects: Optional[str] = None
    quality_match: Optional[QualityPredicate] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if isinstance(self.qualities, str):
            self.qualities = [self.qualities]
        if self.qualities is not None and self.quality_match is None:
            self.quality_match = compile_quality_filter(self.qualities)

    @classmethod
    def parse(cls, filters: Any, now: Optional[datetime] = None) -> "SearchFilters":
        """Validate a plain mapping of filters."""
        if filters is None:
            return cls()
        if isinstance(filters, SearchFilters):
            return filters
        if not isinstance(filters, Mapping):
            raise ValidationError("filters must be a mapping")
        unknown = set(filters) - FILTER_KEYS
        if unknown:
            raise ValidationError(f"Unknown filters: {', '.join(sorted(unknown))}")

        processing = _as_list(filters.get("processing"), "processing")
        for level in processing or []:
            if level not in PROCESSING_LEVELS:
                raise ValidationError(
                    f"Invalid processing '{level}'. Valid: {', '.join(PROCESSING_LEVELS)}"
                )
        qualities = filters.get("qualities")
        if isinstance(qualities, tuple):
            qualities = list(qualities)
        reflects = filters.get("reflects")
        if reflects is not None and not isinstance(reflects, str):
            raise ValidationError("reflects filter must be a record id")

        time_range = filters.get("time_range")
        system_time_range = filters.get("system_time_range")
        return cls(
            who=_as_list(filters.get("who"), "who"),
            time_range=TimeRange.parse(time_range, now) if time_range else None,
            system_time_range=TimeRange.parse(system_time_range, now) if system_time_range else None,
            perspective=_as_list(filters.get("perspective"), "perspective"),
            processing=processing,
            qualities=qualities,
            reflects=reflects,
        )


@dataclass
class SearchResult:
    """One record in a search response."""
    record: Record
    relevance: float
    snippet: str
    similarity: Optional[float] = None
    text_score: Optional[float] = None

    @property
    def id(self) -> str:
        return self.record.id

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.record.id,
            "relevance": round(self.relevance, 4),
            "snippet": self.snippet,
            "record": self.record.to_dict(),
        }
        if self.similarity is not None:
            data["similarity"] = round(self.similarity, 4)
        return data


@dataclass
class ResultGroup:
    label: str
    results: list[SearchResult]

    @property
    def count(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "count": self.count, "ids": [r.id for r in self.results]}


@dataclass
class SearchResponse:
    results: list[SearchResult]
    total: int
    debug: dict[str, Any] = field(default_factory=dict)
    groups: Optional[list[ResultGroup]] = None

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.results]

    def to_dict(self) -> dict[str, Any]:
        data = {
            "results": [r.to_dict() for r in self.results],
            "total": self.total,
            "debug": self.debug,
        }
        if self.groups is not None:
            data["groups"] = [g.to_dict() for g in self.groups]
        return data


def _group_label(record: Record, group_by: str) -> str:
    if group_by == "experiencer":
        return ", ".join(record.who_list)
    when = parse_utc_timestamp(record.event_time)
    if group_by == "day":
        return when.date().isoformat()
    if group_by == "week":
        # Weeks start on Sunday
        start = when.date() - timedelta(days=(when.weekday() + 1) % 7)
        return start.isoformat()
    return f"{when.year:04d}-{when.month:02d}"


def group_results(results: Sequence[SearchResult], group_by: str) -> list[ResultGroup]:
    """
    Bucket results by event day, week, month or experiencer.

    Groups are ordered by size, largest first; ties keep first-seen order,
    and results keep their order within a group.
    """
    if group_by not in GROUP_KEYS:
        raise ValidationError(f"Invalid group_by '{group_by}'. Valid: {', '.join(GROUP_KEYS)}")
    if group_by == "none":
        return [ResultGroup("All Results", list(results))]
    buckets: dict[str, list[SearchResult]] = {}
    for result in results:
        buckets.setdefault(_group_label(result.record, group_by), []).append(result)
    groups = [ResultGroup(label, items) for label, items in buckets.items()]
    groups.sort(key=lambda g: g.count, reverse=True)
    return groups


def text_relevance(content: str, query: str) -> float:
    """
    Keyword relevance of ``content`` to ``query`` in [0, 0.9].

    The whole phrase scores 0.9. Otherwise the share of query words (longer
    than 2 characters) found in the content, weighted 0.7, or the share of
    longer words (over 3 characters) found inside a content word, weighted
    0.4, whichever is higher.
    """
    if not query or not query.strip():
        return 0.0
    query_lower = query.lower().strip()
    content_lower = content.lower()
    if query_lower in content_lower:
        return 0.9

    words = [w for w in query_lower.split() if len(w) > 2]
    if not words:
        return 0.0
    matched = sum(1 for w in words if w in content_lower)
    content_words = content_lower.split()
    partial = sum(
        1 for w in words
        if len(w) > 3 and any(w in cw for cw in content_words)
    )
    return max(matched / len(words) * 0.7, partial / len(words) * 0.4)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class SearchEngine:
    """
    Combines structured filters, keyword and semantic relevance.

    Depends on the record store, the embedding registry and the vector
    store; none of those depend on it.
    """

    def __init__(
        self,
        record_store: RecordStore,
        registry: EmbeddingRegistry,
        vector_store: VectorStore,
        snippet_length: int = DEFAULT_SNIPPET_LENGTH,
    ):
        self._records = record_store
        self._registry = registry
        self._vectors = vector_store
        self._snippet_length = snippet_length

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
        """
        Run the search pipeline.

        Args:
            query: Keyword query; records with no keyword match are dropped
            semantic_query: Text to rank by meaning
            filters: Mapping of structured filters (see SearchFilters)
            sort_by: "relevance" (stable, descending), "created" or
                "occurred" (newest first)
            limit: Maximum results; None for all
            offset: Results to skip
            min_similarity: Drop semantically ranked results scoring below this
            group_by: Also bucket the returned page by "day", "week",
                "month" or "experiencer"

        Raises:
            ValidationError: bad filters, time bounds, sort or group key, or paging
        """
        # 1. Validate, before touching any store
        parsed = SearchFilters.parse(filters)
        if sort_by not in SORT_KEYS:
            raise ValidationError(f"Invalid sort_by '{sort_by}'. Valid: {', '.join(SORT_KEYS)}")
        if group_by is not None and group_by not in GROUP_KEYS:
            raise ValidationError(f"Invalid group_by '{group_by}'. Valid: {', '.join(GROUP_KEYS)}")
        if limit is not None and (not isinstance(limit, int) or limit < 0):
            raise ValidationError("limit must be a non-negative integer")
        if not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be a non-negative integer")
        if semantic_query is not None and (not isinstance(semantic_query, str) or not semantic_query.strip()):
            raise ValidationError("semantic_query must be a non-empty string")
        if query is not None and not isinstance(query, str):
            raise ValidationError("query must be a string")

        debug: dict[str, Any] = {
            "search_started": utc_now(),
            "semantic_requested": semantic_query is not None,
            "semantic_ranked": False,
            "errors": [],
        }

        # 2. Structured filters
        candidates = self._apply_filters(parsed, debug)

        # 3. Keyword relevance
        text_scores: Optional[dict[str, float]] = None
        if query and query.strip():
            text_scores = {}
            before = len(candidates)
            for record in candidates:
                score = text_relevance(record.content, query)
                if score > 0:
                    text_scores[record.id] = score
            candidates = [r for r in candidates if r.id in text_scores]
            debug["filter_breakdown"].append({"filter": "query", "before": before, "after": len(candidates)})

        # 4. Semantic ranking
        similarities: Optional[dict[str, float]] = None
        if semantic_query is not None and candidates:
            similarities = self._rank_semantic(semantic_query, candidates, debug)

        # 5. Merge
        results = []
        for record in candidates:
            similarity = similarities.get(record.id) if similarities is not None else None
            text_score = text_scores.get(record.id) if text_scores is not None else None
            if similarities is not None:
                relevance = similarity if similarity is not None else 0.0
                if min_similarity is not None and relevance < min_similarity:
                    continue
            elif text_score is not None:
                relevance = text_score
            else:
                relevance = PLACEHOLDER_RELEVANCE
            results.append(SearchResult(
                record=record,
                relevance=relevance,
                snippet=smart_truncate(record.content, self._snippet_length),
                similarity=similarity,
                text_score=text_score,
            ))

        # 6. Sort; both sorts are stable
        if sort_by == "created":
            results.sort(key=lambda r: parse_utc_timestamp(r.record.created), reverse=True)
        elif sort_by == "occurred":
            results.sort(key=lambda r: parse_utc_timestamp(r.record.event_time), reverse=True)
        else:
            results.sort(key=lambda r: r.relevance, reverse=True)

        # 7. Paginate
        total = len(results)
        end = None if limit is None else offset + limit
        page = results[offset:end]

        debug["filtered_records"] = len(candidates)
        debug["returned"] = len(page)
        if not page:
            debug["no_results_reason"] = self._no_results_reason(debug, total)
        groups = group_results(page, group_by) if group_by is not None else None
        return SearchResponse(results=page, total=total, debug=debug, groups=groups)

    # -------------------------------------------------------------------------

    def _apply_filters(self, filters: SearchFilters, debug: dict[str, Any]) -> list[Record]:
        breakdown: list[dict[str, Any]] = []
        debug["filter_breakdown"] = breakdown
        total = self._records.count()
        debug["total_records"] = total

        system_range = filters.system_time_range or TimeRange()
        candidates = list(self._records.list(
            who=filters.who,
            created_from=system_range.start,
            created_to=system_range.end,
        ))
        if filters.who or filters.system_time_range:
            breakdown.append({"filter": "who/system_time_range", "before": total, "after": len(candidates)})

        def stage(name: str, keep) -> None:
            nonlocal candidates
            before = len(candidates)
            candidates = [r for r in candidates if keep(r)]
            breakdown.append({"filter": name, "before": before, "after": len(candidates)})

        if filters.time_range:
            stage("time_range", lambda r: filters.time_range.contains(parse_utc_timestamp(r.event_time)))
        if filters.perspective:
            stage("perspective", lambda r: r.perspective in filters.perspective)
        if filters.processing:
            stage("processing", lambda r: r.processing in filters.processing)
        if filters.qualities and filters.quality_match is not None:
            stage("qualities", lambda r: filters.quality_match(r.qualities))
        if filters.reflects:
            stage("reflects", lambda r: filters.reflects in r.reflects)
        return candidates

    def _rank_semantic(
        self, semantic_query: str, candidates: Sequence[Record], debug: dict[str, Any]
    ) -> Optional[dict[str, float]]:
        """Similarity per candidate id, or None when ranking did not happen."""
        debug["provider"] = self._registry.name
        if self._registry.is_fallback:
            debug["degraded"] = "no embedding provider available"
            if self._registry.fallback_reason:
                debug["degraded"] += f" ({self._registry.fallback_reason})"
            return None

        ids = [r.id for r in candidates]
        try:
            vector = self._registry.generate_embedding(semantic_query)
            if self._vectors.supports_filtering:
                matches = self._vectors.search(vector, filter={ID_FILTER_KEY: set(ids)}, limit=len(ids))
                scores = {m.id: m.score for m in matches}
                debug["semantic_method"] = self._vectors.name
            else:
                scores = self._brute_force(vector, ids)
                debug["semantic_method"] = "brute_force"
        except (ProviderUnavailableError, StoreUnavailableError, SchemaError) as e:
            logger.warning("Semantic ranking skipped: %s", e)
            debug["degraded"] = f"{type(e).__name__}: {e}"
            debug["errors"].append(str(e))
            return None

        debug["semantic_ranked"] = True
        debug["semantic_matches"] = len(scores)
        return scores

    def _brute_force(self, vector: list[float], ids: Sequence[str]) -> dict[str, float]:
        """Cosine similarity against stored embeddings of the candidates."""
        stored = self._records.embeddings()
        scores = {}
        for id in ids:
            candidate = stored.get(id)
            if not candidate or is_zero_vector(candidate):
                continue
            scores[id] = cosine_similarity(vector, candidate)
        return scores

    @staticmethod
    def _no_results_reason(debug: dict[str, Any], total: int) -> str:
        if debug.get("total_records", 0) == 0:
            return "journal is empty"
        if debug.get("filtered_records", 0) == 0:
            return "no records match the filters"
        if total == 0:
            return "no records above the similarity threshold"
        return "offset is past the last result"
