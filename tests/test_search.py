"""Tests for the search pipeline: filters, keyword and semantic relevance, paging."""

from datetime import datetime, time, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from moments.api import Journal
from moments.errors import InvalidQualityError, StoreUnavailableError, ValidationError
from moments.search import (
    PLACEHOLDER_RELEVANCE,
    SearchEngine,
    SearchFilters,
    TimeRange,
    parse_time_bound,
    text_relevance,
)
from moments.vector_stores.flat import FlatVectorStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class UnreachableVectorStore:
    """Vector store whose every call fails like a dead server."""

    name = "unreachable"
    supports_filtering = True

    def upsert(self, id, vector, metadata=None):
        raise StoreUnavailableError("connection refused")

    def search(self, vector, filter=None, limit=10):
        raise StoreUnavailableError("connection refused")

    def delete(self, id):
        raise StoreUnavailableError("connection refused")

    def is_available(self):
        return False

    def close(self):
        pass


class UnfilteredFlatStore(FlatVectorStore):
    """Flat store that claims no native filtering, forcing brute force."""

    supports_filtering = False


@pytest.fixture
def keyword_journal(journal_config, registry_for, keyword_provider):
    j = Journal(config=journal_config, registry=registry_for(keyword_provider))
    yield j
    j.close()


@pytest.fixture
def diary(keyword_journal):
    """Three records: two by Ava, one by Ben."""
    j = keyword_journal
    ids = {
        "anxious": j.create(
            "anxious about tomorrow's meeting", who="Ava",
            qualities={"mood.closed": "tight chest", "time.future": "the meeting"},
        ),
        "lake": j.create("calm by the lake", who="Ben", qualities={"space.here": "the water"}),
        "tired": j.create("tired after walking in the rain", who="Ava", processing="long-after"),
    }
    return j, ids


# ---------------------------------------------------------------------------
# Time bounds
# ---------------------------------------------------------------------------

class TestParseTimeBound:

    def test_duration(self):
        assert parse_time_bound("P3D", now=NOW) == NOW - timedelta(days=3)
        assert parse_time_bound("PT1H", now=NOW) == NOW - timedelta(hours=1)
        assert parse_time_bound("P1W", now=NOW) == NOW - timedelta(weeks=1)
        assert parse_time_bound("P1DT12H", now=NOW) == NOW - timedelta(days=1, hours=12)

    def test_today_and_yesterday(self):
        assert parse_time_bound("today", now=NOW) == datetime(2026, 3, 10, tzinfo=timezone.utc)
        end = parse_time_bound("yesterday", end=True, now=NOW)
        assert end == datetime.combine(datetime(2026, 3, 9).date(), time.max, tzinfo=timezone.utc)

    def test_date_covers_whole_day(self):
        start = parse_time_bound("2026-01-15")
        end = parse_time_bound("2026-01-15", end=True)
        assert start == datetime(2026, 1, 15, tzinfo=timezone.utc)
        assert end.date() == start.date()
        assert end.hour == 23 and end.minute == 59

    def test_datetime(self):
        assert parse_time_bound("2026-01-15T09:30:00Z") == datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)

    def test_naive_datetime_is_utc(self):
        bound = parse_time_bound(datetime(2026, 1, 15, 9, 30))
        assert bound.tzinfo is timezone.utc

    @pytest.mark.parametrize("value", ["last tuesday", "", "P", "2026-13-45", "Pizza", None, 42])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_time_bound(value, now=NOW)


class TestTimeRange:

    def test_single_date_is_that_day(self):
        r = TimeRange.parse("2026-01-15")
        assert r.contains(datetime(2026, 1, 15, 0, 0, tzinfo=timezone.utc))
        assert r.contains(datetime(2026, 1, 15, 23, 59, tzinfo=timezone.utc))
        assert not r.contains(datetime(2026, 1, 16, 0, 0, tzinfo=timezone.utc))

    def test_duration_is_open_ended(self):
        r = TimeRange.parse("P1W", now=NOW)
        assert r.end is None
        assert r.contains(NOW)
        assert not r.contains(NOW - timedelta(days=8))

    def test_mapping_and_pair(self):
        r = TimeRange.parse({"start": "2026-01-01"})
        assert r.end is None
        r = TimeRange.parse(("2026-01-01", "2026-01-31"))
        assert r.contains(datetime(2026, 1, 31, 18, tzinfo=timezone.utc))

    def test_start_after_end(self):
        with pytest.raises(ValidationError, match="after end"):
            TimeRange.parse({"start": "2026-02-01", "end": "2026-01-01"})

    def test_unknown_keys(self):
        with pytest.raises(ValidationError):
            TimeRange.parse({"begin": "2026-01-01"})


class TestSearchFilters:

    def test_unknown_key(self):
        with pytest.raises(ValidationError, match="mood"):
            SearchFilters.parse({"mood": "tight"})

    def test_invalid_processing(self):
        with pytest.raises(ValidationError):
            SearchFilters.parse({"processing": "afterwards"})

    def test_invalid_quality(self):
        with pytest.raises(InvalidQualityError):
            SearchFilters.parse({"qualities": ["mood.sad"]})

    def test_scalars_become_lists(self):
        f = SearchFilters.parse({"who": "Ava", "processing": "during", "qualities": "mood"})
        assert f.who == ["Ava"]
        assert f.processing == ["during"]
        assert f.qualities == ["mood"]


class TestTextRelevance:

    def test_phrase(self):
        assert text_relevance("Calm by the lake", "the lake") == 0.9

    def test_word_share(self):
        assert text_relevance("calm by the lake", "lake storm") == pytest.approx(0.35)

    def test_no_match(self):
        assert text_relevance("calm by the lake", "desert") == 0.0
        assert text_relevance("anything", "  ") == 0.0


# ---------------------------------------------------------------------------
# Validation happens before I/O
# ---------------------------------------------------------------------------

class TestValidationBeforeIO:

    def _engine(self):
        records = MagicMock()
        registry = MagicMock()
        vectors = MagicMock()
        return SearchEngine(records, registry, vectors), records, registry, vectors

    @pytest.mark.parametrize("kwargs", [
        {"filters": {"time_range": "last tuesday"}},
        {"filters": {"system_time_range": {"start": "yesterday-ish"}}},
        {"sort_by": "mood"},
        {"limit": -1},
        {"offset": -5},
        {"semantic_query": "   "},
        {"group_by": "year"},
        {"filters": {"qualities": {"mood": {"present": "maybe"}}}},
    ])
    def test_no_store_touched(self, kwargs):
        engine, records, registry, vectors = self._engine()
        with pytest.raises(ValidationError):
            engine.search(**kwargs)
        records.count.assert_not_called()
        records.list.assert_not_called()
        registry.generate_embedding.assert_not_called()
        vectors.search.assert_not_called()


# ---------------------------------------------------------------------------
# Structured search
# ---------------------------------------------------------------------------

class TestStructuredSearch:

    def test_no_arguments_returns_everything(self, diary):
        j, ids = diary
        response = j.search()
        assert response.ids == [ids["anxious"], ids["lake"], ids["tired"]]
        assert response.total == 3
        assert all(r.relevance == PLACEHOLDER_RELEVANCE for r in response.results)
        assert response.debug["semantic_requested"] is False

    def test_who_filter(self, diary):
        j, ids = diary
        response = j.search(filters={"who": "Ava"})
        assert response.ids == [ids["anxious"], ids["tired"]]
        breakdown = response.debug["filter_breakdown"]
        assert breakdown[0]["before"] == 3 and breakdown[0]["after"] == 2

    def test_quality_filter_base_matches_sub(self, diary):
        j, ids = diary
        assert j.search(filters={"qualities": ["mood"]}).ids == [ids["anxious"]]
        assert j.search(filters={"qualities": ["time.future"]}).ids == [ids["anxious"]]
        assert j.search(filters={"qualities": ["time.past"]}).ids == []

    def test_processing_and_perspective(self, diary):
        j, ids = diary
        assert j.search(filters={"processing": ["long-after"]}).ids == [ids["tired"]]
        assert j.search(filters={"perspective": "I"}).total == 3
        assert j.search(filters={"perspective": "we"}).total == 0

    def test_reflects_filter(self, diary):
        j, ids = diary
        later = j.create("still thinking about the meeting", reflects=[ids["anxious"]],
                         processing="right-after")
        assert j.search(filters={"reflects": ids["anxious"]}).ids == [later]

    def test_time_range_uses_occurred(self, keyword_journal):
        j = keyword_journal
        old = j.create("rain on the lake", occurred="2020-01-05T10:00:00Z")
        j.create("rain today")
        response = j.search(filters={"time_range": "2020-01-05"})
        assert response.ids == [old]

    def test_system_time_range_uses_created(self, keyword_journal):
        j = keyword_journal
        rid = j.create("rain on the lake", occurred="2020-01-05T10:00:00Z")
        assert j.search(filters={"system_time_range": "2020-01-05"}).ids == []
        assert j.search(filters={"system_time_range": "P1D"}).ids == [rid]

    def test_text_query_filters_and_scores(self, diary):
        j, ids = diary
        response = j.search(query="lake")
        assert response.ids == [ids["lake"]]
        assert response.results[0].relevance == pytest.approx(0.9)

    def test_empty_journal_reason(self, plain_journal):
        response = plain_journal.search()
        assert response.results == []
        assert response.debug["no_results_reason"] == "journal is empty"

    def test_no_match_reason(self, diary):
        j, _ = diary
        response = j.search(filters={"who": "Cy"})
        assert response.debug["no_results_reason"] == "no records match the filters"


class TestSortingAndPaging:

    def test_created_sort_newest_first(self, diary):
        j, ids = diary
        response = j.search(sort_by="created")
        assert response.ids == [ids["tired"], ids["lake"], ids["anxious"]]

    def test_relevance_ties_keep_creation_order(self, plain_journal):
        created = [plain_journal.create(f"entry {i}") for i in range(4)]
        assert plain_journal.search(sort_by="relevance").ids == created

    def test_pagination(self, plain_journal):
        created = [plain_journal.create(f"entry {i}") for i in range(5)]
        response = plain_journal.search(limit=2, offset=2)
        assert response.ids == created[2:4]
        assert response.total == 5
        assert response.debug["returned"] == 2

    def test_offset_past_end(self, plain_journal):
        plain_journal.create("only one")
        response = plain_journal.search(offset=3)
        assert response.results == []
        assert response.total == 1
        assert response.debug["no_results_reason"] == "offset is past the last result"

    def test_snippet_truncated_at_word(self, journal_config, plain_journal):
        content = " ".join(["word"] * 100)
        plain_journal.create(content)
        [result] = plain_journal.search().results
        assert result.snippet.endswith("...")
        assert len(result.snippet) <= journal_config.snippet_length + 3
        assert result.record.content == content


# ---------------------------------------------------------------------------
# Semantic search
# ---------------------------------------------------------------------------

class TestSemanticSearch:

    def test_filtered_semantic_ranking(self, diary):
        """Only Ava's records come back, the anxious one first."""
        j, ids = diary
        response = j.search(
            semantic_query="anxious about the meeting tomorrow",
            filters={"who": "Ava"},
        )
        assert response.ids == [ids["anxious"], ids["tired"]]
        assert response.results[0].relevance > response.results[1].relevance
        assert response.results[0].similarity == response.results[0].relevance
        assert response.debug["semantic_ranked"] is True
        assert response.debug["semantic_method"] == "flat"
        assert response.debug["provider"] == "keyword-model"

    def test_unfiltered_ranking(self, diary):
        j, ids = diary
        response = j.search(semantic_query="calm lake")
        assert response.ids[0] == ids["lake"]
        assert response.total == 3

    def test_min_similarity(self, diary):
        j, ids = diary
        response = j.search(semantic_query="calm lake", min_similarity=0.5)
        assert response.ids == [ids["lake"]]

    def test_record_without_vector_ranks_zero(self, diary):
        j, ids = diary
        j.vector_store.delete(ids["tired"])
        response = j.search(semantic_query="tired in the rain")
        by_id = {r.id: r for r in response.results}
        assert by_id[ids["tired"]].relevance == 0.0
        assert by_id[ids["tired"]].similarity is None
        assert response.total == 3

    def test_combined_with_text_query(self, diary):
        j, ids = diary
        response = j.search(query="meeting", semantic_query="anxious")
        assert response.ids == [ids["anxious"]]
        assert response.results[0].text_score == pytest.approx(0.9)

    def test_brute_force_when_store_cannot_filter(self, journal_config, registry_for, keyword_provider):
        vectors = UnfilteredFlatStore(journal_config.vectors_path)
        with Journal(config=journal_config, vector_store=vectors,
                     registry=registry_for(keyword_provider)) as j:
            calm = j.create("calm by the lake")
            j.create("anxious about tomorrow")
            response = j.search(semantic_query="lake")
            assert response.ids[0] == calm
            assert response.debug["semantic_method"] == "brute_force"

    def test_fallback_provider_skips_ranking(self, plain_journal):
        """With no provider the search still answers, unranked."""
        a = plain_journal.create("calm by the lake")
        b = plain_journal.create("anxious about tomorrow")
        response = plain_journal.search(semantic_query="lake")
        assert response.ids == [a, b]
        assert response.debug["semantic_requested"] is True
        assert response.debug["semantic_ranked"] is False
        assert response.debug["provider"] == "None"
        assert "no embedding provider" in response.debug["degraded"]
        assert all(r.relevance == PLACEHOLDER_RELEVANCE for r in response.results)

    def test_unreachable_store_degrades(self, journal_config, registry_for, mock_embedding_provider):
        """Writes survive a dead vector store; search falls back to filters."""
        with Journal(config=journal_config, vector_store=UnreachableVectorStore(),
                     registry=registry_for(mock_embedding_provider)) as j:
            a = j.create("calm by the lake", who="Ava")
            b = j.create("anxious about tomorrow", who="Ava")
            response = j.search(semantic_query="lake", filters={"who": "Ava"})
            assert response.ids == [a, b]
            assert response.debug["semantic_ranked"] is False
            assert "StoreUnavailableError" in response.debug["degraded"]
            assert response.debug["errors"] == ["connection refused"]

    def test_to_dict_shape(self, diary):
        j, ids = diary
        data = j.search(semantic_query="calm lake", limit=1).to_dict()
        assert set(data) == {"results", "total", "debug"}
        [first] = data["results"]
        assert first["id"] == ids["lake"]
        assert first["record"]["who"] == "Ben"
        assert "similarity" in first


# ---------------------------------------------------------------------------
# Edge cases and extended search options
# ---------------------------------------------------------------------------

class TestOutOfRangeDurations:

    @pytest.mark.parametrize("value", ["P99999999Y", "P9999999D"])
    def test_parse_rejects(self, value):
        with pytest.raises(ValidationError, match="out of range"):
            parse_time_bound(value, now=NOW)

    def test_search_rejects(self, plain_journal):
        with pytest.raises(ValidationError):
            plain_journal.search(filters={"time_range": "P99999999Y"})


class TestQualityExpressions:

    def test_absence(self, diary):
        j, ids = diary
        response = j.search(filters={"qualities": {"mood": {"present": False}}})
        assert response.ids == [ids["lake"], ids["tired"]]

    def test_sub_value_and_any_of(self, diary):
        j, ids = diary
        assert j.search(filters={"qualities": {"mood": "closed"}}).ids == [ids["anxious"]]
        assert j.search(filters={"qualities": {"mood": "open"}}).ids == []
        assert j.search(filters={"qualities": {"space": ["here", "there"]}}).ids == [ids["lake"]]

    def test_boolean_operators(self, diary):
        j, ids = diary
        either = {"$or": [{"mood": {"present": True}}, {"space.here": {"present": True}}]}
        assert j.search(filters={"qualities": either}).ids == [ids["anxious"], ids["lake"]]
        neither = {"$not": either}
        assert j.search(filters={"qualities": neither}).ids == [ids["tired"]]
        both = {"$and": [{"mood": {"present": True}}, {"time.future": {"present": True}}]}
        assert j.search(filters={"qualities": both}).ids == [ids["anxious"]]

    @pytest.mark.parametrize("expr", [
        {},
        {"mood": {"present": "no"}},
        {"mood": "sad"},
        {"$xor": [{"mood": {"present": True}}]},
        {"$or": []},
        {"mood.open": "closed"},
    ])
    def test_malformed_rejected_before_io(self, expr):
        with pytest.raises(InvalidQualityError):
            SearchFilters.parse({"qualities": expr})


class TestOccurredSortAndGrouping:

    @pytest.fixture
    def dated(self, keyword_journal):
        j = keyword_journal
        ids = {
            "mon": j.create("monday walk", who="Ava", occurred="2026-03-02T09:00:00Z"),
            "sun": j.create("sunday lake", who="Ben", occurred="2026-03-01T09:00:00Z"),
            "feb": j.create("february snow", who="Ava", occurred="2026-02-20T09:00:00Z"),
            "mon2": j.create("monday evening", who="Ava", occurred="2026-03-02T20:00:00Z"),
        }
        return j, ids

    def test_occurred_sort_newest_first(self, dated):
        j, ids = dated
        response = j.search(sort_by="occurred")
        assert response.ids == [ids["mon2"], ids["mon"], ids["sun"], ids["feb"]]

    def test_group_by_day(self, dated):
        j, ids = dated
        groups = j.search(group_by="day").groups
        assert [(g.label, g.count) for g in groups] == [
            ("2026-03-02", 2), ("2026-03-01", 1), ("2026-02-20", 1),
        ]
        assert [r.id for r in groups[0].results] == [ids["mon"], ids["mon2"]]

    def test_group_by_week_starts_sunday(self, dated):
        j, _ = dated
        groups = j.search(group_by="week").groups
        assert [(g.label, g.count) for g in groups] == [("2026-03-01", 3), ("2026-02-15", 1)]

    def test_group_by_month_and_experiencer(self, dated):
        j, _ = dated
        months = j.search(group_by="month").groups
        assert [(g.label, g.count) for g in months] == [("2026-03", 3), ("2026-02", 1)]
        people = j.search(group_by="experiencer").groups
        assert [(g.label, g.count) for g in people] == [("Ava", 3), ("Ben", 1)]

    def test_groups_cover_returned_page(self, dated):
        j, ids = dated
        response = j.search(group_by="day", limit=2)
        assert [(g.label, g.count) for g in response.groups] == [("2026-03-02", 1), ("2026-03-01", 1)]
        assert response.to_dict()["groups"][0] == {"label": "2026-03-02", "count": 1, "ids": [ids["mon"]]}

    def test_no_grouping_by_default(self, dated):
        j, _ = dated
        response = j.search()
        assert response.groups is None
        assert "groups" not in response.to_dict()

    def test_invalid_group_key(self, plain_journal):
        with pytest.raises(ValidationError, match="group_by"):
            plain_journal.search(group_by="year")


class RecordingFlatStore(FlatVectorStore):
    """Flat store that remembers the filters it was searched with."""

    def __init__(self, path):
        super().__init__(path)
        self.filters = []

    def search(self, vector, filter=None, limit=10):
        self.filters.append(filter)
        return super().search(vector, filter=filter, limit=limit)


class TestSemanticIdFilter:

    def test_candidate_ids_passed_as_set(self, journal_config, registry_for, keyword_provider):
        vectors = RecordingFlatStore(journal_config.vectors_path)
        with Journal(config=journal_config, vector_store=vectors,
                     registry=registry_for(keyword_provider)) as j:
            calm = j.create("calm by the lake")
            other = j.create("anxious about tomorrow")
            response = j.search(semantic_query="lake")
        [id_filter] = [f["id"] for f in vectors.filters]
        assert isinstance(id_filter, set)
        assert id_filter == {calm, other}
        assert response.ids[0] == calm
