"""Tests for the quality taxonomy and signature validation."""

import pytest

from moments.errors import InvalidQualityError, ValidationError
from moments.qualities import (
    KNOWN_QUALITIES,
    QUALITY_DIMENSIONS,
    compile_quality_filter,
    is_known_quality,
    matches_qualities,
    present_qualities,
    validate_signature,
    validate_tag,
)


class TestTaxonomy:

    def test_twenty_one_tags(self):
        """Seven bases, fourteen sub-qualities."""
        assert len(KNOWN_QUALITIES) == 21
        assert len(set(KNOWN_QUALITIES)) == 21
        assert len(QUALITY_DIMENSIONS) == 7
        assert sum(1 for t in KNOWN_QUALITIES if "." in t) == 14

    @pytest.mark.parametrize("tag", KNOWN_QUALITIES)
    def test_every_known_tag_accepted(self, tag):
        assert is_known_quality(tag)
        assert validate_signature({tag: "present"}) == {tag: "present"}

    @pytest.mark.parametrize("tag", [
        "embodied.feeling",
        "Mood",
        "moods",
        "mood.opened",
        "time.present",
        "presence.group",
        "energy",
    ])
    def test_near_misses_rejected(self, tag):
        assert not is_known_quality(tag)
        with pytest.raises(InvalidQualityError) as exc_info:
            validate_signature({tag: "x"})
        assert exc_info.value.tag == tag

    @pytest.mark.parametrize("tag", ["mood.open.wide", "mood.", ".mood", "mood..open", ""])
    def test_malformed_paths_rejected(self, tag):
        with pytest.raises(InvalidQualityError) as exc_info:
            validate_tag(tag)
        assert exc_info.value.tag == tag

    def test_more_than_one_dot_message(self):
        with pytest.raises(InvalidQualityError, match="more than one dot"):
            validate_tag("focus.narrow.tight")

    def test_invalid_quality_is_validation_error(self):
        with pytest.raises(ValidationError):
            validate_signature({"embodied.feeling": "warm"})

    def test_non_string_tag(self):
        assert not is_known_quality(None)
        with pytest.raises(InvalidQualityError):
            validate_tag(3)


class TestSignature:

    def test_none_is_empty(self):
        assert validate_signature(None) == {}

    def test_false_marks_absent(self):
        sig = validate_signature({"mood": "tight", "space": False})
        assert sig == {"mood": "tight", "space": False}

    def test_values_are_stripped(self):
        assert validate_signature({"mood": "  tight  "}) == {"mood": "tight"}

    @pytest.mark.parametrize("value", [True, "", "   ", 3, None, ["tight"]])
    def test_bad_values_rejected(self, value):
        with pytest.raises(InvalidQualityError) as exc_info:
            validate_signature({"mood": value})
        assert exc_info.value.tag == "mood"

    def test_both_sub_qualities_conflict(self):
        with pytest.raises(InvalidQualityError, match="at most one sub-quality"):
            validate_signature({"mood.open": "light", "mood.closed": "heavy"})

    def test_base_with_one_sub_allowed(self):
        sig = validate_signature({"mood.open": "light", "mood": "mixed"})
        assert set(sig) == {"mood", "mood.open"}

    def test_absent_subs_do_not_conflict(self):
        sig = validate_signature({"mood.open": "light", "mood.closed": False})
        assert sig["mood.closed"] is False

    def test_normalized_in_taxonomy_order(self):
        sig = validate_signature({"presence": "alone", "time.future": "soon", "embodied": "tense"})
        assert list(sig) == ["embodied", "time.future", "presence"]

    def test_not_a_mapping(self):
        with pytest.raises(InvalidQualityError):
            validate_signature(["mood"])


class TestQualityQueries:

    def test_present_qualities_skips_false(self):
        sig = {"time": "tomorrow", "mood": False, "embodied.sensing": "cold hands"}
        assert present_qualities(sig) == ["embodied.sensing", "time"]

    def test_base_filter_matches_sub(self):
        sig = {"mood.closed": "heavy"}
        assert matches_qualities(sig, ["mood"])
        assert matches_qualities(sig, ["mood.closed"])
        assert not matches_qualities(sig, ["mood.open"])

    def test_all_requested_tags_required(self):
        sig = {"mood": "tight", "time.future": "tomorrow"}
        assert matches_qualities(sig, ["mood", "time"])
        assert not matches_qualities(sig, ["mood", "space"])

    def test_false_does_not_match(self):
        assert not matches_qualities({"mood": False}, ["mood"])

    def test_unknown_filter_tag_rejected(self):
        with pytest.raises(InvalidQualityError):
            matches_qualities({"mood": "x"}, ["mood.feeling"])


class TestQualityFilterExpressions:

    SIG = {"mood.closed": "tight", "time.future": "tomorrow", "space": False}

    def test_tags_and_lists(self):
        assert compile_quality_filter("mood")(self.SIG)
        assert compile_quality_filter(["mood", "time.future"])(self.SIG)
        assert not compile_quality_filter(["mood", "space"])(self.SIG)

    def test_presence_and_absence(self):
        assert compile_quality_filter({"space": {"present": False}})(self.SIG)
        assert not compile_quality_filter({"mood": {"present": False}})(self.SIG)
        assert compile_quality_filter({"time.future": {"present": True}})(self.SIG)
        assert compile_quality_filter({"mood": {"present": True}})(self.SIG)

    def test_sub_values(self):
        assert compile_quality_filter({"mood": "closed"})(self.SIG)
        assert not compile_quality_filter({"mood": "open"})(self.SIG)
        assert compile_quality_filter({"time": ["past", "future"]})(self.SIG)

    def test_several_keys_all_match(self):
        assert compile_quality_filter({"mood": "closed", "space": {"present": False}})(self.SIG)
        assert not compile_quality_filter({"mood": "closed", "time": "past"})(self.SIG)

    def test_boolean_operators(self):
        closed_or_open = {"$or": [{"mood": "open"}, {"mood": "closed"}]}
        assert compile_quality_filter(closed_or_open)(self.SIG)
        assert not compile_quality_filter({"$not": closed_or_open})(self.SIG)
        nested = {"$and": [closed_or_open, {"$not": {"presence": {"present": True}}}]}
        assert compile_quality_filter(nested)(self.SIG)
        assert compile_quality_filter(nested)(None) is False

    @pytest.mark.parametrize("expr", [
        {},
        42,
        {"mood": {"present": 1}},
        {"mood": {"present": True, "extra": 1}},
        {"mood": []},
        {"mood": "sad"},
        {"mood.open": "yes"},
        {"$and": {"mood": "open"}},
        {"$nor": [{"mood": "open"}]},
        ["mood.feeling"],
    ])
    def test_malformed(self, expr):
        with pytest.raises(InvalidQualityError):
            compile_quality_filter(expr)
