"""
Tests for the channel normalizer.

Stored channel values come in two shapes and both must normalize to the
same routable identifier.
"""

import json

from hypothesis import given
from hypothesis import strategies as st

from broker.models.domain import RawIdentifier, StructuredRecord
from broker.services.channels import canonical, normalize, parse_channel


class TestNormalize:
    """Tests for normalize()."""

    def test_bare_identifier_returned_verbatim(self):
        assert normalize("general-alerts") == "general-alerts"

    def test_structured_unique_name(self):
        assert normalize('{"unique_name":"aws-alerts"}') == "aws-alerts"

    def test_structured_display_name_strips_hash(self):
        assert normalize('{"name":"#aws-alerts"}') == "aws-alerts"

    def test_unique_name_preferred_over_display_name(self):
        raw = json.dumps({"unique_name": "ops-1", "name": "#ops"})
        assert normalize(raw) == "ops-1"

    def test_only_one_leading_hash_stripped(self):
        assert normalize('{"name":"##double"}') == "#double"

    def test_malformed_structured_value_is_empty(self):
        assert normalize("{not json") == ""

    def test_structured_non_object_is_empty(self):
        assert normalize("[1, 2]") == "[1, 2]"  # not structured, no marker
        assert normalize('{"a": 1}') == ""

    def test_empty_and_none(self):
        assert normalize("") == ""
        assert normalize(None) == ""

    def test_whitespace_only_is_empty(self):
        assert normalize("   ") == ""

    def test_empty_strings_in_record_ignored(self):
        assert normalize('{"unique_name": "", "name": "#fallback"}') == "fallback"

    def test_non_string_fields_ignored(self):
        assert normalize('{"unique_name": 42}') == ""


class TestParseChannel:
    """Tests for parse_channel()."""

    def test_bare_value_is_raw_identifier(self):
        assert parse_channel("general") == RawIdentifier("general")

    def test_structured_value_is_record(self):
        parsed = parse_channel('{"unique_name": "u", "name": "#n"}')
        assert parsed == StructuredRecord(unique_name="u", display_name="#n")

    def test_unusable_record_is_none(self):
        assert parse_channel('{"name": ""}') is None

    def test_canonical_of_none_is_empty(self):
        assert canonical(None) == ""


class TestNormalizeProperties:
    """Property tests: normalize never raises and is stable."""

    @given(st.text())
    def test_never_raises(self, raw: str):
        assert isinstance(normalize(raw), str)

    @given(st.text(min_size=1).filter(lambda s: not s.startswith("{") and s.strip()))
    def test_bare_values_pass_through(self, raw: str):
        assert normalize(raw) == raw

    @given(st.text(min_size=1))
    def test_unique_name_returned_verbatim(self, name: str):
        """Any non-empty unique name is routed as-is."""
        assert normalize(json.dumps({"unique_name": name})) == name
