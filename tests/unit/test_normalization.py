"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

from datetime import datetime, timezone

import pytest

from tmimport.normalization import (
    MAX_INT_32,
    MIN_INT_32,
    append_to_doc,
    generate_system_name,
    link_paragraph,
    microseconds_to_seconds,
    normalize_automation_class_name,
    normalize_case_field_value,
    normalize_color_hex,
    normalize_dropdown_value,
    normalize_estimate,
    normalize_multi_select,
    to_bool,
    to_date,
    to_int,
    to_rich_text_doc,
    to_str,
)


@pytest.mark.unit
class TestNormalizeEstimate:
    def test_value_that_fits_is_kept(self):
        assert normalize_estimate(3600) == (3600, None)

    def test_microseconds_are_rescaled(self):
        value = 5_000_000_000
        assert normalize_estimate(value) == (5000, "microseconds")

    def test_value_beyond_every_divisor_is_clamped(self):
        assert normalize_estimate(10**30) == (MAX_INT_32, "clamped")
        assert normalize_estimate(-(10**30)) == (MIN_INT_32, "clamped")

    def test_non_numeric_values(self):
        assert normalize_estimate(None) == (None, None)
        assert normalize_estimate("soon") == (None, None)

    def test_numeric_strings_are_accepted(self):
        assert normalize_estimate("90") == (90, None)


@pytest.mark.unit
class TestScalars:
    def test_to_int(self):
        assert to_int("42") == 42
        assert to_int(4.9) == 4
        assert to_int(True) is None
        assert to_int("") is None

    def test_to_bool(self):
        assert to_bool(1) is True
        assert to_bool("yes") is True
        assert to_bool("0") is False
        assert to_bool(None, default=True) is True

    def test_to_str(self):
        assert to_str("  Demo ") == "Demo"
        assert to_str("   ") is None
        assert to_str(7) == "7"
        assert to_str({"a": 1}) is None

    def test_microseconds_to_seconds(self):
        assert microseconds_to_seconds(2_500_000) == 3
        assert microseconds_to_seconds(None) is None


@pytest.mark.unit
class TestDates:
    def test_space_separated_timestamp_is_utc(self):
        assert to_date("2024-03-01 10:15:00") == datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc)

    def test_iso_with_z(self):
        assert to_date("2024-03-01T10:15:00Z") == datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc)

    def test_epoch_milliseconds(self):
        assert to_date(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_garbage_is_none(self):
        assert to_date("not a date") is None
        assert to_date(True) is None


@pytest.mark.unit
class TestRichText:
    def test_plain_text_becomes_paragraph(self):
        assert to_rich_text_doc("Hello") == {
            "type": "doc",
            "content": [{"type": "paragraph", "content": [{"type": "text", "text": "Hello"}]}],
        }

    def test_existing_document_passes_through(self):
        doc = {"type": "doc", "content": [{"type": "paragraph", "content": [{"type": "text", "text": "x"}]}]}
        assert to_rich_text_doc(doc) is doc

    def test_empty_input_is_none(self):
        assert to_rich_text_doc("   ") is None
        assert to_rich_text_doc({"type": "doc", "content": []}) is None

    def test_append_link_paragraph(self):
        doc = append_to_doc("Intro", [link_paragraph("Spec", "https://example.com", "v2")])
        assert len(doc["content"]) == 2
        link = doc["content"][1]["content"]
        assert link[0]["marks"][0]["attrs"]["href"] == "https://example.com"
        assert link[1]["text"] == " (v2)"


@pytest.mark.unit
class TestFieldValues:
    OPTIONS = {1: "High", 2: "Low"}

    def test_dropdown_by_id_and_name(self):
        assert normalize_dropdown_value(2, self.OPTIONS) == 2
        assert normalize_dropdown_value("high", self.OPTIONS) == 1

    def test_unknown_dropdown_value_warns(self):
        warnings = []
        assert normalize_dropdown_value("Medium", self.OPTIONS, "Priority", lambda m, d: warnings.append(d)) is None
        assert warnings[0]["value"] == "Medium"

    def test_multi_select_splits_and_deduplicates(self):
        assert normalize_multi_select("High; low, High", self.OPTIONS) == [1, 2]

    def test_case_field_types(self):
        assert normalize_case_field_value("Integer", "12") == 12
        assert normalize_case_field_value("Checkbox", "true") is True
        assert normalize_case_field_value("Date", "2024-01-02 00:00:00") == "2024-01-02T00:00:00Z"
        assert normalize_case_field_value("Steps", "anything") is None


@pytest.mark.unit
def test_generate_system_name():
    assert generate_system_name("Passed With Issues!") == "passed_with_issues"
    assert generate_system_name("123") == "status"


@pytest.mark.unit
def test_normalize_color_hex():
    assert normalize_color_hex("aabbcc") == "#AABBCC"
    assert normalize_color_hex("") is None


@pytest.mark.unit
def test_normalize_automation_class_name_drops_generated_segments():
    assert normalize_automation_class_name("ios.LoginTests.a1b2c3d4e5.testLogin") == "ios.LoginTests.testLogin"
    assert normalize_automation_class_name(None) is None
