"""
Unit Tests - Cell Value Parsing
"""
from datetime import date, datetime

import pytest

from printbatch.transformation.values import (
    BlankishMatcher,
    Flag,
    cell_signature,
    cell_text,
    is_blankish,
    merge_newline_list,
    parse_date,
    parse_flag,
    row_signature,
    split_newline_list,
    to_int,
    tracking_url,
    tracking_urls,
)

PREFIX = "https://www.royalmail.com/track-your-item#/tracking-results/"


class TestCellText:
    """Tests for cell_text"""

    def test_none_is_empty(self):
        """None reads as an empty string"""
        assert cell_text(None) == ""

    def test_integral_float(self):
        """Integral floats lose their decimal part"""
        assert cell_text(3.0) == "3"
        assert cell_text(2.5) == "2.5"

    def test_bool(self):
        """Booleans render as sheet flags"""
        assert cell_text(True) == "TRUE"
        assert cell_text(False) == "FALSE"

    def test_trims(self):
        assert cell_text("  #1001 ") == "#1001"


class TestFlags:
    """Tests for tri-state flag parsing"""

    @pytest.mark.parametrize("value", [True, "TRUE", "true", " yes ", "Y", "1", 1])
    def test_true_values(self, value):
        """Known-true spellings"""
        assert parse_flag(value) is Flag.TRUE

    @pytest.mark.parametrize("value", [False, "FALSE", "no", "0", 0, "maybe"])
    def test_false_values(self, value):
        """The literal "0" and unknown text are false, not blank"""
        assert parse_flag(value) is Flag.FALSE

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_blank_values(self, value):
        """Empty cells are blank"""
        assert parse_flag(value) is Flag.BLANK


class TestBlankish:
    """Tests for blankish placeholder matching"""

    def test_case_and_whitespace_insensitive(self):
        """Placeholders match regardless of case and padding"""
        blankish = BlankishMatcher(["(blank)", "blank", '""'])
        assert blankish(" (Blank) ")
        assert blankish("BLANK")
        assert blankish('""')

    def test_empty_is_blankish(self):
        assert is_blankish("", ["(blank)"])
        assert is_blankish(None, [])

    def test_real_value_is_not_blankish(self):
        assert not is_blankish("8x6", ["(blank)"])


class TestToInt:
    """Tests for integer coercion"""

    def test_numbers(self):
        assert to_int(4) == 4
        assert to_int(2.5) == 3
        assert to_int(2.4) == 2

    def test_text_leading_number(self):
        """Text uses its leading numeric part"""
        assert to_int("3 pcs") == 3
        assert to_int(" 7 ") == 7

    def test_fallbacks(self):
        """Unreadable values give the fallback"""
        assert to_int("abc", 5) == 5
        assert to_int("", 0) == 0
        assert to_int(None, 9) == 9
        assert to_int(True, 7) == 7


class TestParseDate:
    """Tests for timestamp parsing"""

    def test_datetime_passthrough(self):
        value = datetime(2024, 5, 1, 10, 0)
        assert parse_date(value) is value

    def test_date_becomes_midnight(self):
        assert parse_date(date(2024, 5, 1)) == datetime(2024, 5, 1)

    def test_iso_text(self):
        assert parse_date("2024-05-01 10:15:00") == datetime(2024, 5, 1, 10, 15)
        assert parse_date("2024-05-01T10:15:00Z") == datetime(2024, 5, 1, 10, 15)

    def test_day_first_text(self):
        """UK-style dates are day first"""
        assert parse_date("01/05/2024") == datetime(2024, 5, 1)
        assert parse_date("01/05/2024 08:30") == datetime(2024, 5, 1, 8, 30)

    def test_unparseable(self):
        assert parse_date("next tuesday") is None
        assert parse_date("") is None
        assert parse_date(42) is None


class TestNewlineLists:
    """Tests for newline-separated value lists"""

    def test_split(self):
        assert split_newline_list("A\r\n B \n\nC") == ["A", "B", "C"]

    def test_merge_is_sorted_union(self):
        """Merging never drops existing values"""
        assert merge_newline_list("B\nA", "C\nA") == "A\nB\nC"

    def test_merge_with_empty_side(self):
        assert merge_newline_list("", "X") == "X"
        assert merge_newline_list("X", "") == "X"


class TestTrackingUrls:
    """Tests for tracking link rendering"""

    def test_number_gets_prefix(self):
        assert tracking_url("AB123456789GB", PREFIX) == PREFIX + "AB123456789GB"

    def test_existing_url_untouched(self):
        url = PREFIX + "AB123456789GB"
        assert tracking_url(url, PREFIX) == url

    def test_number_is_escaped(self):
        assert tracking_url("AB 12", PREFIX) == PREFIX + "AB%2012"

    def test_list(self):
        assert tracking_urls("T1\nT2", PREFIX) == f"{PREFIX}T1\n{PREFIX}T2"


class TestSignatures:
    """Tests for change-detection signatures"""

    def test_datetime_matches_stored_text(self):
        """A datetime and its CSV text compare equal"""
        assert cell_signature(datetime(2024, 5, 1, 10, 0)) == cell_signature("2024-05-01 10:00:00")

    def test_number_matches_text(self):
        assert row_signature([3, "x", None]) == row_signature(["3", "x", ""])

    def test_different_rows(self):
        assert row_signature(["a", "b"]) != row_signature(["a", "c"])
