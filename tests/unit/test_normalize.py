"""Unit tests for staffing_etl.normalize."""

import math
from datetime import date, datetime

import pytest

from staffing_etl.normalize import (
    COERCERS,
    normalize_header_key,
    normalize_name,
    normalize_row,
    normalize_space,
    parse_name_parts,
    to_bool_yes_no,
    to_boolean,
    to_date,
    to_digits_only_phone,
    to_number,
    to_trimmed_string,
    trim,
)
from staffing_etl.record_types import load_registry


@pytest.fixture(scope="module")
def applicant():
    return load_registry()["applicant"]


# ---------------------------------------------------------------------------
# trim / normalize_space
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("hello   world") == "hello world"

    def test_collapses_tabs(self):
        assert normalize_space("hello\t\tworld") == "hello world"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# normalize_header_key
# ---------------------------------------------------------------------------

class TestNormalizeHeaderKey:
    def test_multiline_header(self):
        raw = "Background Status\n(Valid, Pending or Flagged)"
        assert normalize_header_key(raw) == "backgroundstatusvalidpendingorflagged"

    def test_case_and_punctuation(self):
        assert normalize_header_key("  CRM # ") == "crm"

    def test_canonical_name_lowercased(self):
        assert normalize_header_key("tentativeStartDate") == "tentativestartdate"

    def test_none_is_empty(self):
        assert normalize_header_key(None) == ""

    def test_numeric_header(self):
        assert normalize_header_key(2024.0) == "2024"


# ---------------------------------------------------------------------------
# normalize_name / parse_name_parts
# ---------------------------------------------------------------------------

class TestNormalizeName:
    def test_lowercases_and_strips_punctuation(self):
        assert normalize_name("Mary-Jane O'Neil") == "maryjane oneil"

    def test_last_comma_first_reordered(self):
        assert normalize_name("Smith, John") == "john smith"
        assert normalize_name("Smith, John") == normalize_name("John Smith")

    def test_accents_removed(self):
        assert normalize_name("José Núñez") == "jose nunez"

    def test_blank(self):
        assert normalize_name("   ") is None


class TestParseNameParts:
    def test_first_last(self):
        assert parse_name_parts("John Smith") == ("John", "Smith")

    def test_last_comma_first(self):
        assert parse_name_parts("Smith, John A") == ("John A", "Smith")

    def test_single_token(self):
        assert parse_name_parts("Cher") == ("Cher", None)

    def test_none(self):
        assert parse_name_parts(None) == (None, None)


# ---------------------------------------------------------------------------
# Coercers
# ---------------------------------------------------------------------------

class TestToTrimmedString:
    def test_none(self):
        assert to_trimmed_string(None) == ""

    def test_nan(self):
        assert to_trimmed_string(float("nan")) == ""

    def test_integral_float_loses_decimal(self):
        assert to_trimmed_string(12345.0) == "12345"

    def test_fractional_float_kept(self):
        assert to_trimmed_string(7.5) == "7.5"

    def test_strips(self):
        assert to_trimmed_string("  abc ") == "abc"


class TestToDate:
    def test_spreadsheet_serial(self):
        assert to_date(45000) == datetime(2023, 3, 15)

    def test_fractional_serial_keeps_time(self):
        assert to_date(45000.5) == datetime(2023, 3, 15, 12, 0)

    def test_iso_string(self):
        assert to_date("2024-01-15") == datetime(2024, 1, 15)

    def test_us_string(self):
        assert to_date("01/15/2024") == datetime(2024, 1, 15)

    def test_month_name(self):
        assert to_date("Jan 15, 2024") == datetime(2024, 1, 15)

    def test_date_becomes_datetime(self):
        assert to_date(date(2024, 1, 15)) == datetime(2024, 1, 15)

    def test_datetime_passthrough(self):
        dt = datetime(2024, 1, 15, 8, 30)
        assert to_date(dt) is dt

    def test_garbage_is_none(self):
        assert to_date("next tuesday") is None

    def test_blank_is_none(self):
        assert to_date("") is None
        assert to_date(None) is None

    def test_bool_is_none(self):
        assert to_date(True) is None

    def test_nan_and_inf_are_none(self):
        assert to_date(float("nan")) is None
        assert to_date(float("inf")) is None

    def test_overflowing_serial_is_none(self):
        assert to_date(1e20) is None


class TestToDigitsOnlyPhone:
    def test_formatted(self):
        assert to_digits_only_phone("(757) 435-1543") == "7574351543"

    def test_numeric_cell(self):
        assert to_digits_only_phone(7574351543.0) == "7574351543"

    def test_none(self):
        assert to_digits_only_phone(None) == ""


class TestToBoolYesNo:
    def test_yes_any_case(self):
        assert to_bool_yes_no("YES") == "Yes"
        assert to_bool_yes_no(" yes ") == "Yes"

    def test_anything_else_blank(self):
        assert to_bool_yes_no("y") == ""
        assert to_bool_yes_no("No") == ""
        assert to_bool_yes_no(None) == ""


class TestToBoolean:
    def test_true_tokens(self):
        for v in ("Yes", "y", "TRUE", "1", "x", 1.0):
            assert to_boolean(v) is True

    def test_false_values(self):
        for v in ("No", "", None, 0, "maybe"):
            assert to_boolean(v) is False

    def test_bool_passthrough(self):
        assert to_boolean(False) is False


class TestToNumber:
    def test_currency(self):
        assert to_number("$1,234.50") == 1234.5

    def test_negative(self):
        assert to_number("-2.5") == -2.5

    def test_numeric_passthrough(self):
        assert to_number(8) == 8.0

    def test_garbage_is_zero(self):
        assert to_number("abc") == 0.0
        assert to_number("1.2.3") == 0.0
        assert to_number(None) == 0.0

    def test_nan_is_zero(self):
        assert to_number(float("nan")) == 0.0


class TestCoercersAreTotal:
    WEIRD = [None, "", "   ", float("nan"), float("inf"), -1, 10 ** 30, True,
             object(), [], {"a": 1}, "\x00", date(2024, 1, 1)]

    @pytest.mark.parametrize("name", sorted(COERCERS))
    def test_never_raises(self, name):
        coercer = COERCERS[name]
        for value in self.WEIRD:
            coercer(value)

    def test_number_result_is_finite(self):
        for value in self.WEIRD:
            assert math.isfinite(to_number(value))


# ---------------------------------------------------------------------------
# normalize_row
# ---------------------------------------------------------------------------

class TestNormalizeRow:
    def test_aliases_resolved(self, applicant):
        row = normalize_row({
            "Employee ID": "1001",
            "CRM #": "C-9",
            "Full Name": "Ann Lee",
            "Background Status\n(Valid, Pending or Flagged)": "Valid",
        }, applicant)
        assert row == {
            "eid": "1001",
            "crmNumber": "C-9",
            "name": "Ann Lee",
            "backgroundStatus": "Valid",
        }

    def test_unknown_header_passes_through(self, applicant):
        row = normalize_row({"Favorite Color": "blue"}, applicant)
        assert row == {"favoritecolor": "blue"}

    def test_blank_header_dropped(self, applicant):
        assert normalize_row({"": "x", None: "y"}, applicant) == {}

    def test_first_non_blank_wins(self, applicant):
        row = normalize_row({"Employee ID": "", "Employee Number": "1001"}, applicant)
        assert row["eid"] == "1001"

    def test_alias_table_order_decides(self, applicant):
        row = normalize_row({"Employee ID": "1001", "Employee Number": "2002"}, applicant)
        assert row["eid"] == "1001"

    def test_column_order_does_not_matter(self, applicant):
        forward = normalize_row({"Employee ID": "1001", "Employee Number": "2002"}, applicant)
        backward = normalize_row({"Employee Number": "2002", "Employee ID": "1001"}, applicant)
        assert forward == backward

    def test_canonical_header_beats_alias(self, applicant):
        row = normalize_row({"Full Name": "Alias Value", "name": "Canonical Value"}, applicant)
        assert row["name"] == "Canonical Value"
        row = normalize_row({"name": "Canonical Value", "Full Name": "Alias Value"}, applicant)
        assert row["name"] == "Canonical Value"

    def test_idempotent(self, applicant):
        raw = {
            "Applicant Name": "Ann Lee",
            "Phone": "(757) 435-1543",
            "I-9 Cleared": "yes",
            "Extra": 3,
        }
        once = normalize_row(raw, applicant)
        assert normalize_row(once, applicant) == once
