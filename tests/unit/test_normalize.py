"""Unit tests for cardshare_etl.normalize."""

from datetime import date

from cardshare_etl.normalize import (
    build_display_name,
    email_key,
    name_company_key,
    normalize_email,
    parse_exchange_date,
    trim,
)


# ---------------------------------------------------------------------------
# trim
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

    def test_full_width_space_is_whitespace(self):
        assert trim("　山田　") == "山田"


# ---------------------------------------------------------------------------
# normalize_email
# ---------------------------------------------------------------------------

class TestNormalizeEmail:
    def test_lowercase_and_trim(self):
        assert normalize_email("  Taro@Example.COM ") == "taro@example.com"

    def test_blank_is_none(self):
        assert normalize_email("  ") is None


# ---------------------------------------------------------------------------
# parse_exchange_date
# ---------------------------------------------------------------------------

class TestParseExchangeDate:
    def test_iso_dashes(self):
        assert parse_exchange_date("2024-06-01") == date(2024, 6, 1)

    def test_slashes(self):
        assert parse_exchange_date("2024/06/01") == date(2024, 6, 1)

    def test_single_digit_month_and_day(self):
        assert parse_exchange_date("2024/6/1") == date(2024, 6, 1)

    def test_surrounding_whitespace(self):
        assert parse_exchange_date(" 2024-01-15 ") == date(2024, 1, 15)

    def test_impossible_calendar_date(self):
        assert parse_exchange_date("2024-02-30") is None

    def test_unrecognized_shape(self):
        assert parse_exchange_date("令和6年6月1日") is None

    def test_time_suffix_rejected(self):
        assert parse_exchange_date("2024-06-01 10:00") is None

    def test_none_and_empty(self):
        assert parse_exchange_date(None) is None
        assert parse_exchange_date("") is None


# ---------------------------------------------------------------------------
# build_display_name
# ---------------------------------------------------------------------------

class TestBuildDisplayName:
    def test_family_name_first(self):
        assert build_display_name("山田", "太郎") == "山田 太郎"

    def test_last_only(self):
        assert build_display_name("山田", None) == "山田"

    def test_first_only(self):
        assert build_display_name(" ", "太郎") == "太郎"

    def test_both_absent(self):
        assert build_display_name(None, "") is None


# ---------------------------------------------------------------------------
# Match keys
# ---------------------------------------------------------------------------

class TestMatchKeys:
    def test_email_key_case_insensitive(self):
        assert email_key("A@Example.com") == email_key(" a@example.com")

    def test_email_key_none(self):
        assert email_key(None) is None

    def test_name_company_key(self):
        assert name_company_key(" 山田 太郎 ", "Acme ") == "山田 太郎_acme"

    def test_name_company_key_requires_both(self):
        assert name_company_key("山田 太郎", None) is None
        assert name_company_key(None, "Acme") is None
        assert name_company_key("", "Acme") is None
