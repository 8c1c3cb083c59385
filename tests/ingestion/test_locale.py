"""Tests for locale-aware number and date parsing."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from migration_ingestion.mapping.locale import (
    parse_boolean,
    parse_date,
    parse_decimal,
    parse_integer,
    strip_currency,
)


class TestParseDecimal:
    @pytest.mark.parametrize("raw, locale, expected", [
        ("1,234.50", "en_US", Decimal("1234.50")),
        ("1.234,50", "de_DE", Decimal("1234.50")),
        ("1 234,50", "fr_FR", Decimal("1234.50")),
        ("(250.00)", "en_US", Decimal("-250.00")),
        ("250.00-", "en_US", Decimal("-250.00")),
        ("$ 99.95", "en_US", Decimal("99.95")),
        ("USD 12", "en_US", Decimal("12")),
        (".5", "en_US", Decimal("0.5")),
    ])
    def test_locale_formats(self, raw, locale, expected):
        assert parse_decimal(raw, locale) == expected

    def test_floats_go_through_their_repr(self):
        assert parse_decimal(0.1) == Decimal("0.1")

    def test_dot_in_comma_decimal_locale_is_rejected(self):
        with pytest.raises(ValueError):
            parse_decimal("1.234,50", "fr_FR")

    @pytest.mark.parametrize("raw", ["abc", "1,2,3.4.5", "", True])
    def test_garbage_is_rejected(self, raw):
        with pytest.raises(ValueError):
            parse_decimal(raw)


class TestParseInteger:
    def test_whole_numbers(self):
        assert parse_integer("1,200") == 1200

    def test_fraction_is_rejected(self):
        with pytest.raises(ValueError):
            parse_integer("12.5")


class TestParseBoolean:
    @pytest.mark.parametrize("raw, expected", [
        ("Yes", True), ("x", True), (1, True), ("no", False), ("0", False),
    ])
    def test_values(self, raw, expected):
        assert parse_boolean(raw) is expected

    def test_unknown_is_rejected(self):
        with pytest.raises(ValueError):
            parse_boolean("maybe")


class TestParseDate:
    def test_iso_always_wins(self):
        assert parse_date("2026-03-04", "en_GB") == date(2026, 3, 4)

    def test_locale_day_order(self):
        assert parse_date("03/04/2026", "en_US") == date(2026, 3, 4)
        assert parse_date("03/04/2026", "en_GB") == date(2026, 4, 3)
        assert parse_date("04.03.2026", "de_DE") == date(2026, 3, 4)

    def test_explicit_format_is_tried_first(self):
        assert parse_date("2026|03|04", fmt="%Y|%m|%d") == date(2026, 3, 4)

    def test_excel_serial(self):
        assert parse_date(46085) == date(2026, 3, 4)

    def test_datetime_values(self):
        assert parse_date(datetime(2026, 3, 4, 8, 30)) == date(2026, 3, 4)
        assert parse_date("2026-03-04T08:30:00Z") == date(2026, 3, 4)

    def test_unparseable(self):
        with pytest.raises(ValueError):
            parse_date("next tuesday")


def test_strip_currency():
    assert strip_currency(" €1.200,00 EUR ") == "1.200,00"
