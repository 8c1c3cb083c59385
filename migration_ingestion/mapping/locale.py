"""
Locale-aware parsing of numbers and dates from legacy exports.

Estimating tools export amounts with the conventions of the machine that
produced them: "1,234.50" (en_US), "1.234,50" (de_DE), "1 234,50" (fr_FR).
Parsing is strict per locale; a value that does not fit the locale's
pattern raises ValueError and the caller turns that into a coercion issue.

Dates: ISO formats are always tried first, then the locale's preferred
day/month order.  Excel serial day numbers and date/datetime objects are
accepted as-is.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any


@dataclass(frozen=True)
class LocaleConventions:
    decimal_sep: str
    group_seps: tuple[str, ...]
    day_first: bool


LOCALES: dict[str, LocaleConventions] = {
    "en_US": LocaleConventions(".", (",",), day_first=False),
    "en_CA": LocaleConventions(".", (",",), day_first=False),
    "en_GB": LocaleConventions(".", (",",), day_first=True),
    "en_AU": LocaleConventions(".", (",",), day_first=True),
    "de_DE": LocaleConventions(",", (".", "'"), day_first=True),
    "es_ES": LocaleConventions(",", (".",), day_first=True),
    "fr_FR": LocaleConventions(",", (" ", "\u00a0", "\u202f"), day_first=True),
}

_CURRENCY_SYMBOLS = "$€£¥₹"
_CURRENCY_CODE = re.compile(r"^[A-Z]{3}\s*|\s*[A-Z]{3}$")
_PLAIN_NUMBER = re.compile(r"^\d+(\.\d+)?$|^\.\d+$")

_ISO_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y%m%d")
_MONTH_FIRST = ("%m/%d/%Y", "%m-%d-%Y", "%m/%d/%y")
_DAY_FIRST = ("%d/%m/%Y", "%d.%m.%Y", "%d-%m-%Y", "%d/%m/%y", "%d.%m.%y")
_NAMED_MONTH = ("%d %b %Y", "%d-%b-%Y", "%b %d, %Y", "%d %B %Y", "%B %d, %Y")

_EXCEL_EPOCH = date(1899, 12, 30)
_EXCEL_MAX_SERIAL = 2958465


def conventions_for(locale: str) -> LocaleConventions:
    conv = LOCALES.get(locale)
    if conv is None:
        conv = LOCALES.get(locale.replace("-", "_"), LOCALES["en_US"])
    return conv


def strip_currency(value: str) -> str:
    """Remove currency symbols and leading/trailing ISO currency codes."""
    s = value.strip()
    for symbol in _CURRENCY_SYMBOLS:
        s = s.replace(symbol, "")
    return _CURRENCY_CODE.sub("", s.strip()).strip()


def parse_decimal(value: Any, locale: str = "en_US") -> Decimal:
    """Parse a monetary or quantity value. Raises ValueError."""
    if isinstance(value, bool):
        raise ValueError(f"boolean is not a number: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if not isinstance(value, str):
        raise ValueError(f"not a number: {value!r}")

    s = strip_currency(value)
    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative, s = True, s[1:-1].strip()
    if s.endswith("-"):
        negative, s = True, s[:-1].strip()
    if s.startswith("-"):
        negative, s = not negative, s[1:].strip()
    elif s.startswith("+"):
        s = s[1:].strip()

    conv = conventions_for(locale)
    for sep in conv.group_seps:
        s = s.replace(sep, "")
    if conv.decimal_sep != ".":
        if "." in s:
            raise ValueError(f"unexpected '.' in {locale} number: {value!r}")
        s = s.replace(conv.decimal_sep, ".")
    if not _PLAIN_NUMBER.match(s):
        raise ValueError(f"not a {locale} number: {value!r}")
    try:
        result = Decimal(s)
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc
    return -result if negative else result


def parse_integer(value: Any, locale: str = "en_US") -> int:
    number = parse_decimal(value, locale)
    if number != number.to_integral_value():
        raise ValueError(f"not a whole number: {value!r}")
    return int(number)


def parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, Decimal)) and value in (0, 1):
        return bool(value)
    low = str(value).strip().lower()
    if low in ("true", "yes", "y", "1", "on", "x"):
        return True
    if low in ("false", "no", "n", "0", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def parse_date(value: Any, locale: str = "en_US", fmt: str | None = None) -> date:
    """Parse a date. Explicit format, then ISO, then locale order. Raises ValueError."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        serial = int(value)
        if 0 < serial <= _EXCEL_MAX_SERIAL:
            return _EXCEL_EPOCH + timedelta(days=serial)
        raise ValueError(f"not an Excel date serial: {value!r}")
    if not isinstance(value, str):
        raise ValueError(f"not a date: {value!r}")

    s = value.strip()
    if "T" in s[:20] or (len(s) > 10 and s[4:5] == "-" and s[10:11] == " "):
        try:
            return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
        except ValueError:
            pass
    order = _DAY_FIRST if conventions_for(locale).day_first else _MONTH_FIRST
    formats = ((fmt,) if fmt else ()) + _ISO_FORMATS + order + _NAMED_MONTH
    for try_fmt in formats:
        try:
            return datetime.strptime(s, try_fmt).date()
        except ValueError:
            continue
    raise ValueError(f"cannot parse date {value!r} for locale {locale}")
