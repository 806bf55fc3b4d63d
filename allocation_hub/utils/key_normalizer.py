"""Canonical forms for the natural keys used in matching.

Payment references, membership/policy numbers and dates arrive in whatever
shape the source file used. Everything that is compared goes through the
helpers here first so that two representations of the same key compare
equal and nothing else does.
"""

import re
from datetime import date, datetime
from typing import Optional, Sequence, Union

from allocation_hub.core.exceptions import MalformedKeyError

_NON_ALNUM = re.compile(r"[^0-9A-Za-z]")
_ASCII_DIGITS = re.compile(r"[0-9]+")
# Separator between the date and time-of-day parts of a timestamp
_TIME_SPLIT = re.compile(r"[T\s]")

CanonicalDate = date
DateFormats = Union[str, Sequence[str]]

LEDGER_EXPORT_DATE_FORMAT = "%Y/%m/%d"


def normalize_reference(raw: Optional[str]) -> str:
    """Strip whitespace and separators and upper-case a reference.

    Examples:
        " 9225 1234-5678 " -> "922512345678"
        "'922512345678901234'" -> "922512345678901234"
        "p-100" -> "P100"
    """
    if raw is None:
        return ""
    return _NON_ALNUM.sub("", str(raw)).upper()


def normalize_policy_number(raw: Optional[str]) -> str:
    """Trim a policy/membership number.

    Policy numbers keep their separators ("P-100" stays "P-100"); only
    surrounding whitespace and quotes are removed.
    """
    if raw is None:
        return ""
    return str(raw).strip().strip("'\"").strip()


def is_valid_external_reference(value: Optional[str], prefix: str = "9225", length: int = 18) -> bool:
    """Check the payment-rail reference format.

    Valid iff the value starts with ``prefix``, is exactly ``length``
    characters long and every character is an ASCII digit.
    """
    if not value:
        return False
    return (
        value.startswith(prefix)
        and len(value) == length
        and _ASCII_DIGITS.fullmatch(value) is not None
    )


def _as_formats(source_format: DateFormats) -> list[str]:
    if isinstance(source_format, str):
        return [source_format]
    return list(source_format)


def _parse_with(value: str, formats: list[str]) -> Optional[date]:
    for fmt in formats:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date(raw: Union[str, date, datetime, None], source_format: DateFormats) -> CanonicalDate:
    """Parse a source-specific date into a calendar date.

    Timestamps are reduced to their date portion as written; no timezone
    conversion is applied.

    Args:
        raw: Date string, ``date`` or ``datetime``
        source_format: strptime format, or formats tried in order

    Returns:
        date: The canonical calendar date

    Raises:
        MalformedKeyError: If the value is empty or matches none of the formats
    """
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if raw is None or not str(raw).strip():
        raise MalformedKeyError("Date value is empty")

    value = str(raw).strip()
    formats = _as_formats(source_format)

    parsed = _parse_with(value, formats)
    if parsed is None:
        date_part = _TIME_SPLIT.split(value, maxsplit=1)[0]
        if date_part != value:
            parsed = _parse_with(date_part, formats)

    if parsed is None:
        raise MalformedKeyError(
            f"Unparseable date '{value}' (expected one of: {', '.join(formats)})"
        )
    return parsed


def format_ledger_date(value: date) -> str:
    """Render a date the way the ledger system expects it (YYYY/MM/DD)."""
    return value.strftime(LEDGER_EXPORT_DATE_FORMAT)
