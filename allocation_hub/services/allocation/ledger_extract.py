"""Streaming reader for ledger system receipt extracts.

Extracts are CSV files exported from the ledger system. Column naming varies
between exports, so each required field accepts several header aliases.
Rows that cannot be keyed are collected as ``ValidationError``s and the rest
of the file is still read; only a file that has no usable header at all is
rejected outright.
"""

import codecs
import csv
import io
import re
from dataclasses import dataclass, field
from datetime import date
from typing import BinaryIO, Iterator, Optional, Sequence, Union

from allocation_hub.core.config import settings
from allocation_hub.core.exceptions import MalformedFileError, MalformedKeyError, ValidationError
from allocation_hub.utils.key_normalizer import normalize_date, normalize_policy_number
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

EFFECTIVE_DATE_ALIASES = ("Effective Date", "effective_date", "EffectiveDate")
MEMBERSHIP_ID_ALIASES = ("MembershipID", "membership_id", "Membership ID")

_HEADER_NOISE = re.compile(r"[^0-9a-z]")


def _header_key(name: str) -> str:
    return _HEADER_NOISE.sub("", (name or "").lower())


@dataclass(frozen=True)
class LedgerRow:
    """One keyed receipt from the ledger extract."""

    row_number: int
    membership_id: str
    effective_date: date
    raw: dict = field(default_factory=dict, compare=False, hash=False)


@dataclass
class LedgerExtract:
    rows: list[LedgerRow] = field(default_factory=list)
    errors: list[ValidationError] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.rows) + len(self.errors)


def _resolve_column(fieldnames: Sequence[str], aliases: Sequence[str]) -> Optional[str]:
    wanted = {_header_key(alias) for alias in aliases}
    for name in fieldnames:
        if _header_key(name) in wanted:
            return name
    return None


class _BoundedStream:
    """Binary stream that refuses to hand out more than ``limit`` bytes."""

    def __init__(self, stream: BinaryIO, limit: int):
        self.stream = stream
        self.limit = limit
        self.consumed = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self.stream.read(size)
        self.consumed += len(chunk)
        if self.consumed > self.limit:
            raise MalformedFileError(f"Ledger extract exceeds {self.limit} bytes", code="EXTRACT_TOO_LARGE")
        return chunk


def _text_lines(source: Union[str, bytes, BinaryIO], max_bytes: int) -> Iterator[str]:
    if isinstance(source, str):
        return iter(io.StringIO(source, newline=""))
    if isinstance(source, bytes):
        return iter(io.StringIO(source.decode("utf-8-sig"), newline=""))
    # File-like: decode incrementally instead of reading everything at once
    reader = codecs.getreader("utf-8-sig")(_BoundedStream(source, max_bytes))
    return iter(reader.readline, "")


class LedgerExtractReader:
    """Reads ledger extract CSVs into keyed rows."""

    def __init__(self, date_formats: Optional[Sequence[str]] = None, max_bytes: Optional[int] = None):
        self.date_formats = list(date_formats or settings.reconciliation.ledger_date_formats)
        self.max_bytes = max_bytes or settings.reconciliation.max_extract_bytes

    def iter_rows(self, source: Union[str, bytes, BinaryIO]) -> Iterator[Union[LedgerRow, ValidationError]]:
        """Yield a ``LedgerRow`` or a row-level ``ValidationError`` per data row.

        Streams are read incrementally and cut off after ``max_bytes``.

        Raises:
            MalformedFileError: If the file is not decodable, is larger than
                ``max_bytes`` or the header lacks a membership or effective
                date column
        """
        try:
            reader = csv.DictReader(_text_lines(source, self.max_bytes))
            fieldnames = reader.fieldnames
        except (UnicodeDecodeError, csv.Error) as e:
            raise MalformedFileError(f"Ledger extract could not be read: {e}", original_error=e) from e

        if not fieldnames:
            # An empty extract holds no receipts
            return

        date_column = _resolve_column(fieldnames, EFFECTIVE_DATE_ALIASES)
        member_column = _resolve_column(fieldnames, MEMBERSHIP_ID_ALIASES)
        missing = [
            label
            for label, column, aliases in (
                ("effective date", date_column, EFFECTIVE_DATE_ALIASES),
                ("membership id", member_column, MEMBERSHIP_ID_ALIASES),
            )
            if column is None
        ]
        if missing:
            raise MalformedFileError(
                f"Ledger extract header is missing required column(s): {', '.join(missing)}. "
                f"Accepted names: {', '.join(EFFECTIVE_DATE_ALIASES + MEMBERSHIP_ID_ALIASES)}"
            )

        try:
            for row_number, record in enumerate(reader, start=2):
                if not any((value or "").strip() for value in record.values() if isinstance(value, str)):
                    continue

                membership_id = normalize_policy_number(record.get(member_column))
                if not membership_id:
                    yield ValidationError(
                        "Membership id is empty",
                        code="MISSING_FIELD",
                        row=row_number,
                        field=member_column,
                    )
                    continue

                try:
                    effective_date = normalize_date(record.get(date_column), self.date_formats)
                except MalformedKeyError as e:
                    yield ValidationError(
                        e.message,
                        code=e.code,
                        row=row_number,
                        field=date_column,
                        original_error=e,
                    )
                    continue

                yield LedgerRow(
                    row_number=row_number,
                    membership_id=membership_id,
                    effective_date=effective_date,
                    raw=dict(record),
                )
        except (UnicodeDecodeError, csv.Error) as e:
            raise MalformedFileError(f"Ledger extract could not be read: {e}", original_error=e) from e

    def read(self, source: Union[str, bytes, BinaryIO]) -> LedgerExtract:
        """Read the whole extract, separating keyed rows from row errors."""
        extract = LedgerExtract()
        for item in self.iter_rows(source):
            if isinstance(item, LedgerRow):
                extract.rows.append(item)
            else:
                extract.errors.append(item)

        LOGGER.info(
            f"Read ledger extract: {len(extract.rows)} rows keyed, {len(extract.errors)} rejected"
        )
        return extract
