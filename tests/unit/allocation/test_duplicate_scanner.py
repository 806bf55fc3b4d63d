"""Unit tests for the ledger duplicate scan."""

import uuid
from datetime import date, datetime

import pytest

from allocation_hub.core.exceptions import MalformedKeyError
from allocation_hub.services.allocation.duplicate_scanner import (
    ScanCandidate,
    composite_key,
    index_ledger,
    scan_candidate,
)
from allocation_hub.services.allocation.ledger_extract import LedgerExtractReader, LedgerRow


def ledger(*rows):
    return [
        LedgerRow(row_number=i + 2, membership_id=member, effective_date=on)
        for i, (on, member) in enumerate(rows)
    ]


def scan_all(candidates, rows):
    ledger_index = index_ledger(rows)
    return [scan_candidate(candidate, ledger_index) for candidate in candidates]


class TestDuplicateScanner:

    def test_matching_row_flags_duplicate(self):
        extract = LedgerExtractReader().read("EffectiveDate,MembershipID\n2024/01/15,P-100\n")
        candidate = ScanCandidate(uuid.uuid4(), "P-100", date(2024, 1, 15))

        [result] = scan_all([candidate], extract.rows)

        assert result.is_duplicate is True
        assert result.match_count == 1
        assert result.matching_ledger_rows[0].row_number == 2

    def test_all_matching_rows_are_kept(self):
        rows = ledger(
            (date(2024, 1, 15), "P-100"),
            (date(2024, 1, 15), "P-200"),
            (date(2024, 1, 15), "P-100"),
        )

        [result] = scan_all([ScanCandidate(uuid.uuid4(), " P-100 ", date(2024, 1, 15))], rows)

        assert result.match_count == 2
        assert [r.row_number for r in result.matching_ledger_rows] == [2, 4]

    def test_same_member_other_date_is_not_duplicate(self):
        rows = ledger((date(2024, 1, 16), "P-100"))
        [result] = scan_all([ScanCandidate(uuid.uuid4(), "P-100", date(2024, 1, 15))], rows)
        assert result.is_duplicate is False
        assert result.match_count == 0

    def test_empty_extract_never_flags(self):
        candidates = [ScanCandidate(uuid.uuid4(), f"P-{i}", date(2024, 1, i + 1)) for i in range(5)]
        assert not any(r.is_duplicate for r in scan_all(candidates, []))

    def test_statement_format_dates_are_canonicalized(self):
        rows = ledger((date(2024, 1, 15), "P-100"))
        [result] = scan_all([ScanCandidate(uuid.uuid4(), "P-100", "01/15/2024")], rows)
        assert result.is_duplicate is True
        assert result.transaction_date == date(2024, 1, 15)

    def test_timestamp_uses_its_date_portion(self):
        rows = ledger((date(2024, 1, 15), "P-100"))
        [result] = scan_all([ScanCandidate(uuid.uuid4(), "P-100", datetime(2024, 1, 15, 23, 59))], rows)
        assert result.is_duplicate is True

    def test_deterministic(self):
        rows = ledger((date(2024, 1, 15), "P-100"), (date(2024, 1, 16), "P-200"))
        candidates = [
            ScanCandidate(uuid.UUID(int=1), "P-100", date(2024, 1, 15)),
            ScanCandidate(uuid.UUID(int=2), "P-200", date(2024, 1, 17)),
        ]
        assert scan_all(candidates, rows) == scan_all(candidates, rows)

    def test_candidate_without_date(self):
        with pytest.raises(MalformedKeyError):
            scan_candidate(ScanCandidate(uuid.uuid4(), "P-100", None), index_ledger([]))

    def test_blank_policy_number_has_no_key(self):
        with pytest.raises(MalformedKeyError):
            scan_candidate(ScanCandidate(uuid.uuid4(), "   ", date(2024, 1, 15)), index_ledger([]))

    def test_composite_key(self):
        assert composite_key("01/15/2024", " P-100 ") == (date(2024, 1, 15), "P-100")
