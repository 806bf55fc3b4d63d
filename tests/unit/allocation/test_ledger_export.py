"""Unit tests for the ledger deposit file."""

import csv
import io
import uuid
from datetime import date
from decimal import Decimal

from allocation_hub.schemas.enums import AllocationStatus
from allocation_hub.services.allocation.ledger_export import (
    LEDGER_EXPORT_HEADER,
    ExportCandidate,
    generate_ledger_export,
)


def candidate(policy_number, amount, on, status=AllocationStatus.SUBMITTED, request_id=None):
    return ExportCandidate(
        request_id=request_id or uuid.uuid4(),
        status=status,
        policy_number=policy_number,
        amount=Decimal(amount),
        transaction_date=on,
    )


class TestLedgerExport:

    def test_round_trip_keeps_order_and_values(self):
        candidates = [
            candidate("P-300", "75.5", date(2024, 3, 1)),
            candidate("P-100", "500.00", date(2024, 1, 15)),
            candidate("P-200", "1200", date(2023, 12, 31)),
        ]

        export = generate_ledger_export(candidates)
        rows = list(csv.reader(io.StringIO(export.content)))

        assert tuple(rows[0]) == LEDGER_EXPORT_HEADER
        assert rows[1:] == [
            ["P-300", "75.50", "2024/03/01"],
            ["P-100", "500.00", "2024/01/15"],
            ["P-200", "1200.00", "2023/12/31"],
        ]
        assert [(r[0], Decimal(r[1]), r[2]) for r in rows[1:]] == [
            (c.policy_number, c.amount, c.transaction_date.strftime("%Y/%m/%d")) for c in candidates
        ]
        assert export.exported_ids == [c.request_id for c in candidates]

    def test_only_submitted_non_duplicates_are_written(self):
        submitted = candidate("P-1", "10.00", date(2024, 1, 1))
        approved = candidate("P-2", "10.00", date(2024, 1, 1), status=AllocationStatus.APPROVED)
        duplicate = candidate("P-3", "10.00", date(2024, 1, 1))

        export = generate_ledger_export([submitted, approved, duplicate], duplicate_ids={duplicate.request_id})

        assert export.exported_ids == [submitted.request_id]
        assert export.skipped[approved.request_id] == "status is APPROVED"
        assert duplicate.request_id in export.skipped
        assert export.content.count("\r\n") == 2

    def test_values_with_commas_and_quotes_are_escaped(self):
        export = generate_ledger_export([candidate('P,1"A', "10.00", date(2024, 1, 1))])

        assert '"P,1""A"' in export.content
        rows = list(csv.reader(io.StringIO(export.content)))
        assert rows[1][0] == 'P,1"A'

    def test_empty_set_writes_header_only(self):
        export = generate_ledger_export([])
        assert export.content == "MembershipNo,DepositAmount,DepositDate\r\n"
        assert export.row_count == 0

    def test_surrounding_quotes_survive_the_round_trip(self):
        policy_numbers = ["'P-100\"", "\"P-200", "P-300'"]

        export = generate_ledger_export([candidate(p, "10.00", date(2024, 1, 1)) for p in policy_numbers])
        rows = list(csv.reader(io.StringIO(export.content)))

        assert [r[0] for r in rows[1:]] == policy_numbers
