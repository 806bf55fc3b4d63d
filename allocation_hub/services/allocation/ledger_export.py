"""Fixed-format deposit file consumed by the ledger system."""

import csv
import io
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Union
from uuid import UUID

from allocation_hub.schemas.enums import AllocationStatus
from allocation_hub.utils.key_normalizer import format_ledger_date
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

LEDGER_EXPORT_HEADER = ("MembershipNo", "DepositAmount", "DepositDate")


@dataclass(frozen=True)
class ExportCandidate:
    request_id: UUID
    status: AllocationStatus
    policy_number: str
    amount: Optional[Union[Decimal, int, float, str]]
    transaction_date: Optional[date]


@dataclass
class LedgerExport:
    content: str
    exported_ids: list[UUID] = field(default_factory=list)
    skipped: dict[UUID, str] = field(default_factory=dict)

    @property
    def row_count(self) -> int:
        return len(self.exported_ids)


def _format_amount(amount) -> str:
    return format(Decimal(str(amount)), ".2f")


def generate_ledger_export(
    candidates: Iterable[ExportCandidate],
    duplicate_ids: Optional[set[UUID]] = None,
) -> LedgerExport:
    """Build the deposit CSV for SUBMITTED, non-duplicate requests.

    Rows keep the order of ``candidates`` and carry the claimed policy
    number as stored, quotes included. Anything else is left out and
    reported in ``skipped`` with the reason.
    """
    duplicate_ids = duplicate_ids or set()
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(LEDGER_EXPORT_HEADER)

    export = LedgerExport(content="")
    for candidate in candidates:
        if AllocationStatus(candidate.status) != AllocationStatus.SUBMITTED:
            export.skipped[candidate.request_id] = f"status is {AllocationStatus(candidate.status).value}"
            continue
        if candidate.request_id in duplicate_ids:
            export.skipped[candidate.request_id] = "flagged duplicate by the ledger extract"
            continue
        if candidate.transaction_date is None or candidate.amount is None:
            export.skipped[candidate.request_id] = "transaction is missing"
            continue

        writer.writerow(
            (
                candidate.policy_number.strip(),
                _format_amount(candidate.amount),
                format_ledger_date(candidate.transaction_date),
            )
        )
        export.exported_ids.append(candidate.request_id)

    export.content = buffer.getvalue()
    LOGGER.info(
        f"Generated ledger export with {export.row_count} rows, {len(export.skipped)} skipped"
    )
    return export
