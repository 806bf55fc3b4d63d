"""Cross-reference allocation candidates against a ledger extract.

A candidate is a duplicate iff at least one ledger row carries the same
composite key ``(calendar date, trimmed membership number)``. The scan is a
pure function of its inputs; persisting the outcome is the workflow
engine's job.
"""

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Union
from uuid import UUID

from allocation_hub.core.config import settings
from allocation_hub.core.exceptions import MalformedKeyError
from allocation_hub.schemas.allocation import DuplicateScanResult, LedgerRowMatch
from allocation_hub.services.allocation.ledger_extract import LedgerRow
from allocation_hub.utils.key_normalizer import normalize_date, normalize_policy_number
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

CompositeKey = tuple[date, str]


@dataclass(frozen=True)
class ScanCandidate:
    """An allocation request reduced to what the scan needs."""

    request_id: UUID
    policy_number: str
    transaction_date: Optional[Union[date, str]]


def composite_key(transaction_date: Union[date, str], policy_number: str) -> CompositeKey:
    """Build the dedup key for a candidate.

    Raises:
        MalformedKeyError: If the date cannot be canonicalized or the policy
            number is blank
    """
    key_date = normalize_date(transaction_date, settings.reconciliation.transaction_date_format)
    member = normalize_policy_number(policy_number)
    if not member:
        raise MalformedKeyError("Policy number is empty")
    return key_date, member


def index_ledger(rows: Iterable[LedgerRow]) -> dict[CompositeKey, list[LedgerRow]]:
    """Group ledger rows by composite key, keeping file order within a key."""
    index: dict[CompositeKey, list[LedgerRow]] = {}
    for row in rows:
        index.setdefault((row.effective_date, row.membership_id), []).append(row)
    LOGGER.debug(f"Indexed ledger extract under {len(index)} composite keys")
    return index


def scan_candidate(candidate: ScanCandidate, ledger_index: dict[CompositeKey, list[LedgerRow]]) -> DuplicateScanResult:
    """Scan one candidate against an indexed extract.

    Raises:
        MalformedKeyError: If the candidate has no usable composite key
    """
    if candidate.transaction_date is None:
        raise MalformedKeyError("Allocation request has no transaction date")

    key = composite_key(candidate.transaction_date, candidate.policy_number)
    matching = ledger_index.get(key, [])

    return DuplicateScanResult(
        request_id=candidate.request_id,
        policy_number=key[1],
        transaction_date=key[0],
        is_duplicate=bool(matching),
        match_count=len(matching),
        matching_ledger_rows=[
            LedgerRowMatch(
                row_number=row.row_number,
                membership_id=row.membership_id,
                effective_date=row.effective_date,
            )
            for row in matching
        ],
    )

