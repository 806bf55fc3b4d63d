"""Allocation request workflow, duplicate scanning and ledger export."""

from allocation_hub.services.allocation.duplicate_scanner import ScanCandidate, scan_candidate
from allocation_hub.services.allocation.ledger_extract import LedgerExtractReader, LedgerRow

__all__ = [
    "LedgerExtractReader",
    "LedgerRow",
    "ScanCandidate",
    "scan_candidate",
]
