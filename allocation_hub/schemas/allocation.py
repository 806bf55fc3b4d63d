"""Pydantic schemas for allocation requests, batch results and duplicate scans."""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from allocation_hub.schemas.common import Pagination
from allocation_hub.schemas.enums import AllocationStatus
from allocation_hub.schemas.reconciliation import TransactionSummary


# =====================================================
# Requests
# =====================================================

class AllocationRequestCreate(BaseModel):
    """Payload raised by a requester for one transaction."""

    transaction_id: UUID
    policy_number: str = Field(..., min_length=1, description="Policy number the requester asserts")
    notes: List[str] = Field(default_factory=list)
    evidence: List[str] = Field(
        default_factory=list,
        description="Opaque document references (blob store URLs)",
    )

    @field_validator("policy_number")
    @classmethod
    def policy_number_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("policy_number must not be blank")
        return value.strip()

    @field_validator("evidence")
    @classmethod
    def evidence_as_set(cls, value: List[str]) -> List[str]:
        # Evidence is a set; keep first-seen order for display
        return list(dict.fromkeys(v.strip() for v in value if v and v.strip()))


class TransitionRequest(BaseModel):
    target_status: AllocationStatus
    rejection_reason: Optional[str] = None


class BatchIdsRequest(BaseModel):
    ids: List[UUID] = Field(..., min_length=1)

    @field_validator("ids")
    @classmethod
    def unique_ids(cls, value: List[UUID]) -> List[UUID]:
        return list(dict.fromkeys(value))


class AddNoteRequest(BaseModel):
    note: str = Field(..., min_length=1)


# =====================================================
# Responses
# =====================================================

class AllocationRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    transaction_id: UUID
    policy_number: str
    notes: List[str] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)
    status: AllocationStatus
    rejection_reason: Optional[str] = None
    version: int

    requested_by: str
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    submitted_by: Optional[str] = None
    allocated_by: Optional[str] = None
    marked_duplicate_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    archived_by: Optional[str] = None

    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    allocated_at: Optional[datetime] = None
    marked_duplicate_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AllocationRequestDetail(BaseModel):
    item: AllocationRequestResponse
    transaction: Optional[TransactionSummary] = None


class AllocationRequestList(BaseModel):
    items: List[AllocationRequestResponse] = Field(default_factory=list)
    pagination: Pagination


class BatchItemResult(BaseModel):
    """Outcome for one id of a batch operation."""

    id: UUID
    success: bool
    status: Optional[AllocationStatus] = None
    error: Optional[Dict[str, Any]] = None


class BatchResult(BaseModel):
    results: List[BatchItemResult] = Field(default_factory=list)
    succeeded: int = 0
    failed: int = 0


# =====================================================
# Duplicate scan
# =====================================================

class LedgerRowMatch(BaseModel):
    row_number: int
    membership_id: str
    effective_date: date


class DuplicateScanResult(BaseModel):
    """Scan outcome for one allocation request."""

    request_id: UUID
    policy_number: str
    transaction_date: date
    is_duplicate: bool
    match_count: int
    matching_ledger_rows: List[LedgerRowMatch] = Field(default_factory=list)


class ScanFailure(BaseModel):
    request_id: UUID
    error: Dict[str, Any]


class DuplicateScanStats(BaseModel):
    total_requests: int = 0
    requests_to_scan: int = 0
    requests_without_transactions: int = 0
    duplicate_requests: int = 0
    import_requests: int = 0
    failed_requests: int = 0
    ledger_rows: int = 0
    row_errors: int = 0


class DuplicateScanReport(BaseModel):
    results: List[DuplicateScanResult] = Field(default_factory=list)
    failures: List[ScanFailure] = Field(default_factory=list)
    row_errors: List[Dict[str, Any]] = Field(default_factory=list)
    stats: DuplicateScanStats = Field(default_factory=DuplicateScanStats)

    @property
    def duplicate_ids(self) -> set[UUID]:
        return {r.request_id for r in self.results if r.is_duplicate}
