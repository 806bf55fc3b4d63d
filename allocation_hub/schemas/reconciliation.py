"""Pydantic schemas for reconciliation results and unmatched transaction resolution."""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from allocation_hub.schemas.common import Pagination
from allocation_hub.schemas.enums import (
    AmountFilter,
    MatchSource,
    MatchStatus,
    TransactionSearchType,
    TransactionSource,
)


# =====================================================
# Policy index comparison
# =====================================================

class ReconciliationKeyPair(BaseModel):
    """A policy number with the reference each provenance holds for it."""

    model_config = ConfigDict(frozen=True)

    policy_number: str
    file_external_reference: Optional[str] = None
    database_external_reference: Optional[str] = None
    status: str = Field(..., description="match | mismatch | file_only | database_only")


class PolicyWithoutReference(BaseModel):
    """Database policy with no external reference at all."""

    model_config = ConfigDict(frozen=True)

    policy_number: str
    member_name: Optional[str] = None
    member_id: Optional[str] = None
    product: Optional[str] = None
    status: str = "no_external_reference"


class AmbiguousReference(BaseModel):
    """External reference shared by more than one policy within a provenance."""

    model_config = ConfigDict(frozen=True)

    provenance: str
    external_reference: str
    policy_numbers: List[str]


class FileDataStats(BaseModel):
    total: int = 0
    valid: int = 0
    invalid: int = 0
    duplicate_policy_numbers: List[str] = Field(default_factory=list)


class DatabaseDataStats(BaseModel):
    total: int = 0
    with_external_reference: int = 0
    without_external_reference: int = 0
    duplicate_policy_numbers: List[str] = Field(default_factory=list)


class ComparisonResult(BaseModel):
    """Classification of the file key set against the database key set."""

    matches: List[ReconciliationKeyPair] = Field(default_factory=list)
    mismatches: List[ReconciliationKeyPair] = Field(default_factory=list)
    file_only: List[ReconciliationKeyPair] = Field(default_factory=list)
    database_only: List[ReconciliationKeyPair] = Field(default_factory=list)
    without_external_reference: List[PolicyWithoutReference] = Field(default_factory=list)
    ambiguous_references: List[AmbiguousReference] = Field(default_factory=list)


class ComparisonCounts(BaseModel):
    matches: int = 0
    mismatches: int = 0
    file_only: int = 0
    database_only: int = 0
    without_external_reference: int = 0
    ambiguous_references: int = 0


class ComparisonReport(BaseModel):
    """Comparison plus provenance statistics, one page of each category."""

    file_data: FileDataStats
    database_data: DatabaseDataStats
    counts: ComparisonCounts
    comparison: ComparisonResult
    pagination: Pagination


# =====================================================
# Unmatched transaction resolution
# =====================================================

class TransactionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source: str
    date: date
    amount: Decimal
    external_reference: Optional[str] = None
    description: Optional[str] = None


class MatchedPolicy(BaseModel):
    policy_number: str
    member_name: Optional[str] = None
    member_id: Optional[str] = None
    product: Optional[str] = None


class UnmatchedResolution(BaseModel):
    """Outcome of probing the policy index for one transaction."""

    transaction: TransactionSummary
    match_status: MatchStatus
    match_source: Optional[MatchSource] = None
    matched_policy: Optional[MatchedPolicy] = None
    candidates: List[str] = Field(
        default_factory=list,
        description="Policy numbers the reference maps to when the match is ambiguous",
    )
    is_valid_reference: bool = True


class ResolverSummary(BaseModel):
    total: int = 0
    with_file_match: int = 0
    with_database_match: int = 0
    with_both_matches: int = 0
    ambiguous: int = 0
    no_match: int = 0


class UnmatchedTransactionsPage(BaseModel):
    summary: ResolverSummary
    matches: List[UnmatchedResolution] = Field(default_factory=list)
    ambiguous: List[UnmatchedResolution] = Field(default_factory=list)
    no_matches: List[UnmatchedResolution] = Field(default_factory=list)
    pagination: Pagination


class ApplyPolicyNumberRequest(BaseModel):
    policy_number: str = Field(..., min_length=1)
    reason: Optional[str] = None


class UniqueReferenceGroup(BaseModel):
    """Transactions without a policy number grouped by external reference."""

    external_reference: Optional[str]
    transaction_count: int
    total_amount: Decimal
    first_transaction_date: Optional[date] = None
    last_transaction_date: Optional[date] = None
    transaction_ids: List[UUID] = Field(default_factory=list)


class TransactionResponse(TransactionSummary):
    file_id: str
    policy_number: Optional[str] = None


class TransactionList(BaseModel):
    items: List[TransactionResponse] = Field(default_factory=list)
    pagination: Pagination


class UniqueReferencePage(BaseModel):
    items: List[UniqueReferenceGroup] = Field(default_factory=list)
    pagination: Pagination


class TransactionSearchRequest(BaseModel):
    """Search criteria; which fields are required depends on ``search_type``."""

    search_type: TransactionSearchType
    search_text: Optional[str] = Field(None, description="Text or policy number fragment")
    amount: Optional[Decimal] = None
    filter_type: AmountFilter = AmountFilter.EQUAL
    transaction_date: Optional[date] = None
    source: Optional[TransactionSource] = None
    page: int = Field(1, ge=1)
    page_size: Optional[int] = Field(None, ge=1)


class PolicyNumberAssignment(BaseModel):
    transaction_id: UUID
    policy_number: str = Field(..., min_length=1)
    reason: Optional[str] = None


class BulkApplyPolicyNumbersRequest(BaseModel):
    items: List[PolicyNumberAssignment] = Field(..., min_length=1)


class PolicyNumberUpdateResult(BaseModel):
    """Outcome for one transaction of a bulk write-back."""

    transaction_id: UUID
    success: bool
    policy_number: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


class PolicyNumberBatchResult(BaseModel):
    results: List[PolicyNumberUpdateResult] = Field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
