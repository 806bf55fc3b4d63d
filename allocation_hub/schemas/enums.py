"""Enumerations shared by the ORM models, schemas and services."""

from enum import Enum


class AllocationStatus(str, Enum):
    """Lifecycle states of an allocation request."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUBMITTED = "SUBMITTED"
    ALLOCATED = "ALLOCATED"
    DUPLICATE = "DUPLICATE"
    CANCELLED = "CANCELLED"
    ARCHIVED = "ARCHIVED"


ACTIVE_STATUSES = frozenset(
    {AllocationStatus.PENDING, AllocationStatus.APPROVED, AllocationStatus.SUBMITTED}
)
TERMINAL_STATUSES = frozenset(set(AllocationStatus) - ACTIVE_STATUSES)


class TransactionSource(str, Enum):
    """Payment rail a transaction was imported from."""

    EFT = "EFT"
    EASYPAY = "EASYPAY"


class Capability(str, Enum):
    """Actions an identity may be allowed to perform."""

    REQUEST = "request"
    REVIEW = "review"
    ALLOCATE = "allocate"
    ADMINISTER = "administer"


class MatchSource(str, Enum):
    FILE = "file_only"
    DATABASE = "database_only"
    FILE_AND_DATABASE = "file_and_database"


class MatchStatus(str, Enum):
    BOTH_MATCH = "both_match"
    FILE_MATCH = "file_match"
    DATABASE_MATCH = "database_match"
    AMBIGUOUS = "ambiguous"
    NO_MATCH = "no_match"


class TransactionSearchType(str, Enum):
    TEXT = "text"
    POLICY_NUMBER = "policyNumber"
    AMOUNT = "amount"
    DATE = "date"


class AmountFilter(str, Enum):
    GREATER_THAN = ">"
    LESS_THAN = "<"
    EQUAL = "="
