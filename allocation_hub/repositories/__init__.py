"""Repositories for database access."""

from allocation_hub.repositories.allocation_request_repository import AllocationRequestRepository
from allocation_hub.repositories.audit_log_repository import AuditLogRepository
from allocation_hub.repositories.base_repository import BaseRepository
from allocation_hub.repositories.policy_repository import PolicyRepository
from allocation_hub.repositories.transaction_repository import TransactionRepository

__all__ = [
    "AllocationRequestRepository",
    "AuditLogRepository",
    "BaseRepository",
    "PolicyRepository",
    "TransactionRepository",
]
