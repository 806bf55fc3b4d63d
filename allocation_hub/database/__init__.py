"""Database module for SQLAlchemy models."""

from allocation_hub.database.models import AllocationRequest, AuditLog, Policy, Transaction

__all__ = [
    "AllocationRequest",
    "AuditLog",
    "Policy",
    "Transaction",
]
