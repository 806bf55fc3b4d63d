"""SQLAlchemy models for all database tables."""

import uuid
from datetime import date as date_type, datetime
from decimal import Decimal

from sqlalchemy import (
    TIMESTAMP,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from allocation_hub.core.database import Base
from allocation_hub.schemas.enums import ACTIVE_STATUSES, AllocationStatus, TransactionSource

_ACTIVE_STATUS_SQL = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value))


class Transaction(Base):
    """Imported payment transaction (EFT or EasyPay statement line).

    Immutable once imported apart from attaching a resolved policy number.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    file_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    source: Mapped[str] = mapped_column(
        String, nullable=False, default=TransactionSource.EFT.value
    )  # EFT | EASYPAY
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    policy_number: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("NOW()"))

    allocation_requests: Mapped[list["AllocationRequest"]] = relationship(
        "AllocationRequest", back_populates="transaction"
    )


class Policy(Base):
    """Live policy record (database provenance of the policy index)."""

    __tablename__ = "policies"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    policy_number: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    # May be absent and is not unique: collisions are surfaced, not resolved
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    member_name: Mapped[str | None] = mapped_column(String, nullable=True)
    member_id: Mapped[str | None] = mapped_column(String, nullable=True)
    product: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("NOW()"))


class AllocationRequest(Base):
    """A request to post a transaction against a policy in the ledger system."""

    __tablename__ = "allocation_requests"
    __table_args__ = (
        # At most one active request per transaction
        Index(
            "uq_allocation_requests_active_transaction",
            "transaction_id",
            unique=True,
            postgresql_where=text(f"status IN ({_ACTIVE_STATUS_SQL})"),
        ),
        Index("ix_allocation_requests_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("transactions.id"), nullable=False, index=True
    )
    policy_number: Mapped[str] = mapped_column(String, nullable=False)
    notes: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    evidence: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=AllocationStatus.PENDING.value
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Bumped on every status write, used as the optimistic concurrency token
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    requested_by: Mapped[str] = mapped_column(String, nullable=False)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String, nullable=True)
    submitted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    allocated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    marked_duplicate_by: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String, nullable=True)
    archived_by: Mapped[str | None] = mapped_column(String, nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    allocated_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    marked_duplicate_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=text("NOW()"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=text("NOW()"), nullable=False
    )

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="allocation_requests")


class AuditLog(Base):
    """Append-only record of state-changing operations."""

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action: Mapped[str] = mapped_column(String, nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String, nullable=False)
    resource_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    performed_by: Mapped[str] = mapped_column(String, nullable=False)
    outcome: Mapped[str] = mapped_column(String, nullable=False, default="success")
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=text("NOW()"), nullable=False
    )
