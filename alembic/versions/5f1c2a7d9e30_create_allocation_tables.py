"""Create transaction, policy, allocation request and audit tables.

Revision ID: 5f1c2a7d9e30
Revises:
Create Date: 2024-02-05

Initial schema. The partial unique index on allocation_requests keeps at
most one PENDING/APPROVED/SUBMITTED request per transaction.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '5f1c2a7d9e30'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all tables and indexes."""
    op.create_table(
        'transactions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('file_id', sa.String(), nullable=False,
                  comment='Statement file the line was imported from'),
        sa.Column('source', sa.String(), nullable=False, server_default='EFT',
                  comment='EFT | EASYPAY'),
        sa.Column('external_reference', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('policy_number', sa.String(), nullable=True,
                  comment='Attached once resolved, never overwritten'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()')),
    )
    op.create_index('ix_transactions_file_id', 'transactions', ['file_id'])
    op.create_index('ix_transactions_external_reference', 'transactions', ['external_reference'])
    op.create_index('ix_transactions_policy_number', 'transactions', ['policy_number'])

    op.create_table(
        'policies',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('policy_number', sa.String(), nullable=False, unique=True),
        sa.Column('external_reference', sa.String(), nullable=True,
                  comment='Not unique: collisions are reported as ambiguous'),
        sa.Column('member_name', sa.String(), nullable=True),
        sa.Column('member_id', sa.String(), nullable=True),
        sa.Column('product', sa.String(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()')),
    )
    op.create_index('ix_policies_external_reference', 'policies', ['external_reference'])

    op.create_table(
        'allocation_requests',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('transaction_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('transactions.id'), nullable=False),
        sa.Column('policy_number', sa.String(), nullable=False),
        sa.Column('notes', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('evidence', postgresql.JSONB(), nullable=False, server_default='[]',
                  comment='Opaque document references'),
        sa.Column('status', sa.String(), nullable=False, server_default='PENDING'),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1',
                  comment='Optimistic concurrency token'),

        # Who moved the request into each state
        sa.Column('requested_by', sa.String(), nullable=False),
        sa.Column('approved_by', sa.String(), nullable=True),
        sa.Column('rejected_by', sa.String(), nullable=True),
        sa.Column('submitted_by', sa.String(), nullable=True),
        sa.Column('allocated_by', sa.String(), nullable=True),
        sa.Column('marked_duplicate_by', sa.String(), nullable=True),
        sa.Column('cancelled_by', sa.String(), nullable=True),
        sa.Column('archived_by', sa.String(), nullable=True),

        sa.Column('approved_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('submitted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('allocated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('marked_duplicate_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('archived_at', sa.TIMESTAMP(timezone=True), nullable=True),

        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_allocation_requests_transaction_id', 'allocation_requests', ['transaction_id'])
    op.create_index('ix_allocation_requests_status_created', 'allocation_requests', ['status', 'created_at'])
    op.create_index(
        'uq_allocation_requests_active_transaction',
        'allocation_requests',
        ['transaction_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('APPROVED', 'PENDING', 'SUBMITTED')"),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('resource_type', sa.String(), nullable=False),
        sa.Column('resource_id', sa.String(), nullable=False),
        sa.Column('performed_by', sa.String(), nullable=False),
        sa.Column('outcome', sa.String(), nullable=False, server_default='success'),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_resource_id', 'audit_logs', ['resource_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('audit_logs')
    op.drop_index('uq_allocation_requests_active_transaction', table_name='allocation_requests')
    op.drop_table('allocation_requests')
    op.drop_table('policies')
    op.drop_table('transactions')
