"""Unit tests for the allocation repositories."""

import uuid
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.exceptions import DependencyUnavailableError
from allocation_hub.repositories.allocation_request_repository import AllocationRequestRepository
from allocation_hub.repositories.audit_log_repository import AuditLogRepository
from allocation_hub.repositories.transaction_repository import TransactionRepository, _contains
from allocation_hub.schemas.enums import AllocationStatus, AmountFilter


@pytest.fixture
def session():
    session = AsyncMock(spec=AsyncSession)
    session.add = MagicMock()
    return session


class TestBaseRepository:

    @pytest.mark.asyncio
    async def test_connection_loss_is_dependency_unavailable(self, session):
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("refused"))
        repo = TransactionRepository(session)

        with pytest.raises(DependencyUnavailableError) as exc_info:
            await repo.get_by_id(uuid.uuid4())

        assert exc_info.value.code == "DEPENDENCY_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unchanged(self, session):
        session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        repo = AllocationRequestRepository(session)

        with pytest.raises(IntegrityError):
            await repo.create(transaction_id=uuid.uuid4(), policy_number="P-1", requested_by="user-1")

        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()


class TestCompareAndSetStatus:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rowcount, expected", [(1, True), (0, False)])
    async def test_reports_whether_the_row_changed(self, session, rowcount, expected):
        session.execute.return_value = MagicMock(rowcount=rowcount)
        repo = AllocationRequestRepository(session)

        changed = await repo.compare_and_set_status(
            uuid.uuid4(), AllocationStatus.PENDING, 1, {"status": AllocationStatus.APPROVED.value}
        )

        assert changed is expected
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_statement_guards_on_status_and_version(self, session):
        session.execute.return_value = MagicMock(rowcount=1)
        repo = AllocationRequestRepository(session)

        await repo.compare_and_set_status(
            uuid.uuid4(), AllocationStatus.SUBMITTED, 3, {"status": AllocationStatus.ALLOCATED.value}
        )

        stmt = session.execute.await_args.args[0]
        where = str(stmt.whereclause)
        assert "allocation_requests.status" in where
        assert "allocation_requests.version" in where


class TestAuditLogRepository:

    @pytest.mark.asyncio
    async def test_record_joins_the_current_unit_of_work(self, session):
        repo = AuditLogRepository(session)

        entry = await repo.record(
            action="allocation.approve",
            resource_type="allocation_request",
            resource_id=uuid.uuid4(),
            performed_by="reviewer-1",
            details={"from": "PENDING", "to": "APPROVED"},
        )

        session.add.assert_called_once_with(entry)
        session.flush.assert_awaited_once()
        session.commit.assert_not_awaited()
        assert entry.outcome == "success"
        assert isinstance(entry.resource_id, str)


def _compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestTransactionSearch:

    @pytest.fixture
    def search_session(self, session):
        rows = MagicMock()
        rows.scalars.return_value.all.return_value = []
        session.execute.side_effect = [MagicMock(scalar_one=MagicMock(return_value=7)), rows]
        return session

    @pytest.mark.asyncio
    async def test_text_matches_reference_or_description(self, search_session):
        items, total = await TransactionRepository(search_session).search(offset=0, limit=10, text="50%_off")

        assert (items, total) == ([], 7)
        sql = _compiled(search_session.execute.await_args_list[1].args[0])
        assert "transactions.external_reference ILIKE" in sql
        assert "transactions.description ILIKE" in sql
        assert " OR " in sql
        assert "ORDER BY transactions.date DESC, transactions.id" in sql

    def test_fragment_wildcards_are_escaped(self):
        assert _contains("50%_off") == "%50\\%\\_off%"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount_filter, comparison, direction",
        [
            (AmountFilter.GREATER_THAN, ">", "ASC"),
            (AmountFilter.LESS_THAN, "<", "DESC"),
            (AmountFilter.EQUAL, "=", "ASC"),
        ],
    )
    async def test_amount_bound_and_ordering(self, search_session, amount_filter, comparison, direction):
        await TransactionRepository(search_session).search(
            offset=20, limit=10, amount=Decimal("150.00"), amount_filter=amount_filter
        )

        sql = _compiled(search_session.execute.await_args_list[1].args[0])
        assert f"transactions.amount {comparison} " in sql
        assert f"ORDER BY transactions.amount {direction}, transactions.date DESC" in sql

    @pytest.mark.asyncio
    async def test_criteria_are_combined(self, search_session):
        await TransactionRepository(search_session).search(
            offset=0, limit=10, policy_number="P-1", on_date=date(2024, 3, 1), source="EFT"
        )

        count_sql = _compiled(search_session.execute.await_args_list[0].args[0])
        for fragment in ("transactions.policy_number ILIKE", "transactions.date =", "transactions.source ="):
            assert fragment in count_sql

    @pytest.mark.asyncio
    async def test_lost_store_is_dependency_unavailable(self, session):
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("refused"))

        with pytest.raises(DependencyUnavailableError):
            await TransactionRepository(session).search(offset=0, limit=10, text="x")
