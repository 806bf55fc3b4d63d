"""Unit tests for the allocation workflow engine.

Repositories are replaced with an in-memory store whose conditional write
behaves like ``UPDATE ... WHERE status = :expected AND version = :v``.
"""

import asyncio
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.exceptions import (
    AuthorizationError,
    ConcurrentModificationError,
    DependencyUnavailableError,
    InvalidTransitionError,
    MalformedFileError,
    NotFoundError,
    ValidationError,
)
from allocation_hub.schemas.allocation import AllocationRequestCreate
from allocation_hub.schemas.enums import AllocationStatus
from allocation_hub.services.allocation.workflow_service import AllocationWorkflowService

S = AllocationStatus


class InMemoryAllocationRequests:
    """Enough of ``AllocationRequestRepository`` for the engine."""

    def __init__(self, *requests):
        self.rows = {r.id: r for r in requests}
        self.writes = []
        self.read_gate = None

    async def get_by_id(self, id):
        row = self.rows.get(id)
        if row is None:
            return None
        snapshot = SimpleNamespace(
            id=row.id,
            status=row.status,
            version=row.version,
            requested_by=row.requested_by,
            notes=list(row.notes),
        )
        if self.read_gate is not None:
            await self.read_gate()
        return snapshot

    async def get_with_transaction(self, id):
        return self.rows.get(id)

    async def get_many_with_transactions(self, ids):
        return {i: self.rows[i] for i in ids if i in self.rows}

    async def get_active_for_transaction(self, transaction_id):
        active = {S.PENDING.value, S.APPROVED.value, S.SUBMITTED.value}
        for row in self.rows.values():
            if row.transaction_id == transaction_id and row.status in active:
                return row
        return None

    async def create(self, **kwargs):
        from allocation_hub.database.models import AllocationRequest

        row = AllocationRequest(**kwargs)
        self.rows[row.id] = row
        return row

    async def compare_and_set_status(self, id, expected_status, expected_version, values):
        self.writes.append((id, values))
        row = self.rows[id]
        if row.status != S(expected_status).value or row.version != expected_version:
            return False
        for key, value in values.items():
            setattr(row, key, value)
        row.version += 1
        return True


@pytest.fixture
def mock_session():
    """Create a mock database session."""
    session = AsyncMock(spec=AsyncSession)
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


@pytest.fixture
def audit_repo():
    repo = AsyncMock()
    repo.record = AsyncMock()
    return repo


def build_service(mock_session, audit_repo, store, transactions=None):
    transaction_repo = AsyncMock()
    transaction_repo.get_by_id = AsyncMock(side_effect=lambda id: (transactions or {}).get(id))
    return AllocationWorkflowService(
        mock_session,
        request_repo=store,
        transaction_repo=transaction_repo,
        audit_repo=audit_repo,
    )


class TestCreateRequest:

    @pytest.mark.asyncio
    async def test_creates_pending_request(self, mock_session, audit_repo, requester, make_transaction):
        tx = make_transaction()
        store = InMemoryAllocationRequests()
        service = build_service(mock_session, audit_repo, store, {tx.id: tx})

        created = await service.create_request(
            AllocationRequestCreate(transaction_id=tx.id, policy_number=" P-100 ", evidence=["a", "a", "b"]),
            requester,
        )

        assert created.status == S.PENDING
        assert created.policy_number == "P-100"
        assert created.requested_by == requester.id
        assert created.evidence == ["a", "b"]
        assert audit_repo.record.await_args.kwargs["action"] == "allocation_request.create"

    @pytest.mark.asyncio
    async def test_second_active_request_is_rejected(
        self, mock_session, audit_repo, requester, make_transaction, make_request
    ):
        tx = make_transaction()
        store = InMemoryAllocationRequests(make_request(tx, status=S.APPROVED))
        service = build_service(mock_session, audit_repo, store, {tx.id: tx})

        with pytest.raises(ValidationError) as exc:
            await service.create_request(
                AllocationRequestCreate(transaction_id=tx.id, policy_number="P-100"), requester
            )
        assert exc.value.code == "ACTIVE_REQUEST_EXISTS"

    @pytest.mark.asyncio
    async def test_terminal_request_does_not_block_a_new_one(
        self, mock_session, audit_repo, requester, make_transaction, make_request
    ):
        tx = make_transaction()
        store = InMemoryAllocationRequests(make_request(tx, status=S.REJECTED))
        service = build_service(mock_session, audit_repo, store, {tx.id: tx})

        created = await service.create_request(
            AllocationRequestCreate(transaction_id=tx.id, policy_number="P-101"), requester
        )

        assert created.status == S.PENDING

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, mock_session, audit_repo, requester):
        service = build_service(mock_session, audit_repo, InMemoryAllocationRequests())

        with pytest.raises(NotFoundError):
            await service.create_request(
                AllocationRequestCreate(transaction_id=uuid.uuid4(), policy_number="P-100"), requester
            )


class TestTransitions:

    @pytest.mark.asyncio
    async def test_happy_path_walk(self, mock_session, audit_repo, reviewer, allocator, make_request):
        request = make_request()
        store = InMemoryAllocationRequests(request)
        service = build_service(mock_session, audit_repo, store)

        approved = await service.transition(request.id, S.APPROVED, reviewer)
        submitted = await service.submit([request.id], reviewer)
        allocated = await service.allocate([request.id], allocator)

        assert approved.status == S.APPROVED
        assert approved.approved_by == reviewer.id
        assert submitted.succeeded == 1
        assert allocated.results[0].status == S.ALLOCATED
        assert request.allocated_by == allocator.id
        assert request.allocated_at is not None
        assert request.version == 4
        assert [c.kwargs["action"] for c in audit_repo.record.await_args_list] == [
            "allocation_request.approved",
            "allocation_request.submitted",
            "allocation_request.allocated",
        ]
        assert mock_session.commit.await_count == 3

    @pytest.mark.asyncio
    async def test_reject_after_approval_keeps_reason(self, mock_session, audit_repo, reviewer, make_request):
        request = make_request(status=S.APPROVED)
        service = build_service(mock_session, audit_repo, InMemoryAllocationRequests(request))

        rejected = await service.transition(request.id, S.REJECTED, reviewer, rejection_reason=" Wrong member ")

        assert rejected.status == S.REJECTED
        assert rejected.rejection_reason == "Wrong member"

    @pytest.mark.asyncio
    async def test_terminal_request_is_left_untouched(self, mock_session, audit_repo, admin, make_request):
        request = make_request(status=S.ALLOCATED, version=4)
        store = InMemoryAllocationRequests(request)
        service = build_service(mock_session, audit_repo, store)

        with pytest.raises(InvalidTransitionError):
            await service.transition(request.id, S.CANCELLED, admin)

        assert request.status == S.ALLOCATED.value
        assert request.version == 4
        assert request.cancelled_at is None
        assert store.writes == []
        audit_repo.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unauthorized_actor_writes_nothing(self, mock_session, audit_repo, requester, make_request):
        request = make_request()
        store = InMemoryAllocationRequests(request)
        service = build_service(mock_session, audit_repo, store)

        with pytest.raises(AuthorizationError):
            await service.transition(request.id, S.APPROVED, requester)

        assert store.writes == []

    @pytest.mark.asyncio
    async def test_unknown_request(self, mock_session, audit_repo, reviewer):
        service = build_service(mock_session, audit_repo, InMemoryAllocationRequests())
        with pytest.raises(NotFoundError):
            await service.transition(uuid.uuid4(), S.APPROVED, reviewer)

    @pytest.mark.asyncio
    async def test_concurrent_approve_and_reject(self, mock_session, audit_repo, make_actor, make_request):
        request = make_request()
        store = InMemoryAllocationRequests(request)
        service = build_service(mock_session, audit_repo, store)

        # Both reviewers read PENDING before either writes
        both_read = asyncio.Event()
        reads = []

        async def gate():
            reads.append(1)
            if len(reads) == 2:
                both_read.set()
            await both_read.wait()

        store.read_gate = gate

        outcomes = await asyncio.gather(
            service.transition(request.id, S.APPROVED, make_actor("reviewer-a", "eft_reviewer")),
            service.transition(
                request.id, S.REJECTED, make_actor("reviewer-b", "eft_reviewer"), rejection_reason="No proof"
            ),
            return_exceptions=True,
        )

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ConcurrentModificationError)
        assert request.status in (S.APPROVED.value, S.REJECTED.value)
        assert request.version == 2
        assert audit_repo.record.await_count == 1
        mock_session.rollback.assert_awaited()


class TestBatchOperations:

    @pytest.mark.asyncio
    async def test_submit_is_per_item(self, mock_session, audit_repo, reviewer, make_request):
        approved = make_request(status=S.APPROVED)
        pending = make_request(status=S.PENDING)
        missing = uuid.uuid4()
        service = build_service(mock_session, audit_repo, InMemoryAllocationRequests(approved, pending))

        result = await service.submit([approved.id, pending.id, missing], reviewer)

        assert (result.succeeded, result.failed) == (1, 2)
        by_id = {r.id: r for r in result.results}
        assert by_id[approved.id].success and by_id[approved.id].status == S.SUBMITTED
        assert by_id[pending.id].error["code"] == "INVALID_TRANSITION"
        assert by_id[pending.id].status == S.PENDING
        assert by_id[missing].error["code"] == "NOT_FOUND"
        assert [r.id for r in result.results] == [approved.id, pending.id, missing]

    @pytest.mark.asyncio
    async def test_mark_duplicate_requires_allocator(self, mock_session, audit_repo, reviewer, make_request):
        submitted = make_request(status=S.SUBMITTED)
        service = build_service(mock_session, audit_repo, InMemoryAllocationRequests(submitted))

        result = await service.mark_duplicate([submitted.id], reviewer)

        assert result.failed == 1
        assert result.results[0].error["code"] == "FORBIDDEN"
        assert submitted.status == S.SUBMITTED.value

    @pytest.mark.asyncio
    async def test_store_error_fails_only_its_own_id(self, mock_session, audit_repo, reviewer, make_request):
        first = make_request(status=S.APPROVED)
        broken = make_request(status=S.APPROVED)
        last = make_request(status=S.APPROVED)
        store = InMemoryAllocationRequests(first, broken, last)
        write = store.compare_and_set_status

        async def failing_write(id, *args):
            if id == broken.id:
                raise IntegrityError("UPDATE allocation_requests", {}, Exception("constraint"))
            return await write(id, *args)

        store.compare_and_set_status = failing_write
        service = build_service(mock_session, audit_repo, store)

        result = await service.submit([first.id, broken.id, last.id], reviewer)

        assert [r.id for r in result.results] == [first.id, broken.id, last.id]
        assert (result.succeeded, result.failed) == (2, 1)
        assert result.results[1].error["code"] == "DATABASE_ERROR"
        mock_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lost_store_reports_every_remaining_id(self, mock_session, audit_repo, reviewer, make_request):
        first, second, third = (make_request(status=S.APPROVED) for _ in range(3))
        store = InMemoryAllocationRequests(first, second, third)
        read = store.get_by_id

        async def failing_read(id):
            if id == second.id:
                raise DependencyUnavailableError("Transaction store is unavailable")
            return await read(id)

        store.get_by_id = failing_read
        service = build_service(mock_session, audit_repo, store)

        result = await service.submit([first.id, second.id, third.id], reviewer)

        assert [r.id for r in result.results] == [first.id, second.id, third.id]
        assert result.results[0].success
        assert [r.error["code"] for r in result.results[1:]] == ["DEPENDENCY_UNAVAILABLE"] * 2
        assert (result.succeeded, result.failed) == (1, 2)
        assert third.status == S.APPROVED.value
        mock_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_oversized_batch_is_rejected(self, mock_session, audit_repo, reviewer, monkeypatch):
        from allocation_hub.core.config import settings

        monkeypatch.setattr(settings.reconciliation, "max_batch_size", 2)
        service = build_service(mock_session, audit_repo, InMemoryAllocationRequests())

        with pytest.raises(ValidationError) as exc:
            await service.submit([uuid.uuid4() for _ in range(3)], reviewer)
        assert exc.value.code == "BATCH_TOO_LARGE"


class TestNotes:

    @pytest.mark.asyncio
    async def test_note_is_appended(self, mock_session, audit_repo, requester, make_request):
        request = make_request(notes=["first"])
        service = build_service(mock_session, audit_repo, InMemoryAllocationRequests(request))

        updated = await service.add_note(request.id, "second", requester)

        assert updated.notes == ["first", "second"]
        assert updated.status == S.PENDING

    @pytest.mark.asyncio
    async def test_terminal_request_takes_no_notes(self, mock_session, audit_repo, requester, make_request):
        request = make_request(status=S.CANCELLED)
        service = build_service(mock_session, audit_repo, InMemoryAllocationRequests(request))

        with pytest.raises(InvalidTransitionError):
            await service.add_note(request.id, "too late", requester)


EXTRACT = b"EffectiveDate,MembershipID\n2024/01/15,P-100\nbad,P-9\n"


class TestScanAndExport:

    @pytest.mark.asyncio
    async def test_scan_reports_duplicates_and_failures(
        self, mock_session, audit_repo, allocator, make_transaction, make_request
    ):
        duplicate = make_request(make_transaction(amount="500.00"), status=S.SUBMITTED, policy_number="P-100")
        fresh = make_request(make_transaction(amount="80.00"), status=S.SUBMITTED, policy_number="P-200")
        pending = make_request(status=S.PENDING)
        missing = uuid.uuid4()
        service = build_service(
            mock_session, audit_repo, InMemoryAllocationRequests(duplicate, fresh, pending)
        )

        report = await service.scan_duplicates([duplicate.id, fresh.id, pending.id, missing], EXTRACT, allocator)

        assert report.duplicate_ids == {duplicate.id}
        assert report.results[0].match_count == 1
        assert [f.request_id for f in report.failures] == [pending.id, missing]
        assert report.failures[0].error["code"] == "NOT_SUBMITTED"
        assert report.stats.total_requests == 4
        assert report.stats.requests_to_scan == 2
        assert report.stats.duplicate_requests == 1
        assert report.stats.import_requests == 1
        assert report.stats.failed_requests == 2
        assert report.stats.ledger_rows == 1
        assert report.stats.row_errors == 1
        assert report.row_errors[0]["row"] == 3
        # Scanning persists nothing
        mock_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_extract_aborts_before_any_request(self, mock_session, audit_repo, allocator):
        store = InMemoryAllocationRequests()
        store.get_many_with_transactions = AsyncMock()
        service = build_service(mock_session, audit_repo, store)

        with pytest.raises(MalformedFileError):
            await service.scan_duplicates([uuid.uuid4()], b"Date,Member\n2024/01/15,P-1\n", allocator)
        store.get_many_with_transactions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_scan_requires_allocator(self, mock_session, audit_repo, reviewer):
        service = build_service(mock_session, audit_repo, InMemoryAllocationRequests())
        with pytest.raises(AuthorizationError):
            await service.scan_duplicates([uuid.uuid4()], EXTRACT, reviewer)

    @pytest.mark.asyncio
    async def test_export_with_extract_drops_duplicates(
        self, mock_session, audit_repo, allocator, make_transaction, make_request
    ):
        duplicate = make_request(make_transaction(amount="500.00"), status=S.SUBMITTED, policy_number="P-100")
        fresh = make_request(make_transaction(amount="80.00"), status=S.SUBMITTED, policy_number="P-200")
        approved = make_request(status=S.APPROVED)
        missing = uuid.uuid4()
        service = build_service(
            mock_session, audit_repo, InMemoryAllocationRequests(duplicate, fresh, approved)
        )

        export = await service.export([missing, fresh.id, duplicate.id, approved.id], allocator, extract=EXTRACT)

        assert export.exported_ids == [fresh.id]
        assert export.content.splitlines() == [
            "MembershipNo,DepositAmount,DepositDate",
            "P-200,80.00,2024/01/15",
        ]
        assert list(export.skipped) == [missing, duplicate.id, approved.id]
        assert export.skipped[missing] == "not found"
