"""Allocation workflow engine.

Every status change is read-verify-write: the request is read, the
transition is checked against the lifecycle graph and the actor's
capabilities, and the new status is written conditionally on the status
and version that were read. A write that matches no row means another
writer got there first and is reported as ``ConcurrentModificationError``.
"""

import uuid
from datetime import date, datetime, timezone
from typing import Any, BinaryIO, Dict, List, Optional, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.config import settings
from allocation_hub.core.exceptions import (
    AppError,
    AuthorizationError,
    ConcurrentModificationError,
    DatabaseError,
    DependencyUnavailableError,
    InvalidTransitionError,
    MalformedFileError,
    MalformedKeyError,
    NotFoundError,
    ValidationError,
)
from allocation_hub.core.permissions import Actor
from allocation_hub.database.models import AllocationRequest
from allocation_hub.repositories.allocation_request_repository import AllocationRequestRepository
from allocation_hub.repositories.audit_log_repository import AuditLogRepository
from allocation_hub.repositories.transaction_repository import TransactionRepository
from allocation_hub.schemas.allocation import (
    AllocationRequestCreate,
    AllocationRequestDetail,
    AllocationRequestList,
    AllocationRequestResponse,
    BatchItemResult,
    BatchResult,
    DuplicateScanReport,
    DuplicateScanStats,
    ScanFailure,
)
from allocation_hub.schemas.common import Pagination
from allocation_hub.schemas.enums import AllocationStatus, Capability
from allocation_hub.schemas.reconciliation import TransactionSummary
from allocation_hub.services.allocation.duplicate_scanner import ScanCandidate, index_ledger, scan_candidate
from allocation_hub.services.allocation.ledger_export import ExportCandidate, LedgerExport, generate_ledger_export
from allocation_hub.services.allocation.ledger_extract import LedgerExtractReader
from allocation_hub.services.allocation.state_machine import STAMPS, check_transition, is_terminal
from allocation_hub.services.base_service import BaseService
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

ExtractSource = Union[str, bytes, BinaryIO]

RESOURCE_TYPE = "allocation_request"


def _audit_action(target: AllocationStatus) -> str:
    return f"{RESOURCE_TYPE}.{AllocationStatus(target).value.lower()}"


class AllocationWorkflowService(BaseService):
    """Service for the allocation request lifecycle.

    The acting identity is always passed in explicitly as an ``Actor``.
    """

    def __init__(
        self,
        session: AsyncSession,
        request_repo: Optional[AllocationRequestRepository] = None,
        transaction_repo: Optional[TransactionRepository] = None,
        audit_repo: Optional[AuditLogRepository] = None,
        extract_reader: Optional[LedgerExtractReader] = None,
    ):
        super().__init__()
        self.session = session
        self.request_repo = request_repo or AllocationRequestRepository(session)
        self.transaction_repo = transaction_repo or TransactionRepository(session)
        self.audit_repo = audit_repo or AuditLogRepository(session)
        self.extract_reader = extract_reader or LedgerExtractReader()

    # =====================================================
    # Dispatch
    # =====================================================

    def validate(self, *args, **kwargs):
        ids = kwargs.get("ids")
        if ids is not None:
            if not ids:
                raise ValidationError("At least one id is required", code="EMPTY_BATCH")
            if len(ids) > settings.max_batch_size:
                raise ValidationError(
                    f"Batch of {len(ids)} ids exceeds the limit of {settings.max_batch_size}",
                    code="BATCH_TOO_LARGE",
                )

        page_size = kwargs.get("page_size")
        if page_size is not None and not 1 <= page_size <= settings.max_page_size:
            raise ValidationError(
                f"page_size must be between 1 and {settings.max_page_size}", code="INVALID_PAGE_SIZE"
            )
        page = kwargs.get("page")
        if page is not None and page < 1:
            raise ValidationError("page must be 1 or greater", code="INVALID_PAGE")

        extract = kwargs.get("extract")
        if isinstance(extract, (bytes, str)) and len(extract) > settings.reconciliation.max_extract_bytes:
            raise MalformedFileError(
                f"Ledger extract exceeds {settings.reconciliation.max_extract_bytes} bytes",
                code="EXTRACT_TOO_LARGE",
            )

    async def run(self, *args, **kwargs) -> Any:
        """Route to the handler for ``action``."""
        action = kwargs.pop("action", None)

        if action == "create":
            return await self._create(**kwargs)
        elif action == "get":
            return await self._get(**kwargs)
        elif action == "list":
            return await self._list(**kwargs)
        elif action == "transition":
            return await self._transition_one(**kwargs)
        elif action == "batch":
            return await self._batch(**kwargs)
        elif action == "add_note":
            return await self._add_note(**kwargs)
        elif action == "scan":
            return await self._scan(**kwargs)
        elif action == "export":
            return await self._export(**kwargs)
        else:
            raise ValidationError(f"Unknown action: {action}")

    # =====================================================
    # Public operations
    # =====================================================

    async def create_request(self, payload: AllocationRequestCreate, actor: Actor) -> AllocationRequestResponse:
        """Raise a new PENDING request for a transaction.

        Raises:
            AuthorizationError: If the actor may not raise requests
            NotFoundError: If the transaction does not exist
            ValidationError: If the transaction already has an active request
        """
        return await self.execute(action="create", payload=payload, actor=actor)

    async def get_request(self, request_id: uuid.UUID) -> AllocationRequestDetail:
        return await self.execute(action="get", request_id=request_id)

    async def list_requests(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        status: Optional[AllocationStatus] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        requested_by: Optional[str] = None,
    ) -> AllocationRequestList:
        return await self.execute(
            action="list",
            page=page,
            page_size=page_size or settings.reconciliation.default_page_size,
            status=status,
            date_from=date_from,
            date_to=date_to,
            requested_by=requested_by,
        )

    async def transition(
        self,
        request_id: uuid.UUID,
        target_status: AllocationStatus,
        actor: Actor,
        rejection_reason: Optional[str] = None,
    ) -> AllocationRequestResponse:
        """Move one request to ``target_status``.

        Raises:
            NotFoundError: If the request does not exist
            InvalidTransitionError: If the lifecycle does not allow the move
            AuthorizationError: If the actor lacks the capability
            ValidationError: If a rejection has no reason
            ConcurrentModificationError: If the request changed since it was read
        """
        return await self.execute(
            action="transition",
            request_id=request_id,
            target_status=target_status,
            actor=actor,
            rejection_reason=rejection_reason,
        )

    async def submit(self, ids: List[uuid.UUID], actor: Actor) -> BatchResult:
        """APPROVED -> SUBMITTED for each id independently."""
        return await self.execute(action="batch", ids=ids, target_status=AllocationStatus.SUBMITTED, actor=actor)

    async def allocate(self, ids: List[uuid.UUID], actor: Actor) -> BatchResult:
        """SUBMITTED -> ALLOCATED for each id independently."""
        return await self.execute(action="batch", ids=ids, target_status=AllocationStatus.ALLOCATED, actor=actor)

    async def mark_duplicate(self, ids: List[uuid.UUID], actor: Actor) -> BatchResult:
        """SUBMITTED -> DUPLICATE for each id independently."""
        return await self.execute(action="batch", ids=ids, target_status=AllocationStatus.DUPLICATE, actor=actor)

    async def add_note(self, request_id: uuid.UUID, note: str, actor: Actor) -> AllocationRequestResponse:
        return await self.execute(action="add_note", request_id=request_id, note=note, actor=actor)

    async def scan_duplicates(
        self, ids: List[uuid.UUID], extract: ExtractSource, actor: Actor
    ) -> DuplicateScanReport:
        """Cross-reference SUBMITTED requests against a ledger extract.

        Nothing is written. A malformed extract aborts before any request
        is looked at; per-request problems are reported as failures.
        """
        return await self.execute(action="scan", ids=ids, extract=extract, actor=actor)

    async def export(
        self, ids: List[uuid.UUID], actor: Actor, extract: Optional[ExtractSource] = None
    ) -> LedgerExport:
        """Deposit file for the SUBMITTED requests among ``ids``, in input order.

        When ``extract`` is given, requests it flags as duplicates are left out.
        """
        return await self.execute(action="export", ids=ids, actor=actor, extract=extract)

    # =====================================================
    # Handlers
    # =====================================================

    async def _create(self, payload: AllocationRequestCreate, actor: Actor) -> AllocationRequestResponse:
        if not actor.can(Capability.REQUEST):
            raise AuthorizationError("Raising allocation requests requires the 'request' capability")

        transaction = await self.transaction_repo.get_by_id(payload.transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {payload.transaction_id} not found")

        active = await self.request_repo.get_active_for_transaction(payload.transaction_id)
        if active is not None:
            raise ValidationError(
                f"Transaction {payload.transaction_id} already has active request {active.id} ({active.status})",
                code="ACTIVE_REQUEST_EXISTS",
            )

        request_id = uuid.uuid4()
        await self.audit_repo.record(
            action=f"{RESOURCE_TYPE}.create",
            resource_type=RESOURCE_TYPE,
            resource_id=str(request_id),
            performed_by=actor.id,
            details={"transaction_id": str(payload.transaction_id), "policy_number": payload.policy_number},
        )
        try:
            created = await self.request_repo.create(
                id=request_id,
                transaction_id=payload.transaction_id,
                policy_number=payload.policy_number,
                notes=list(payload.notes),
                evidence=list(payload.evidence),
                status=AllocationStatus.PENDING.value,
                requested_by=actor.id,
                version=1,
            )
        except IntegrityError as e:
            # Lost the race against another requester for the same transaction
            raise ValidationError(
                f"Transaction {payload.transaction_id} already has an active request",
                code="ACTIVE_REQUEST_EXISTS",
                original_error=e,
            ) from e

        LOGGER.info(
            "Allocation request created",
            extra={
                "request_id": str(created.id),
                "transaction_id": str(payload.transaction_id),
                "actor": actor.id,
            },
        )
        return AllocationRequestResponse.model_validate(created)

    async def _get(self, request_id: uuid.UUID) -> AllocationRequestDetail:
        request = await self.request_repo.get_with_transaction(request_id)
        if request is None:
            raise NotFoundError(f"Allocation request {request_id} not found")

        transaction = (
            TransactionSummary.model_validate(request.transaction) if request.transaction is not None else None
        )
        return AllocationRequestDetail(
            item=AllocationRequestResponse.model_validate(request),
            transaction=transaction,
        )

    async def _list(
        self,
        page: int,
        page_size: int,
        status: Optional[AllocationStatus],
        date_from: Optional[date],
        date_to: Optional[date],
        requested_by: Optional[str],
    ) -> AllocationRequestList:
        if date_from and date_to and date_from > date_to:
            raise ValidationError("date_from must not be after date_to", code="INVALID_DATE_RANGE")

        offset = (page - 1) * page_size
        items, total = await self.request_repo.list_requests(
            offset=offset,
            limit=page_size,
            status=status,
            date_from=date_from,
            date_to=date_to,
            requested_by=requested_by,
        )
        return AllocationRequestList(
            items=[AllocationRequestResponse.model_validate(item) for item in items],
            pagination=Pagination.of(page, page_size, total),
        )

    async def _transition_one(self, **kwargs) -> AllocationRequestResponse:
        request = await self._apply_transition(**kwargs)
        return AllocationRequestResponse.model_validate(request)

    async def _apply_transition(
        self,
        request_id: uuid.UUID,
        target_status: AllocationStatus,
        actor: Actor,
        rejection_reason: Optional[str] = None,
    ) -> AllocationRequest:
        target = AllocationStatus(target_status)

        request = await self.request_repo.get_by_id(request_id)
        if request is None:
            raise NotFoundError(f"Allocation request {request_id} not found")

        current = AllocationStatus(request.status)
        log_extra = {
            "request_id": str(request_id),
            "from_status": current.value,
            "to_status": target.value,
            "actor": actor.id,
        }

        try:
            check_transition(
                current,
                target,
                actor,
                requested_by=request.requested_by,
                rejection_reason=rejection_reason,
            )
        except InvalidTransitionError as e:
            LOGGER.warning(e.message, extra=log_extra)
            raise

        stamp = STAMPS[target]
        values: Dict[str, Any] = {
            "status": target.value,
            stamp.actor_field: actor.id,
            stamp.timestamp_field: datetime.now(timezone.utc),
        }
        if target == AllocationStatus.REJECTED:
            values["rejection_reason"] = rejection_reason.strip()

        written = await self.request_repo.compare_and_set_status(
            request_id, current, request.version, values
        )
        if not written:
            await self.session.rollback()
            LOGGER.warning("Conditional status write matched no row", extra=log_extra)
            raise ConcurrentModificationError(
                f"Allocation request {request_id} was modified concurrently; refetch and retry"
            )

        details: Dict[str, Any] = {"from_status": current.value, "to_status": target.value}
        if target == AllocationStatus.REJECTED:
            details["rejection_reason"] = values["rejection_reason"]
        await self.audit_repo.record(
            action=_audit_action(target),
            resource_type=RESOURCE_TYPE,
            resource_id=str(request_id),
            performed_by=actor.id,
            details=details,
        )
        await self.session.commit()

        LOGGER.info("Allocation request transitioned", extra=log_extra)

        refreshed = await self.request_repo.get_with_transaction(request_id)
        return refreshed if refreshed is not None else request

    async def _batch(self, ids: List[uuid.UUID], target_status: AllocationStatus, actor: Actor) -> BatchResult:
        result = BatchResult()

        for position, request_id in enumerate(ids):
            try:
                updated = await self._apply_transition(
                    request_id=request_id, target_status=target_status, actor=actor
                )
            except DependencyUnavailableError as e:
                # The store is gone; nothing further can succeed
                await self.session.rollback()
                LOGGER.error(
                    f"Batch {AllocationStatus(target_status).value} stopped at {request_id}: {e.message}",
                    extra={"actor": actor.id, "remaining": len(ids) - position},
                )
                for remaining_id in ids[position:]:
                    result.results.append(BatchItemResult(id=remaining_id, success=False, error=e.to_dict()))
                    result.failed += 1
                break
            except SQLAlchemyError as e:
                await self.session.rollback()
                LOGGER.error(
                    f"Store error while moving allocation request {request_id}: {e}",
                    exc_info=True,
                    extra={"actor": actor.id},
                )
                error = DatabaseError(f"Allocation request {request_id} could not be updated", original_error=e)
                result.results.append(BatchItemResult(id=request_id, success=False, error=error.to_dict()))
                result.failed += 1
                continue
            except AppError as e:
                current = getattr(e, "current_status", None)
                result.results.append(
                    BatchItemResult(
                        id=request_id,
                        success=False,
                        status=AllocationStatus(current) if current else None,
                        error=e.to_dict(),
                    )
                )
                result.failed += 1
                continue

            result.results.append(
                BatchItemResult(id=request_id, success=True, status=AllocationStatus(updated.status))
            )
            result.succeeded += 1

        LOGGER.info(
            f"Batch {AllocationStatus(target_status).value}: {result.succeeded} succeeded, {result.failed} failed",
            extra={"actor": actor.id, "to_status": AllocationStatus(target_status).value},
        )
        return result

    async def _add_note(self, request_id: uuid.UUID, note: str, actor: Actor) -> AllocationRequestResponse:
        note = (note or "").strip()
        if not note:
            raise ValidationError("Note must not be empty", code="MISSING_FIELD", field="note")

        request = await self.request_repo.get_by_id(request_id)
        if request is None:
            raise NotFoundError(f"Allocation request {request_id} not found")

        current = AllocationStatus(request.status)
        if is_terminal(current):
            raise InvalidTransitionError(
                f"Cannot add notes to a request in terminal state {current.value}",
                current_status=current.value,
            )

        written = await self.request_repo.compare_and_set_status(
            request_id, current, request.version, {"notes": list(request.notes or []) + [note]}
        )
        if not written:
            await self.session.rollback()
            raise ConcurrentModificationError(
                f"Allocation request {request_id} was modified concurrently; refetch and retry"
            )

        await self.audit_repo.record(
            action=f"{RESOURCE_TYPE}.add-note",
            resource_type=RESOURCE_TYPE,
            resource_id=str(request_id),
            performed_by=actor.id,
            details={"note": note},
        )
        await self.session.commit()

        refreshed = await self.request_repo.get_with_transaction(request_id)
        return AllocationRequestResponse.model_validate(refreshed if refreshed is not None else request)

    async def _scan(self, ids: List[uuid.UUID], extract: ExtractSource, actor: Actor) -> DuplicateScanReport:
        if not actor.can(Capability.ALLOCATE):
            raise AuthorizationError("Duplicate scans require the 'allocate' capability")

        ledger = self.extract_reader.read(extract)
        ledger_index = index_ledger(ledger.rows)
        requests = await self.request_repo.get_many_with_transactions(list(ids))

        report = DuplicateScanReport(
            row_errors=[e.to_dict() for e in ledger.errors],
            stats=DuplicateScanStats(
                total_requests=len(ids),
                ledger_rows=len(ledger.rows),
                row_errors=len(ledger.errors),
            ),
        )

        for request_id in ids:
            request = requests.get(request_id)
            if request is None:
                report.failures.append(
                    ScanFailure(
                        request_id=request_id,
                        error=NotFoundError(f"Allocation request {request_id} not found").to_dict(),
                    )
                )
                continue

            if AllocationStatus(request.status) != AllocationStatus.SUBMITTED:
                report.failures.append(
                    ScanFailure(
                        request_id=request_id,
                        error=ValidationError(
                            f"Only SUBMITTED requests can be scanned (status is {request.status})",
                            code="NOT_SUBMITTED",
                        ).to_dict(),
                    )
                )
                continue

            if request.transaction is None:
                report.stats.requests_without_transactions += 1
                report.failures.append(
                    ScanFailure(
                        request_id=request_id,
                        error=NotFoundError(
                            f"Transaction {request.transaction_id} for request {request_id} not found"
                        ).to_dict(),
                    )
                )
                continue

            report.stats.requests_to_scan += 1
            candidate = ScanCandidate(
                request_id=request.id,
                policy_number=request.policy_number,
                transaction_date=request.transaction.date,
            )
            try:
                scanned = scan_candidate(candidate, ledger_index)
            except MalformedKeyError as e:
                report.failures.append(ScanFailure(request_id=request_id, error=e.to_dict()))
                continue

            report.results.append(scanned)
            if scanned.is_duplicate:
                report.stats.duplicate_requests += 1
            else:
                report.stats.import_requests += 1

        report.stats.failed_requests = len(report.failures)
        LOGGER.info(
            f"Duplicate scan: {report.stats.duplicate_requests} duplicates, "
            f"{report.stats.import_requests} to import, {report.stats.failed_requests} failed",
            extra={"actor": actor.id},
        )
        return report

    async def _export(
        self, ids: List[uuid.UUID], actor: Actor, extract: Optional[ExtractSource] = None
    ) -> LedgerExport:
        if not actor.can(Capability.ALLOCATE):
            raise AuthorizationError("Ledger exports require the 'allocate' capability")

        duplicate_ids: set[uuid.UUID] = set()
        if extract is not None:
            duplicate_ids = (await self._scan(ids=ids, extract=extract, actor=actor)).duplicate_ids

        requests = await self.request_repo.get_many_with_transactions(list(ids))

        missing: Dict[uuid.UUID, str] = {}
        candidates = []
        for request_id in ids:
            request = requests.get(request_id)
            if request is None:
                missing[request_id] = "not found"
                continue
            transaction = request.transaction
            candidates.append(
                ExportCandidate(
                    request_id=request.id,
                    status=AllocationStatus(request.status),
                    policy_number=request.policy_number,
                    amount=transaction.amount if transaction is not None else None,
                    transaction_date=transaction.date if transaction is not None else None,
                )
            )

        export = generate_ledger_export(candidates, duplicate_ids=duplicate_ids)
        export.skipped = {
            request_id: missing.get(request_id) or export.skipped[request_id]
            for request_id in ids
            if request_id in missing or request_id in export.skipped
        }

        LOGGER.info(
            f"Ledger export of {export.row_count} rows",
            extra={"actor": actor.id, "skipped": len(export.skipped)},
        )
        return export
