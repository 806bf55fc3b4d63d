from datetime import date
from typing import Annotated, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.auth import get_current_actor
from allocation_hub.core.config import settings
from allocation_hub.core.database import get_async_session as get_session
from allocation_hub.core.exceptions import AppError, ValidationError
from allocation_hub.core.permissions import Actor
from allocation_hub.schemas.allocation import (
    AddNoteRequest,
    AllocationRequestCreate,
    BatchIdsRequest,
    TransitionRequest,
)
from allocation_hub.schemas.common import ApiResponse
from allocation_hub.schemas.enums import AllocationStatus
from allocation_hub.services.allocation.workflow_service import AllocationWorkflowService
from allocation_hub.utils.logging import get_logger
from allocation_hub.utils.responses import create_api_response, http_exception_for

LOGGER = get_logger(__name__)

router = APIRouter()

EXPORT_FILENAME = "ledger_deposits.csv"


async def get_workflow_service(
    db_session: Annotated[AsyncSession, Depends(get_session)]
) -> AllocationWorkflowService:
    return AllocationWorkflowService(db_session)


def _parse_ids(raw: str) -> List[UUID]:
    """Ids from a multipart form field: comma or whitespace separated."""
    try:
        ids = [UUID(part) for part in raw.replace(",", " ").split()]
    except ValueError as e:
        raise ValidationError(f"Invalid id in '{raw}'", code="INVALID_ID", field="ids") from e
    return list(dict.fromkeys(ids))


@router.get(
    "/",
    response_model=ApiResponse,
    summary="List allocation requests",
    operation_id="list_allocation_requests",
)
async def list_allocation_requests(
    request: Request,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
    status_filter: Optional[AllocationStatus] = Query(None, alias="status"),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    requested_by: Optional[str] = Query(None, alias="requester"),
    page: int = Query(1, ge=1),
    page_size: int = Query(
        settings.reconciliation.default_page_size, ge=1, le=settings.max_page_size, alias="pageSize"
    ),
) -> ApiResponse:
    """List allocation requests, newest first."""
    try:
        result = await workflow_service.list_requests(
            page=page,
            page_size=page_size,
            status=status_filter,
            date_from=date_from,
            date_to=date_to,
            requested_by=requested_by,
        )
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=result,
        message=f"Retrieved {len(result.items)} allocation requests",
        request=request,
    )


@router.post(
    "/",
    response_model=ApiResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Raise an allocation request",
    operation_id="create_allocation_request",
)
async def create_allocation_request(
    request: Request,
    payload: AllocationRequestCreate,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
) -> ApiResponse:
    try:
        created = await workflow_service.create_request(payload, actor)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(data=created, message="Allocation request created", request=request)


@router.post(
    "/submit",
    response_model=ApiResponse,
    summary="Submit approved requests",
    operation_id="submit_allocation_requests",
)
async def submit_allocation_requests(
    request: Request,
    payload: BatchIdsRequest,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
) -> ApiResponse:
    """APPROVED -> SUBMITTED; each id succeeds or fails on its own."""
    try:
        result = await workflow_service.submit(payload.ids, actor)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=result,
        message=f"Submitted {result.succeeded} of {len(payload.ids)} requests",
        request=request,
    )


@router.post(
    "/allocate",
    response_model=ApiResponse,
    summary="Mark submitted requests as allocated",
    operation_id="allocate_allocation_requests",
)
async def allocate_allocation_requests(
    request: Request,
    payload: BatchIdsRequest,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
) -> ApiResponse:
    try:
        result = await workflow_service.allocate(payload.ids, actor)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=result,
        message=f"Allocated {result.succeeded} of {len(payload.ids)} requests",
        request=request,
    )


@router.post(
    "/mark-duplicates",
    response_model=ApiResponse,
    summary="Mark submitted requests as duplicates",
    operation_id="mark_allocation_requests_duplicate",
)
async def mark_allocation_requests_duplicate(
    request: Request,
    payload: BatchIdsRequest,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
) -> ApiResponse:
    try:
        result = await workflow_service.mark_duplicate(payload.ids, actor)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=result,
        message=f"Marked {result.succeeded} of {len(payload.ids)} requests as duplicate",
        request=request,
    )


@router.post(
    "/scan-duplicates",
    response_model=ApiResponse,
    summary="Scan submitted requests against a ledger extract",
    operation_id="scan_allocation_request_duplicates",
)
async def scan_duplicates(
    request: Request,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
    ids: str = Form(..., description="Comma separated allocation request ids"),
    file: UploadFile = File(..., description="Ledger extract CSV"),
) -> ApiResponse:
    """Read-only: reports which requests the ledger already holds."""
    try:
        report = await workflow_service.scan_duplicates(_parse_ids(ids), file.file, actor)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=report,
        message=f"Found {report.stats.duplicate_requests} potential duplicates",
        request=request,
    )


@router.post(
    "/export",
    summary="Export the ledger deposit file",
    operation_id="export_ledger_file",
    response_class=Response,
    responses={200: {"content": {"text/csv": {}}}},
)
async def export_ledger_file(
    request: Request,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
    ids: str = Form(..., description="Comma separated allocation request ids, in export order"),
    file: Optional[UploadFile] = File(None, description="Optional ledger extract used to drop duplicates"),
) -> Response:
    """CSV of SUBMITTED, non-duplicate requests; skipped ids are listed in ``X-Skipped-Ids``."""
    try:
        extract = file.file if file is not None else None
        export = await workflow_service.export(_parse_ids(ids), actor, extract=extract)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return Response(
        content=export.content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"',
            "X-Skipped-Ids": ",".join(str(skipped) for skipped in export.skipped),
            "X-Exported-Count": str(export.row_count),
        },
    )


@router.get(
    "/{request_id}",
    response_model=ApiResponse,
    summary="Get an allocation request",
    operation_id="get_allocation_request",
)
async def get_allocation_request(
    request: Request,
    request_id: UUID,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
) -> ApiResponse:
    try:
        detail = await workflow_service.get_request(request_id)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(data=detail, message="Allocation request retrieved", request=request)


@router.patch(
    "/{request_id}",
    response_model=ApiResponse,
    summary="Transition an allocation request",
    operation_id="transition_allocation_request",
)
async def transition_allocation_request(
    request: Request,
    request_id: UUID,
    payload: TransitionRequest,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
) -> ApiResponse:
    """Move a request to ``target_status``; 409 when another writer got there first."""
    try:
        updated = await workflow_service.transition(
            request_id,
            payload.target_status,
            actor,
            rejection_reason=payload.rejection_reason,
        )
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=updated,
        message=f"Allocation request moved to {updated.status.value}",
        request=request,
    )


@router.post(
    "/{request_id}/notes",
    response_model=ApiResponse,
    summary="Append a note to an allocation request",
    operation_id="add_allocation_request_note",
)
async def add_allocation_request_note(
    request: Request,
    request_id: UUID,
    payload: AddNoteRequest,
    actor: Annotated[Actor, Depends(get_current_actor)],
    workflow_service: Annotated[AllocationWorkflowService, Depends(get_workflow_service)],
) -> ApiResponse:
    try:
        updated = await workflow_service.add_note(request_id, payload.note, actor)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(data=updated, message="Note added", request=request)
