from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.auth import get_current_actor
from allocation_hub.core.config import settings
from allocation_hub.core.database import get_async_session as get_session
from allocation_hub.core.exceptions import AppError
from allocation_hub.core.permissions import Actor
from allocation_hub.schemas.common import ApiResponse
from allocation_hub.schemas.enums import TransactionSource
from allocation_hub.schemas.reconciliation import (
    ApplyPolicyNumberRequest,
    BulkApplyPolicyNumbersRequest,
    TransactionSearchRequest,
)
from allocation_hub.services.transaction_service import TransactionService
from allocation_hub.utils.responses import create_api_response, http_exception_for

router = APIRouter()


async def get_transaction_service(
    db_session: Annotated[AsyncSession, Depends(get_session)]
) -> TransactionService:
    return TransactionService(db_session)


@router.get(
    "/",
    response_model=ApiResponse,
    summary="List transactions",
    operation_id="list_transactions",
)
async def list_transactions(
    request: Request,
    actor: Annotated[Actor, Depends(get_current_actor)],
    service: Annotated[TransactionService, Depends(get_transaction_service)],
    source: Optional[TransactionSource] = Query(None),
    without_policy: bool = Query(False, alias="withoutPolicy"),
    page: int = Query(1, ge=1),
    page_size: int = Query(
        settings.reconciliation.default_page_size, ge=1, le=settings.max_page_size, alias="pageSize"
    ),
) -> ApiResponse:
    try:
        result = await service.list_transactions(
            page=page, page_size=page_size, source=source, without_policy=without_policy
        )
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=result, message=f"Retrieved {len(result.items)} transactions", request=request
    )


@router.post(
    "/search",
    response_model=ApiResponse,
    summary="Search transactions",
    operation_id="search_transactions",
)
async def search_transactions(
    request: Request,
    criteria: TransactionSearchRequest,
    actor: Annotated[Actor, Depends(get_current_actor)],
    service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> ApiResponse:
    """Search by text, policy number, amount (with `>`, `<` or `=`) or date."""
    try:
        result = await service.search_transactions(criteria)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=result, message=f"Found {result.pagination.total} transactions", request=request
    )


@router.get(
    "/unique-without-policy",
    response_model=ApiResponse,
    summary="External references of transactions without a policy number",
    operation_id="list_unique_references_without_policy",
)
async def list_unique_references_without_policy(
    request: Request,
    actor: Annotated[Actor, Depends(get_current_actor)],
    service: Annotated[TransactionService, Depends(get_transaction_service)],
    page: int = Query(1, ge=1),
    page_size: int = Query(
        settings.reconciliation.default_page_size, ge=1, le=settings.max_page_size, alias="pageSize"
    ),
) -> ApiResponse:
    try:
        result = await service.unique_references_without_policy(page=page, page_size=page_size)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=result, message=f"Retrieved {len(result.items)} references", request=request
    )


@router.post(
    "/{transaction_id}/policy-number",
    response_model=ApiResponse,
    summary="Apply a resolved policy number",
    operation_id="apply_transaction_policy_number",
)
async def apply_policy_number(
    request: Request,
    transaction_id: UUID,
    payload: ApplyPolicyNumberRequest,
    actor: Annotated[Actor, Depends(get_current_actor)],
    service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> ApiResponse:
    """Attach a policy number to a transaction that has none. Audited."""
    try:
        updated = await service.apply_policy_number(transaction_id, payload, actor)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(data=updated, message="Policy number applied", request=request)


@router.post(
    "/policy-numbers",
    response_model=ApiResponse,
    summary="Apply resolved policy numbers to several transactions",
    operation_id="apply_transaction_policy_numbers",
)
async def apply_policy_numbers(
    request: Request,
    payload: BulkApplyPolicyNumbersRequest,
    actor: Annotated[Actor, Depends(get_current_actor)],
    service: Annotated[TransactionService, Depends(get_transaction_service)],
) -> ApiResponse:
    """Each item is written and audited on its own; failures are reported per transaction."""
    try:
        result = await service.apply_policy_numbers(payload, actor)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=result,
        message=f"Applied {result.succeeded} policy numbers, {result.failed} failed",
        request=request,
    )
