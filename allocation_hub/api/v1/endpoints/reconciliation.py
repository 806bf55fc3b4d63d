from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from allocation_hub.core.auth import get_current_actor
from allocation_hub.core.config import settings
from allocation_hub.core.database import get_async_session as get_session
from allocation_hub.core.exceptions import AppError
from allocation_hub.core.permissions import Actor
from allocation_hub.schemas.common import ApiResponse
from allocation_hub.services.reconciliation.reconciliation_service import ReconciliationService
from allocation_hub.utils.logging import get_logger
from allocation_hub.utils.responses import create_api_response, http_exception_for

LOGGER = get_logger(__name__)

router = APIRouter()


async def get_reconciliation_service(
    db_session: Annotated[AsyncSession, Depends(get_session)]
) -> ReconciliationService:
    return ReconciliationService(db_session)


@router.get(
    "/comparison",
    response_model=ApiResponse,
    summary="Compare the policy reference file with the policy table",
    operation_id="get_reconciliation_comparison",
)
async def get_comparison(
    request: Request,
    actor: Annotated[Actor, Depends(get_current_actor)],
    service: Annotated[ReconciliationService, Depends(get_reconciliation_service)],
    page: int = Query(1, ge=1),
    page_size: int = Query(
        settings.reconciliation.default_page_size, ge=1, le=settings.max_page_size, alias="pageSize"
    ),
) -> ApiResponse:
    """Matches, mismatches, file-only, database-only and reference-less policies."""
    try:
        report = await service.get_comparison(page=page, page_size=page_size)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=report,
        message=f"{report.counts.matches} matches, {report.counts.mismatches} mismatches",
        request=request,
    )


@router.get(
    "/unmatched-transactions",
    response_model=ApiResponse,
    summary="Propose policies for transactions without a policy number",
    operation_id="get_unmatched_transactions",
)
async def get_unmatched_transactions(
    request: Request,
    actor: Annotated[Actor, Depends(get_current_actor)],
    service: Annotated[ReconciliationService, Depends(get_reconciliation_service)],
    page: int = Query(1, ge=1),
    page_size: int = Query(
        settings.reconciliation.default_page_size, ge=1, le=settings.max_page_size, alias="pageSize"
    ),
) -> ApiResponse:
    """Read-only; apply a proposal with ``POST /transactions/{id}/policy-number``."""
    try:
        result = await service.get_unmatched_transactions(page=page, page_size=page_size)
    except AppError as e:
        raise http_exception_for(e, request) from e

    return create_api_response(
        data=result,
        message=f"Resolved {len(result.matches)} of {result.summary.total} unmatched transactions on this page",
        request=request,
    )
