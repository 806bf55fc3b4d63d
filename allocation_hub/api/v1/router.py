from fastapi import APIRouter

from allocation_hub.api.v1.endpoints import allocation_requests, reconciliation, transactions

# Create API router
api_router = APIRouter()

# Include routers
api_router.include_router(
    allocation_requests.router, prefix="/allocation-requests", tags=["Allocation Requests"]
)
api_router.include_router(reconciliation.router, prefix="/reconciliation", tags=["Reconciliation"])
api_router.include_router(transactions.router, prefix="/transactions", tags=["Transactions"])

__all__ = ["api_router"]
