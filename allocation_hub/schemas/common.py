"""Response envelope and pagination schemas shared by every endpoint."""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ResponseMeta(BaseModel):
    """Metadata attached to every API response."""

    timestamp: datetime = Field(..., description="Server time the response was built")
    request_id: str = Field(..., description="Correlation id for the request")
    api_version: str = Field(default="v1", description="API version")


class ApiResponse(BaseModel):
    """Standard response envelope."""

    status: bool = Field(default=True, description="Whether the operation succeeded")
    message: str = Field(default="Operation successful", description="Human readable summary")
    data: Dict[str, Any] = Field(default_factory=dict, description="Payload")
    meta: Optional[ResponseMeta] = None


class ErrorDetail(BaseModel):
    """RFC 7807 style problem details."""

    title: str
    status: int
    detail: str
    code: Optional[str] = None
    instance: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class Pagination(BaseModel):
    """Page bounds of a listing."""

    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1)
    total: int = Field(..., ge=0)
    total_pages: int = Field(..., ge=0)

    @classmethod
    def of(cls, page: int, page_size: int, total: int) -> "Pagination":
        return cls(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=math.ceil(total / page_size) if page_size else 0,
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size
