"""Common Pydantic models used by the API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..foundation.clock import utcnow


class ErrorBody(BaseModel):
    """Machine-readable error payload."""

    code: Optional[str] = None
    type: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Error response model."""

    error: ErrorBody


class PaginatedResponse(BaseModel):
    """Paginated response model."""

    items: List[Any]
    total: int
    page: int = Field(ge=1)
    size: int = Field(ge=1, le=1000)
    pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, items: List[Any], total: int, page: int, size: int) -> "PaginatedResponse":
        pages = (total + size - 1) // size if total else 0
        return cls(
            items=items,
            total=total,
            page=page,
            size=size,
            pages=pages,
            has_next=page < pages,
            has_prev=page > 1,
        )


class HealthCheck(BaseModel):
    """Health check response."""

    status: str  # "healthy", "degraded"
    timestamp: datetime = Field(default_factory=utcnow)
    version: Optional[str] = None
    components: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    uptime: Optional[float] = None
