"""
Common Pydantic schemas used across the API.

Shared schemas for pagination, errors and the health check.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str = Field(..., description="Error message")
    detail: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")
    path: Optional[str] = Field(None, description="Request path that caused the error")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Unknown record type: Invoice",
                "detail": {"record_type": "Invoice"},
                "timestamp": "2026-03-02T09:30:00Z",
                "path": "/api/import/types/Invoice/fields"
            }
        }


class PaginationParams(BaseModel):
    """Standard pagination parameters."""

    page: int = Field(1, ge=1, description="Page number (1-indexed)")
    page_size: int = Field(50, ge=1, le=100, description="Number of items per page")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def page_count(self, total: int) -> int:
        return (total + self.page_size - 1) // self.page_size


class HealthCheckResponse(BaseModel):
    """Connectivity of the backing services and the exchange workload."""

    status: str = Field(..., description="healthy, degraded or unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: str
    database: str
    redis: str
    celery: str
    record_types: List[str] = Field(default_factory=list, description="Registered exchange record types")
    active_jobs: Dict[str, int] = Field(default_factory=dict,
                                        description="Pending and processing jobs per job type")
