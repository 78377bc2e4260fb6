"""
Export-related Pydantic schemas.
"""

from typing import Optional
from pydantic import BaseModel, Field

from api.schemas.job_schema import JobCreateResponse
from services.exchange_models import ExportFormat


class ExportRequest(BaseModel):
    """Body of an export request."""

    format: ExportFormat = Field(ExportFormat.XLSX, description="Output format")
    include_headers: bool = Field(True, description="Write a header row")
    sheet_name: Optional[str] = Field(None, description="Main sheet name (xlsx)")
    file_name: Optional[str] = Field(None, description="Base name of the generated file")

    class Config:
        json_schema_extra = {
            "example": {
                "format": "xlsx",
                "include_headers": True,
                "sheet_name": "员工",
                "file_name": "员工信息"
            }
        }


class ExportStartResponse(JobCreateResponse):
    """Response when a background export is initiated."""

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "abc-123-def-456",
                "message": "Export job started",
                "status_url": "/api/import/job/abc-123-def-456",
                "websocket_url": "/ws/jobs/abc-123-def-456"
            }
        }
