"""
Import-related Pydantic schemas.

This module contains schemas for started imports and the record type
catalogue.
"""

from typing import Optional
from pydantic import BaseModel, Field

from api.schemas.job_schema import JobCreateResponse
from services.exchange_models import ImportMode


class ImportStartResponse(JobCreateResponse):
    """Response when an import is queued, with the mode it will run under."""

    record_type: str
    import_mode: ImportMode = Field(..., description="Caller's mode, or the type's duplicate strategy")

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "abc-123-def-456",
                "message": "Import job started",
                "status_url": "/api/import/job/abc-123-def-456",
                "websocket_url": "/ws/jobs/abc-123-def-456",
                "record_type": "Employee",
                "import_mode": "CreateOrUpdate"
            }
        }


class FieldInfoResponse(BaseModel):
    """Exchangeable field of a record type."""

    property_name: str
    display_name: str
    data_type: str
    can_export: bool
    can_import: bool
    is_required: bool
    order: int
    description: Optional[str] = None


class RecordTypeResponse(BaseModel):
    """Registered record type summary."""

    name: str = Field(..., description="Record type name used in URLs")
    sheet_name: Optional[str] = Field(None, description="Default sheet name")
    import_enabled: bool
    export_enabled: bool
    identity_field: Optional[str] = Field(None, description="Property matching rows to records")
    field_count: int
