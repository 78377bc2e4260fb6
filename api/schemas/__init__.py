"""
Pydantic schemas for request/response validation.

This package contains all Pydantic models used for API request validation
and response serialization.
"""

from api.schemas.common import ErrorResponse, HealthCheckResponse, PaginationParams
from api.schemas.job_schema import (
    JobStatusEnum, JobTypeEnum, JobProgressResponse,
    JobStatusResponse, JobCreateResponse, OutcomeCounts
)
from api.schemas.import_schema import (
    ImportStartResponse, FieldInfoResponse, RecordTypeResponse
)
from api.schemas.export_schema import ExportRequest, ExportStartResponse

__all__ = [
    # Common
    'ErrorResponse',
    'PaginationParams',
    'HealthCheckResponse',

    # Job
    'JobStatusEnum',
    'JobTypeEnum',
    'JobProgressResponse',
    'JobStatusResponse',
    'JobCreateResponse',
    'OutcomeCounts',

    # Import
    'ImportStartResponse',
    'FieldInfoResponse',
    'RecordTypeResponse',

    # Export
    'ExportRequest',
    'ExportStartResponse',
]
