"""
Job schemas: background import/export status and outcome counts.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field
from datetime import datetime

from services.exchange_models import ImportMode


class JobStatusEnum(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    SUCCESS = 'success'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class JobTypeEnum(str, Enum):
    IMPORT = 'import'
    EXPORT = 'export'


class JobProgressResponse(BaseModel):
    stage: str = Field(..., description="Import or export stage (parsing, importing, details, committing)")
    percent: float = Field(..., ge=0, le=100)
    message: str
    timestamp: datetime


class OutcomeCounts(BaseModel):
    """Row counts of a finished import (export jobs fill total and success only)."""

    total_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    detail_success_count: int = 0
    detail_failure_count: int = 0
    warning_count: int = 0


class JobListItem(OutcomeCounts):
    job_id: str
    job_type: JobTypeEnum
    status: JobStatusEnum
    record_type: str
    import_mode: Optional[ImportMode] = Field(None, description="Mode the import ran under")
    file_name: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobStatusResponse(JobListItem):
    """Job row plus its latest progress and the stored outcome or error."""

    started_at: Optional[datetime] = None
    progress: Optional[JobProgressResponse] = None
    result: Optional[Dict[str, Any]] = Field(None, description="ImportOutcome dictionary or export file info")
    error: Optional[Dict[str, Any]] = None


class JobCreateResponse(BaseModel):
    job_id: str
    message: str = "Job created successfully"
    status_url: str
    websocket_url: str


class JobListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    total_pages: int
    items: List[JobListItem]
