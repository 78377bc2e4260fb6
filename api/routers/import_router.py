"""
Import router - Handle tabular file uploads, job tracking and the record type catalogue.

This module provides endpoints for uploading CSV/XLSX files, checking the
status of import and export jobs, and describing the importable types.
"""

import os
import logging
import tempfile
import shutil
import json
import uuid
from pathlib import Path
from datetime import datetime
from typing import List, Optional

import redis
from fastapi import APIRouter, UploadFile, File, Form, Depends, HTTPException, status, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from api.config import settings
from api.dependencies import (
    get_db, get_current_user, resolve_record_type, verify_file_extension, verify_file_size
)
from api.schemas.common import PaginationParams
from api.schemas.import_schema import FieldInfoResponse, ImportStartResponse, RecordTypeResponse
from api.schemas.job_schema import JobStatusResponse, JobProgressResponse, JobListResponse, JobListItem
from backend.models.exchange_registry import get_registry
from backend.models.job import JobRun, JobType, JobStatus
from services.exchange_models import ImportMode, ImportOptions
from services.import_service import ImportService
from tasks.import_tasks import import_tabular_file

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/import', tags=['import'])

# Redis client for progress tracking
redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


@router.post('/upload', response_model=ImportStartResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_file(
    file: UploadFile = File(..., description="CSV or XLSX file to import"),
    record_type: str = Form(..., min_length=1, max_length=100, description="Registered record type"),
    mode: Optional[ImportMode] = Form(None, description="Import mode (class default when omitted)"),
    has_header_row: bool = Form(True, description="Whether the first row holds column names"),
    max_errors: int = Form(settings.DEFAULT_MAX_ERRORS, ge=1, description="Stop after this many errors"),
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user)
):
    """
    Upload a file and queue its import.

    The job row records the mode the import will run under: the caller's
    mode, otherwise the one implied by the type's duplicate strategy.
    """
    logger.info(f"Upload request from {current_user}: {file.filename} as {record_type}")

    target_type = resolve_record_type(record_type)
    verify_file_extension(file.filename)

    temp_file = None
    try:
        fd, temp_path = tempfile.mkstemp(
            suffix=Path(file.filename).suffix,
            dir=settings.TEMP_UPLOAD_DIR
        )

        with os.fdopen(fd, 'wb') as tmp:
            shutil.copyfileobj(file.file, tmp)

        temp_file = temp_path

        file_size = os.path.getsize(temp_path)
        verify_file_size(file_size)

        logger.info(f"File saved to {temp_path} ({file_size / 1024:.1f} KB)")

        # Only forward the options the caller chose so class defaults still apply
        options = {
            'has_header_row': has_header_row,
            'max_errors': max_errors,
            'batch_size': settings.DEFAULT_BATCH_SIZE,
        }
        if mode is not None:
            options['mode'] = mode.value

        registry = get_registry()
        import_mode = ImportService.effective_options(
            ImportOptions(**options), registry.get_configuration(target_type)
        ).mode

        # The row is committed before the task is queued so the worker always finds it
        job_id = str(uuid.uuid4())
        db.add(JobRun(
            job_id=job_id,
            job_type=JobType.IMPORT.value,
            status=JobStatus.PENDING.value,
            record_type=target_type.__name__,
            import_mode=import_mode.value,
            file_name=file.filename,
            options=options
        ))
        db.commit()

        import_tabular_file.apply_async(
            args=[temp_path, target_type.__name__, options, file.filename],
            task_id=job_id
        )

        logger.info(f"Started import task {job_id} ({import_mode.value}) for file: {file.filename}")

        return ImportStartResponse(
            job_id=job_id,
            message="Import job started",
            status_url=f"/api/import/job/{job_id}",
            websocket_url=f"/ws/jobs/{job_id}",
            record_type=target_type.__name__,
            import_mode=import_mode
        )

    except HTTPException:
        if temp_file and os.path.exists(temp_file):
            os.unlink(temp_file)
        raise

    except Exception as e:
        if temp_file and os.path.exists(temp_file):
            os.unlink(temp_file)

        logger.error(f"Upload failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Upload failed: {str(e)}"
        )


@router.get('/job/{job_id}', response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    db: Session = Depends(get_db)
):
    """
    Status of an import or export job with its outcome counts.

    The latest progress comes from Redis while the job runs, otherwise from
    the last persisted progress row.
    """
    job_run = db.query(JobRun).filter_by(job_id=job_id).first()

    if not job_run:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found"
        )

    progress = None
    try:
        progress_data = redis_client.get(f'job_progress:{job_id}')
        if progress_data:
            progress = JobProgressResponse(**json.loads(progress_data))
    except Exception as e:
        logger.warning(f"Could not fetch progress from Redis for {job_id}: {e}")

    if not progress and job_run.progress:
        latest_progress = job_run.progress[-1]
        progress = JobProgressResponse(
            stage=latest_progress.stage,
            percent=float(latest_progress.percent),
            message=latest_progress.message or "",
            timestamp=latest_progress.timestamp
        )

    return JobStatusResponse(
        **JobListItem.model_validate(job_run).model_dump(),
        started_at=job_run.started_at,
        progress=progress,
        result=job_run.result,
        error=job_run.error
    )


@router.get('/jobs', response_model=JobListResponse)
async def list_jobs(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=100, description="Items per page"),
    job_type: Optional[str] = Query(None, description="Filter by job type (import/export)"),
    status: Optional[str] = Query(None, description="Filter by status"),
    record_type: Optional[str] = Query(None, description="Filter by record type"),
    import_mode: Optional[ImportMode] = Query(None, description="Filter imports by mode"),
    db: Session = Depends(get_db)
):
    """List jobs, newest first, with their outcome counts."""
    pagination = PaginationParams(page=page, page_size=page_size)
    query = db.query(JobRun)

    if job_type:
        query = query.filter_by(job_type=job_type)
    if status:
        query = query.filter_by(status=status)
    if record_type:
        query = query.filter_by(record_type=record_type)
    if import_mode:
        query = query.filter_by(import_mode=import_mode.value)

    total = query.count()

    jobs = query.order_by(JobRun.created_at.desc())\
        .offset(pagination.offset)\
        .limit(pagination.page_size)\
        .all()

    return JobListResponse(
        total=total,
        page=page,
        page_size=page_size,
        total_pages=pagination.page_count(total),
        items=[JobListItem.model_validate(job) for job in jobs]
    )


@router.delete('/job/{job_id}', status_code=status.HTTP_204_NO_CONTENT)
async def cancel_job(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user)
):
    """Cancel a pending or processing job; finished jobs answer 400."""
    job_run = db.query(JobRun).filter_by(job_id=job_id).first()

    if not job_run:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found"
        )

    if job_run.status not in [JobStatus.PENDING, JobStatus.PROCESSING]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot cancel job with status '{job_run.status}'"
        )

    job_run.status = JobStatus.CANCELLED.value
    job_run.completed_at = datetime.utcnow()
    job_run.error = {
        'error': 'Job cancelled by user',
        'cancelled_by': current_user,
        'cancelled_at': datetime.utcnow().isoformat()
    }

    db.commit()

    try:
        from tasks.celery_app import celery_app
        celery_app.control.revoke(job_id, terminate=True)
        logger.info(f"Revoked Celery task {job_id}")
    except Exception as e:
        logger.warning(f"Could not revoke Celery task {job_id}: {e}")

    logger.info(f"Job {job_id} cancelled by {current_user}")

    return None


@router.get('/types', response_model=List[RecordTypeResponse])
async def list_record_types():
    """List the registered record types and their exchange settings."""
    registry = get_registry()
    items = []
    for record_type in registry.registered_types():
        type_config = registry.get_configuration(record_type)
        items.append(RecordTypeResponse(
            name=type_config.type_name,
            sheet_name=type_config.class_config.sheet_name,
            import_enabled=type_config.class_config.import_enabled,
            export_enabled=type_config.class_config.export_enabled,
            identity_field=type_config.identity_field,
            field_count=len(type_config.fields)
        ))
    return items


@router.get('/types/{record_type}/fields', response_model=List[FieldInfoResponse])
async def get_type_fields(record_type: str):
    """Describe the exchangeable fields of a record type."""
    target_type = resolve_record_type(record_type)
    return [FieldInfoResponse(**info) for info in get_registry().get_field_info(target_type)]


@router.get('/types/{record_type}/template')
async def get_import_template(record_type: str):
    """Download a header-only CSV template for a record type."""
    target_type = resolve_record_type(record_type)
    header = get_registry().get_import_template(target_type)
    return Response(
        content=('\ufeff' + header + '\r\n').encode('utf-8'),
        media_type='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{target_type.__name__}_template.csv"'}
    )
