"""
Export router - Export records as CSV or XLSX.

Large exports run as background jobs that write into EXPORT_DIR; small
ones can be downloaded directly.
"""

import io
import logging
import uuid
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from api.dependencies import get_db, get_current_user, resolve_record_type
from api.schemas.export_schema import ExportRequest, ExportStartResponse
from backend.models.exchange_registry import create_export_service
from backend.models.job import JobRun, JobStatus, JobType
from services.exchange_models import ExportFormat, ExportOptions
from tasks.import_tasks import export_records

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/export', tags=['export'])


@router.post('/{record_type}', response_model=ExportStartResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_export(
    record_type: str,
    request: Optional[ExportRequest] = None,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user)
):
    """
    Start a background export of every record of a type.

    The finished file path is stored on the job result.
    """
    target_type = resolve_record_type(record_type)
    request = request or ExportRequest()
    options = request.model_dump(mode='json', exclude_none=True)

    try:
        job_id = str(uuid.uuid4())
        db.add(JobRun(
            job_id=job_id,
            job_type=JobType.EXPORT.value,
            status=JobStatus.PENDING.value,
            record_type=target_type.__name__,
            options=options
        ))
        db.commit()

        export_records.apply_async(args=[target_type.__name__, options], task_id=job_id)

    except Exception as e:
        logger.error(f"Could not start export of {record_type}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Export failed to start: {str(e)}"
        )

    logger.info(f"Started export task {job_id} for {target_type.__name__} (requested by {current_user})")

    return ExportStartResponse(
        job_id=job_id,
        message="Export job started",
        status_url=f"/api/import/job/{job_id}",
        websocket_url=f"/ws/jobs/{job_id}"
    )


@router.get('/{record_type}/download')
def download_export(
    record_type: str,
    format: ExportFormat = Query(ExportFormat.XLSX, description="Output format"),
    include_headers: bool = Query(True, description="Write a header row"),
    sheet_name: Optional[str] = Query(None, description="Main sheet name (xlsx)"),
    file_name: Optional[str] = Query(None, description="Base name of the generated file"),
    db: Session = Depends(get_db)
):
    """Export every record of a type and stream the file back."""
    target_type = resolve_record_type(record_type)
    options = ExportOptions(format=format, include_headers=include_headers,
                            sheet_name=sheet_name, file_name=file_name)

    records = db.query(target_type).all()
    result = create_export_service().export_data(records, target_type, options)

    if not result.is_success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error_message)

    logger.info(f"Streaming {result.record_count} {target_type.__name__} records as {result.file_name}")

    return StreamingResponse(
        io.BytesIO(result.content),
        media_type=result.mime_type,
        headers={'Content-Disposition': f"attachment; filename*=UTF-8''{quote(result.file_name)}"}
    )
