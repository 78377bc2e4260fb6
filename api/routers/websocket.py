"""
WebSocket router - live progress of exchange jobs.

While a job runs the stream carries status changes and progress steps. Once
it finishes, the leading import warnings arrive one message each, followed
by a final message with the job's outcome counts.
"""

import json
import logging
import asyncio
from typing import Any, Dict

import redis
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Depends, status
from sqlalchemy.orm import Session

from api.config import settings
from api.dependencies import get_db
from backend.models.job import JobRun, JobStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=['websocket'])

redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)

# Seconds between status/progress polls
POLL_INTERVAL = 0.5

# Warnings pushed individually after an import finishes
MAX_STREAMED_WARNINGS = 50


def final_message(job_run: JobRun) -> Dict[str, Any]:
    """Outcome counts of a finished job plus its stored result or error."""
    message = job_run.summary()
    message['result'] = job_run.result
    if job_run.status != JobStatus.SUCCESS:
        message['error'] = job_run.error
    return message


@router.websocket('/ws/jobs/{job_id}')
async def websocket_job_progress(
    websocket: WebSocket,
    job_id: str,
    db: Session = Depends(get_db)
):
    await websocket.accept()
    logger.info(f"WebSocket connection established for job {job_id}")

    try:
        job_run = db.query(JobRun).filter_by(job_id=job_id).first()
        if not job_run:
            await websocket.send_json({'error': f'Job {job_id} not found', 'job_id': job_id})
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.send_json({
            'job_id': job_id,
            'status': job_run.status,
            'record_type': job_run.record_type,
            'import_mode': job_run.import_mode
        })

        last_progress = None
        last_status = job_run.status

        while not job_run.is_complete():
            await asyncio.sleep(POLL_INTERVAL)
            db.refresh(job_run)

            if job_run.status != last_status:
                await websocket.send_json({'job_id': job_id, 'status': job_run.status})
                last_status = job_run.status

            try:
                progress_data = redis_client.get(f'job_progress:{job_id}')
            except redis.RedisError as e:
                logger.warning(f"Error reading progress from Redis for {job_id}: {e}")
                continue

            if progress_data:
                progress = json.loads(progress_data)
                if progress != last_progress:
                    await websocket.send_json({'job_id': job_id, 'status': job_run.status, 'progress': progress})
                    last_progress = progress

        for warning in job_run.first_warnings(MAX_STREAMED_WARNINGS):
            await websocket.send_json({'job_id': job_id, 'warning': warning})

        await websocket.send_json(final_message(job_run))
        logger.info(f"Job {job_id} finished as {job_run.status}: "
                    f"{job_run.success_count}/{job_run.total_count} rows, {job_run.warning_count} warnings")

        await websocket.close()

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected from job {job_id}")

    except Exception as e:
        logger.error(f"WebSocket error for job {job_id}: {e}", exc_info=True)
        try:
            await websocket.send_json({'error': str(e), 'job_id': job_id})
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        except RuntimeError as close_error:
            logger.debug(f"WebSocket for job {job_id} already closed: {close_error}")
