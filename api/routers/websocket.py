"""
WebSocket router - Real-time progress updates.

This module provides the WebSocket endpoint that streams import job
progress until the job reaches a terminal status.
"""

import json
import logging
import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Depends, status

from api.dependencies import get_import_engine, redis_client
from backend.models.job import ImportJobStatus
from services.errors import JobNotFoundError
from services.import_engine import ImportEngine

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(tags=['websocket'])

POLL_INTERVAL_SECONDS = 0.5


@router.websocket('/ws/import/{job_id}')
async def websocket_import_progress(
    websocket: WebSocket,
    job_id: str,
    engine: ImportEngine = Depends(get_import_engine)
):
    """
    WebSocket endpoint for real-time import progress updates.

    Sends JSON messages while the job runs:
    - status changes
    - progress (stage, percent, message) published by the worker
    - a final message with the summary once the job is finished

    **Message Format:**
    ```json
    {
        "jobId": "4b7f0c5e-...",
        "status": "processing",
        "processedRows": 120,
        "totalRows": 200,
        "progress": {"stage": "processing", "percent": 60.0, "message": "Processed 120 of 200 rows"}
    }
    ```

    **Final Message:**
    ```json
    {
        "jobId": "4b7f0c5e-...",
        "status": "completed",
        "completedAt": "2025-10-15T12:31:00",
        "summary": {"totalRows": 200, "created": 150, "updated": 0, "skipped": 50, "failed": 0},
        "errorMessage": null
    }
    ```
    """
    await websocket.accept()
    logger.info(f"WebSocket connection established for job {job_id}")

    try:
        try:
            job = engine.get_job(job_id)
        except JobNotFoundError:
            await websocket.send_json({
                'error': f'Job {job_id} not found',
                'jobId': job_id
            })
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.send_json({
            'jobId': job_id,
            'status': job.status,
            'message': 'Connected to job progress stream'
        })

        last_progress = None
        last_status = job.status
        last_processed = job.processed_rows

        while True:
            job = engine.get_job(job_id)

            if job.status != last_status or job.processed_rows != last_processed:
                await websocket.send_json({
                    'jobId': job_id,
                    'status': job.status,
                    'processedRows': job.processed_rows,
                    'totalRows': job.total_rows,
                })
                last_status = job.status
                last_processed = job.processed_rows

            try:
                progress_data = redis_client.get(f'job_progress:{job_id}')
                if progress_data:
                    progress = json.loads(progress_data)
                    if progress != last_progress:
                        await websocket.send_json({
                            'jobId': job_id,
                            'status': job.status,
                            'progress': progress
                        })
                        last_progress = progress
            except Exception as e:
                logger.warning(f"Error reading progress from Redis for {job_id}: {e}")

            if job.is_terminal() or job.status == ImportJobStatus.VALIDATED.value:
                await websocket.send_json({
                    'jobId': job_id,
                    'status': job.status,
                    'completedAt': job.completed_at.isoformat() if job.completed_at else None,
                    'summary': job.summary(),
                    'errorMessage': job.error_message
                })
                logger.info(f"Job {job_id} reached {job.status}, closing progress stream")
                break

            await asyncio.sleep(POLL_INTERVAL_SECONDS)

        await websocket.close()
        logger.info(f"WebSocket connection closed for job {job_id}")

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected from job {job_id}")
