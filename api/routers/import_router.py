"""
Import router - Validate uploads, run imports and track jobs.

This module provides the product import endpoints: template download,
validation, duplicate check, start, status, cancel, rollback and history.
Every endpoint is scoped to the business named in the X-Business-Id header.
"""

import json
import logging
from typing import Dict, Optional

from fastapi import APIRouter, UploadFile, File, Form, Depends, HTTPException, status, Query
from fastapi.responses import Response

from api.dependencies import (
    get_business_id, get_current_user, get_import_engine, get_storage_service,
    redis_client, verify_file_extension, verify_file_size
)
from api.schemas.import_schema import (
    DuplicateCheckResponse, ImportStartResponse, StartImportRequest, ValidationResponse
)
from api.schemas.job_schema import (
    ImportJobResponse, JobHistoryResponse, JobProgressResponse, JobStatusResponse
)
from backend.models.job import ImportJob
from services.errors import (
    CatalogUnavailableError, InvalidTransition, JobConflictError, JobNotFoundError,
    MappingError, RollbackNotAllowedError, StructuralImportError
)
from services.file_decoder import decode_file, file_type_for
from services.import_engine import ImportEngine, generate_template
from services.storage_service import StorageService
from tasks.import_tasks import process_import_job

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix='/import', tags=['import'])


def _parse_mapping(column_mapping: Optional[str]) -> Optional[Dict[str, str]]:
    """Decode the JSON column mapping sent as a form field."""
    if not column_mapping:
        return None
    try:
        mapping = json.loads(column_mapping)
    except json.JSONDecodeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"columnMapping is not valid JSON: {e}"
        )
    if not isinstance(mapping, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="columnMapping must be a JSON object of header -> field key"
        )
    return mapping


def _structural_error(e: StructuralImportError) -> HTTPException:
    detail = {'message': str(e)}
    if e.job_id:
        detail['jobId'] = e.job_id
    if isinstance(e, MappingError) and e.missing_fields:
        detail['missingFields'] = e.missing_fields
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _lifecycle_error(e: Exception) -> HTTPException:
    """Translate engine job-level errors into HTTP errors."""
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (JobConflictError, InvalidTransition, RollbackNotAllowedError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, StructuralImportError):
        return _structural_error(e)
    if isinstance(e, CatalogUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    raise e


def _job_response(job: ImportJob) -> ImportJobResponse:
    return ImportJobResponse.model_validate(job.to_dict())


def _cached_progress(job_id: str) -> Optional[JobProgressResponse]:
    try:
        progress_data = redis_client.get(f'job_progress:{job_id}')
        if progress_data:
            return JobProgressResponse(**json.loads(progress_data))
    except Exception as e:
        logger.warning(f"Could not fetch progress from Redis for {job_id}: {e}")
    return None


@router.get('/template')
async def download_template():
    """
    Download a CSV template with every importable column and one sample row.
    """
    return Response(
        content=generate_template(),
        media_type='text/csv',
        headers={'Content-Disposition': 'attachment; filename="product_import_template.csv"'}
    )


@router.post('/validate', response_model=ValidationResponse)
async def validate_upload(
    file: UploadFile = File(..., description="CSV or Excel file (.csv, .xlsx, .xlsm)"),
    column_mapping: Optional[str] = Form(None, alias='columnMapping',
                                         description="JSON object of header -> field key"),
    business_id: str = Depends(get_business_id),
    current_user: str = Depends(get_current_user),
    engine: ImportEngine = Depends(get_import_engine),
    storage: StorageService = Depends(get_storage_service)
):
    """
    Upload a file, create an import job and validate every row.

    The job ends in `validated` (even with row errors) or `failed` when the
    file is structurally unusable: unreadable, over the row limit, or a
    required field (name, sellingPrice) has no column.

    **Returns:**
    - Headers, suggested mapping, the first rows after mapping
    - Every row error and warning
    - The job id to start processing with
    """
    logger.info(f"Validate request from {current_user} for business {business_id}: {file.filename}")

    verify_file_extension(file.filename)
    content = await file.read()
    verify_file_size(len(content))
    mapping = _parse_mapping(column_mapping)
    file_type = file_type_for(file.filename)

    file_path = storage.save_upload(content, file.filename)
    try:
        report = engine.validate(
            business_id=business_id,
            file_name=file.filename,
            file_type=file_type,
            file_size=len(content),
            read_rows=lambda: decode_file(content, file_type),
            column_mapping=mapping,
            created_by=current_user,
            file_path=file_path,
        )
    except StructuralImportError as e:
        storage.delete_file(file_path)
        raise _structural_error(e)
    except Exception:
        storage.delete_file(file_path)
        raise

    return ValidationResponse.model_validate(report.to_dict())


@router.post('/check-duplicates', response_model=DuplicateCheckResponse)
async def check_duplicates(
    file: UploadFile = File(..., description="CSV or Excel file (.csv, .xlsx, .xlsm)"),
    column_mapping: Optional[str] = Form(None, alias='columnMapping',
                                         description="JSON object of header -> field key"),
    business_id: str = Depends(get_business_id),
    engine: ImportEngine = Depends(get_import_engine)
):
    """
    Report which rows of a file match existing products (by SKU, then
    barcode, then name). Nothing is written.
    """
    verify_file_extension(file.filename)
    content = await file.read()
    verify_file_size(len(content))
    mapping = _parse_mapping(column_mapping)

    try:
        decoded = decode_file(content, file_type_for(file.filename))
        result = engine.check_duplicates(business_id, decoded.headers, decoded.rows, mapping,
                                          decoded.row_numbers)
    except (StructuralImportError, CatalogUnavailableError) as e:
        raise _lifecycle_error(e)

    return DuplicateCheckResponse.model_validate(result.to_dict())


@router.post('/job/{job_id}/start', response_model=ImportStartResponse,
             status_code=status.HTTP_202_ACCEPTED)
async def start_import(
    job_id: str,
    request: StartImportRequest,
    business_id: str = Depends(get_business_id),
    current_user: str = Depends(get_current_user),
    engine: ImportEngine = Depends(get_import_engine)
):
    """
    Confirm the column mapping and duplicate policy of a validated job and
    queue it for processing.

    **Progress Tracking:**
    - Poll GET /api/import/job/{job_id} for status
    - Connect to WebSocket /ws/import/{job_id} for real-time updates

    **Returns:**
    - 202 Accepted
    - 404 unknown job, 409 job not in `validated` or already running,
      400 unusable mapping
    """
    mapping = None
    if request.column_mapping is not None:
        mapping = {header: key for header, key in request.column_mapping.items() if key}

    try:
        job = engine.start_processing(job_id, mapping, request.duplicate_action, business_id=business_id)
    except (JobNotFoundError, JobConflictError, InvalidTransition, StructuralImportError) as e:
        raise _lifecycle_error(e)

    try:
        process_import_job.apply_async(args=[job_id])
    except Exception as e:
        logger.error(f"Could not queue import job {job_id}: {e}", exc_info=True)
        engine.abandon(job_id, f"Could not queue import: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Import queue unavailable"
        )

    logger.info(f"Import job {job_id} started by {current_user} ({job.duplicate_action})")

    return ImportStartResponse(
        job_id=job_id,
        status=job.status,
        message="Import job started",
        status_url=f"/api/import/job/{job_id}",
        websocket_url=f"/ws/import/{job_id}"
    )


@router.get('/job/{job_id}', response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    business_id: str = Depends(get_business_id),
    engine: ImportEngine = Depends(get_import_engine)
):
    """
    Get the current state of an import job.

    Returns the persisted job (counters, row results, errors and
    warnings), its summary and the latest progress update.

    **Status Values:**
    - `pending`, `validating`, `validated`: before processing
    - `processing`: rows are being applied
    - `completed`, `failed`, `cancelled`: finished, may be rolled back
    - `rolled_back`: changes reverted
    """
    try:
        job = engine.get_job(job_id, business_id)
    except JobNotFoundError as e:
        raise _lifecycle_error(e)

    data = job.to_dict()
    data['summary'] = job.summary()
    data['progress'] = _cached_progress(job_id)
    return JobStatusResponse.model_validate(data)


@router.post('/job/{job_id}/cancel', response_model=ImportJobResponse)
async def cancel_import(
    job_id: str,
    business_id: str = Depends(get_business_id),
    current_user: str = Depends(get_current_user),
    engine: ImportEngine = Depends(get_import_engine)
):
    """
    Ask a processing job to stop.

    Rows already being applied finish; no new rows start. The job becomes
    `cancelled` once the worker observes the request.

    **Returns:**
    - The job as it is now (still `processing`)
    - 409 if the job is not processing
    """
    try:
        job = engine.cancel(job_id, business_id)
    except (JobNotFoundError, InvalidTransition) as e:
        raise _lifecycle_error(e)

    logger.info(f"Import job {job_id} cancellation requested by {current_user}")
    return _job_response(job)


@router.post('/job/{job_id}/rollback', response_model=ImportJobResponse)
async def rollback_import(
    job_id: str,
    business_id: str = Depends(get_business_id),
    current_user: str = Depends(get_current_user),
    engine: ImportEngine = Depends(get_import_engine)
):
    """
    Revert a finished import: delete the products it created and restore
    the products it updated.

    **Returns:**
    - The job in `rolled_back`; `errorMessage` names rows that could not
      be reverted
    - 409 if the job is still running, was never finished, has nothing
      to revert, or is past the rollback window
    """
    try:
        job = engine.rollback(job_id, business_id)
    except (JobNotFoundError, JobConflictError, InvalidTransition, RollbackNotAllowedError) as e:
        raise _lifecycle_error(e)

    logger.info(f"Import job {job_id} rolled back by {current_user}")
    return _job_response(job)


@router.get('/history', response_model=JobHistoryResponse)
async def import_history(
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, le=100, description="Items per page"),
    business_id: str = Depends(get_business_id),
    engine: ImportEngine = Depends(get_import_engine)
):
    """
    List the business's import jobs, newest first.

    **Example:**
    ```bash
    curl -H "X-Business-Id: biz-001" "http://localhost:8000/api/import/history?page=1&limit=20"
    ```
    """
    return JobHistoryResponse.model_validate(engine.list_history(business_id, page, limit))
