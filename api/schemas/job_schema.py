"""
Job-related Pydantic schemas.

This module contains schemas for import job status, progress, row results
and history.
"""

from typing import Dict, List, Optional
from pydantic import Field
from datetime import datetime

from api.schemas.common import CamelModel
from backend.models.job import DuplicateAction, ImportJobStatus, RowStatus


class JobProgressResponse(CamelModel):
    """Real-time progress update."""

    stage: str = Field(..., description="Current stage (e.g., 'validating', 'processing')")
    percent: float = Field(..., ge=0, le=100, description="Progress percentage")
    message: str = Field(..., description="Human-readable progress message")
    timestamp: datetime = Field(..., description="Progress update timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "stage": "processing",
                "percent": 65.5,
                "message": "Processed 131 of 200 rows",
                "timestamp": "2025-10-15T12:30:45Z"
            }
        }


class RowErrorSchema(CamelModel):
    """A validation error or warning on one row."""

    row: int
    field: str
    message: str
    value: Optional[str] = None


class RowResultSchema(CamelModel):
    """Outcome of one processed row."""

    row: int
    status: RowStatus
    product_id: Optional[str] = None
    sku: Optional[str] = None
    name: Optional[str] = None
    error: Optional[str] = None


class ImportSummarySchema(CamelModel):
    """Counters view of a job."""

    total_rows: int
    created: int
    updated: int
    skipped: int
    failed: int


class ImportJobResponse(CamelModel):
    """Persisted shape of an import job."""

    id: str = Field(..., description="Import job identifier")
    business_id: str
    status: ImportJobStatus = Field(..., description="Current job status")
    file_name: str
    file_type: str
    file_size: int
    total_rows: int
    processed_rows: int
    created_count: int
    updated_count: int
    skipped_count: int
    failed_count: int
    duplicate_action: DuplicateAction
    column_mapping: Optional[Dict[str, str]] = None
    errors: List[RowErrorSchema] = Field(default_factory=list)
    warnings: List[RowErrorSchema] = Field(default_factory=list)
    results: List[RowResultSchema] = Field(default_factory=list)
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rollback_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "4b7f0c5e-2f7a-4c1e-9d8e-1f2a3b4c5d6e",
                "businessId": "biz-001",
                "status": "completed",
                "fileName": "products.csv",
                "fileType": "csv",
                "fileSize": 2048,
                "totalRows": 3,
                "processedRows": 3,
                "createdCount": 2,
                "updatedCount": 0,
                "skippedCount": 1,
                "failedCount": 0,
                "duplicateAction": "skip",
                "columnMapping": {"Product": "name", "Price": "sellingPrice"},
                "errors": [],
                "warnings": [],
                "results": [{"row": 2, "status": "created", "productId": "...", "sku": "SKU-001"}],
                "errorMessage": None,
                "createdAt": "2025-10-15T12:00:00Z",
                "startedAt": "2025-10-15T12:00:05Z",
                "completedAt": "2025-10-15T12:00:07Z",
                "rollbackAt": None
            }
        }


class JobStatusResponse(ImportJobResponse):
    """Job record plus derived summary and the latest cached progress."""

    summary: ImportSummarySchema
    progress: Optional[JobProgressResponse] = Field(None, description="Latest progress update")


class JobHistoryResponse(CamelModel):
    """Paginated import history of a business."""

    jobs: List[ImportJobResponse] = Field(..., description="Jobs in current page, newest first")
    total: int = Field(..., description="Total number of jobs")
    page: int = Field(..., description="Current page number")
    limit: int = Field(..., description="Items per page")
    total_pages: int = Field(..., description="Total number of pages")
