"""
Import-related Pydantic schemas.

This module contains schemas for validation, duplicate checks and
starting an import.
"""

from typing import Any, Dict, List, Optional
from pydantic import Field

from api.schemas.common import CamelModel
from api.schemas.job_schema import RowErrorSchema
from backend.models.job import DuplicateAction, ImportJobStatus


class ValidationSchema(CamelModel):
    """Outcome of row validation."""

    is_valid: bool
    errors: List[RowErrorSchema] = Field(default_factory=list)
    warnings: List[RowErrorSchema] = Field(default_factory=list)
    valid_rows: int
    total_rows: int


class ValidationResponse(CamelModel):
    """Response of POST /import/validate."""

    job_id: str = Field(..., description="Import job created for this upload")
    headers: List[str]
    suggested_mapping: Dict[str, str] = Field(..., description="Header -> product field key")
    column_mapping: Dict[str, str] = Field(..., description="Mapping the rows were validated with")
    sample_data: List[Dict[str, Any]] = Field(..., description="First mapped rows")
    validation: ValidationSchema
    total_rows: int

    class Config:
        json_schema_extra = {
            "example": {
                "jobId": "4b7f0c5e-2f7a-4c1e-9d8e-1f2a3b4c5d6e",
                "headers": ["Product", "Price", "Qty"],
                "suggestedMapping": {"Product": "name", "Price": "sellingPrice", "Qty": "quantity"},
                "columnMapping": {"Product": "name", "Price": "sellingPrice", "Qty": "quantity"},
                "sampleData": [{"rowNumber": 2, "name": "Widget", "sellingPrice": "9.99", "quantity": "5"}],
                "validation": {"isValid": True, "errors": [], "warnings": [], "validRows": 1, "totalRows": 1},
                "totalRows": 1
            }
        }


class ExistingProductSchema(CamelModel):
    id: str
    name: str
    sku: str


class DuplicateSchema(CamelModel):
    row: int
    match_field: str
    match_value: str
    existing_product: ExistingProductSchema


class DuplicateCheckResponse(CamelModel):
    """Response of POST /import/check-duplicates."""

    total_rows: int
    duplicate_count: int
    unique_count: int
    duplicates: List[DuplicateSchema] = Field(default_factory=list)


class StartImportRequest(CamelModel):
    """Confirmed options for processing a validated job."""

    column_mapping: Optional[Dict[str, Optional[str]]] = Field(
        None, description="Header -> product field key; the validated mapping is used when omitted"
    )
    duplicate_action: DuplicateAction = Field(
        DuplicateAction.SKIP, description="How rows matching existing products are resolved"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "columnMapping": {"Product": "name", "Price": "sellingPrice", "Qty": "quantity"},
                "duplicateAction": "update"
            }
        }


class ImportStartResponse(CamelModel):
    """Response when processing is queued."""

    job_id: str = Field(..., description="Import job identifier")
    status: ImportJobStatus
    message: str = Field(default="Import job started", description="Success message")
    status_url: str = Field(..., description="URL to check job status")
    websocket_url: str = Field(..., description="WebSocket URL for real-time updates")

    class Config:
        json_schema_extra = {
            "example": {
                "jobId": "4b7f0c5e-2f7a-4c1e-9d8e-1f2a3b4c5d6e",
                "status": "processing",
                "message": "Import job started",
                "statusUrl": "/api/import/job/4b7f0c5e-2f7a-4c1e-9d8e-1f2a3b4c5d6e",
                "websocketUrl": "/ws/import/4b7f0c5e-2f7a-4c1e-9d8e-1f2a3b4c5d6e"
            }
        }
