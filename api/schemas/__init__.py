"""
Pydantic schemas for request/response validation.

This package contains all Pydantic models used for API request validation
and response serialization.
"""

from api.schemas.common import CamelModel, ErrorResponse, HealthCheckResponse
from api.schemas.job_schema import (
    JobProgressResponse, RowErrorSchema, RowResultSchema, ImportSummarySchema,
    ImportJobResponse, JobStatusResponse, JobHistoryResponse
)
from api.schemas.import_schema import (
    ValidationSchema, ValidationResponse, DuplicateCheckResponse,
    StartImportRequest, ImportStartResponse
)

__all__ = [
    # Common
    'CamelModel',
    'ErrorResponse',
    'HealthCheckResponse',

    # Job
    'JobProgressResponse',
    'RowErrorSchema',
    'RowResultSchema',
    'ImportSummarySchema',
    'ImportJobResponse',
    'JobStatusResponse',
    'JobHistoryResponse',

    # Import
    'ValidationSchema',
    'ValidationResponse',
    'DuplicateCheckResponse',
    'StartImportRequest',
    'ImportStartResponse',
]
