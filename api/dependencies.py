"""
Dependency injection utilities for FastAPI.

This module provides reusable dependencies for database sessions,
authentication, business scoping and the import engine.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

import redis
from fastapi import Depends, HTTPException, Header, status
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from api.config import settings
from services.cancellation import RedisCancellationRegistry
from services.import_engine import ImportEngine
from services.storage_service import StorageService

logger = logging.getLogger(__name__)


def engine_options(database_url: str) -> dict:
    """Engine keyword arguments; SQLite does not take pool sizing."""
    options = {
        'pool_pre_ping': settings.DB_POOL_PRE_PING,
        'echo': settings.DEBUG,
    }
    if not database_url.startswith('sqlite'):
        options['pool_size'] = settings.DB_POOL_SIZE
        options['max_overflow'] = settings.DB_MAX_OVERFLOW
    return options


# Create database engine
engine = create_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Redis client for progress and cancellation signals
redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


@lru_cache()
def get_import_engine() -> ImportEngine:
    """
    Shared ImportEngine for request handlers.

    Cancellation goes through Redis so a request handled here reaches the
    Celery worker that runs the job.
    """
    return ImportEngine(
        SessionLocal,
        cancellation=RedisCancellationRegistry(redis_client, ttl=settings.CANCEL_SIGNAL_TTL),
        max_rows=settings.MAX_IMPORT_ROWS,
        max_workers=settings.IMPORT_MAX_WORKERS,
        fuzzy_threshold=settings.FUZZY_MATCH_THRESHOLD,
        rollback_window_hours=settings.ROLLBACK_WINDOW_HOURS,
        sample_rows=settings.SAMPLE_ROWS,
    )


@lru_cache()
def get_storage_service() -> StorageService:
    """Upload storage rooted at TEMP_UPLOAD_DIR."""
    return StorageService(upload_dir=settings.TEMP_UPLOAD_DIR)


def get_api_key(
    x_api_key: str = Header(None, alias=settings.API_KEY_HEADER)
) -> str:
    """
    Validate API key from header.

    Args:
        x_api_key: API key from request header

    Returns:
        Validated API key

    Raises:
        HTTPException: If API key is invalid or missing
    """
    if not settings.ENABLE_API_KEY_AUTH:
        # API key auth disabled - allow all requests
        return "public"

    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    return x_api_key


def get_current_user(api_key: str = Depends(get_api_key)) -> str:
    """
    Get current user from API key.

    Args:
        api_key: Validated API key

    Returns:
        User identifier (the API key itself)
    """
    return api_key


def get_business_id(
    x_business_id: Optional[str] = Header(None, alias=settings.BUSINESS_ID_HEADER)
) -> str:
    """
    Business scope of the request.

    Every import job and product belongs to exactly one business.

    Raises:
        HTTPException: 400 if the header is missing or blank
    """
    if not x_business_id or not x_business_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{settings.BUSINESS_ID_HEADER} header is required"
        )
    return x_business_id.strip()


def verify_file_size(file_size: int) -> bool:
    """
    Verify uploaded file size is within limit.

    Args:
        file_size: File size in bytes

    Returns:
        True if size is acceptable

    Raises:
        HTTPException: If file is too large
    """
    max_size_bytes = settings.MAX_FILE_SIZE_MB * 1024 * 1024

    if file_size > max_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size ({file_size / 1024 / 1024:.1f} MB) exceeds maximum allowed "
                   f"({settings.MAX_FILE_SIZE_MB} MB)"
        )

    return True


def verify_file_extension(filename: str) -> bool:
    """
    Verify file has allowed extension.

    Args:
        filename: Name of uploaded file

    Returns:
        True if extension is allowed

    Raises:
        HTTPException: If extension is not allowed
    """
    ext = Path(filename or '').suffix.lower()

    if ext not in [e.lower() for e in settings.ALLOWED_EXTENSIONS]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File extension '{ext}' not allowed. "
                   f"Allowed extensions: {', '.join(settings.ALLOWED_EXTENSIONS)}"
        )

    return True
