"""
FastAPI application for the catalog import system.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api.config import settings, ensure_temp_dir
from api.dependencies import SessionLocal, engine, redis_client
from api.routers import import_router, websocket
from api.schemas.common import ErrorResponse, HealthCheckResponse
from backend.models.schema import Base

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT,
    handlers=[
        logging.FileHandler(settings.LOG_FILE),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables and the upload directory before serving imports."""
    logger.info(f"Catalog import API {settings.API_VERSION} starting, "
                f"catalog at {settings.DATABASE_URL.split('@')[-1]}")

    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.error(f"Could not create catalog tables: {e}")

    ensure_temp_dir()
    yield
    logger.info("Catalog import API stopped")


app = FastAPI(
    title=settings.API_TITLE,
    description=settings.API_DESCRIPTION,
    version=settings.API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS
)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.error(f"Request {request.method} {request.url.path} crashed: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="Internal server error",
            detail={"message": str(exc)} if settings.DEBUG else None,
            path=request.url.path
        ).model_dump(mode='json')
    )


app.include_router(import_router.router, prefix=settings.API_PREFIX)
app.include_router(websocket.router)


def active_worker_count() -> int:
    """Number of Celery workers answering an inspect broadcast."""
    from tasks.celery_app import celery_app

    return len(celery_app.control.inspect(timeout=1.0).ping() or {})


@app.get('/health', response_model=HealthCheckResponse, tags=['health'])
async def health_check():
    """
    Report whether the catalog database, Redis and import workers are reachable.

    A dead database makes the service ``unhealthy``; missing Redis or
    workers only degrade it, since validation still works without them.
    """
    report = {'status': 'healthy', 'database': 'connected', 'redis': 'connected'}

    try:
        with SessionLocal() as session:
            session.execute(text('SELECT 1'))
    except Exception as e:
        logger.error(f"Health check: catalog database unreachable: {e}")
        report.update(database='disconnected', status='unhealthy')

    try:
        redis_client.ping()
    except Exception as e:
        logger.error(f"Health check: Redis unreachable: {e}")
        report['redis'] = 'disconnected'
        if report['status'] == 'healthy':
            report['status'] = 'degraded'

    try:
        workers = active_worker_count()
    except Exception as e:
        logger.error(f"Health check: could not reach import workers: {e}")
        workers = 0
    report['celery'] = f'active ({workers} workers)' if workers else 'no workers'
    if not workers and report['status'] == 'healthy':
        report['status'] = 'degraded'

    return HealthCheckResponse(timestamp=datetime.utcnow(), version=settings.API_VERSION, **report)


@app.get('/api/ping', tags=['health'])
async def ping():
    return {'ping': 'pong'}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
    return response


if __name__ == '__main__':
    import uvicorn

    uvicorn.run(
        'api.main:app',
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower()
    )
