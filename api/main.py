"""
FastAPI application for the tabular exchange system.

Serves uploads, exports and job tracking under the API prefix and job
progress over /ws/jobs.
"""

import logging
import os
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.config import settings
from api.dependencies import SessionLocal, engine
from api.routers import export_router, import_router, websocket
from api.schemas.common import ErrorResponse, HealthCheckResponse
from backend.models.exchange_registry import get_registry
from backend.models.job import count_active_jobs
from backend.models.schema import Base
from services.configuration_service import ConfigurationError

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
    logger.info(f"Starting {settings.API_TITLE} v{settings.API_VERSION}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[-1]}")  # Hide credentials

    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")

    os.makedirs(settings.TEMP_UPLOAD_DIR, exist_ok=True)
    os.makedirs(settings.EXPORT_DIR, exist_ok=True)

    registry = get_registry()
    for record_type in registry.registered_types():
        type_config = registry.get_configuration(record_type)
        class_config = type_config.class_config
        logger.info(f"Record type {type_config.type_name}: sheet '{class_config.sheet_name}', "
                    f"import {'on' if class_config.import_enabled else 'off'}, "
                    f"export {'on' if class_config.export_enabled else 'off'}")

    yield

    logger.info("Shutting down application")


app = FastAPI(
    title=settings.API_TITLE,
    description=settings.API_DESCRIPTION,
    version=settings.API_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Unregistered or misconfigured record types."""
    logger.warning(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(error=str(exc), path=request.url.path).model_dump(mode='json')
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="Internal server error",
            detail={"message": str(exc)} if settings.DEBUG else None,
            path=request.url.path
        ).model_dump(mode='json')
    )


app.include_router(import_router.router, prefix=settings.API_PREFIX)
app.include_router(export_router.router, prefix=settings.API_PREFIX)
app.include_router(websocket.router)  # WebSocket doesn't use /api prefix


@app.get('/health', response_model=HealthCheckResponse, tags=['health'])
async def health_check():
    """
    Database, Redis and Celery connectivity, plus the registered record
    types and the jobs still waiting or running.
    """
    health = HealthCheckResponse(
        status='healthy',
        version=settings.API_VERSION,
        database='unknown',
        redis='unknown',
        celery='unknown',
        record_types=[t.__name__ for t in get_registry().registered_types()]
    )

    try:
        with SessionLocal() as session:
            health.active_jobs = count_active_jobs(session)
        health.database = 'connected'
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health.database = 'disconnected'
        health.status = 'unhealthy'

    try:
        redis.Redis.from_url(settings.REDIS_URL).ping()
        health.redis = 'connected'
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        health.redis = 'disconnected'
        if health.status == 'healthy':
            health.status = 'degraded'

    try:
        from tasks.celery_app import celery_app

        active_workers = celery_app.control.inspect().active()
        if active_workers:
            health.celery = f'active ({len(active_workers)} workers)'
        else:
            health.celery = 'no workers'
            if health.status == 'healthy':
                health.status = 'degraded'
    except Exception as e:
        logger.error(f"Celery health check failed: {e}")

    return health


if __name__ == '__main__':
    import uvicorn

    uvicorn.run(
        'api.main:app',
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower()
    )
