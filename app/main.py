from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.config import get_settings
from app.core.cache import close_redis
from app.core.database import close_db, init_db
from app.core.logging import configure_logging
from app.middleware import TelemetryMiddleware
from app.models.experiment import (  # noqa: F401
    AppliedOptimization,
    Experiment,
    ExperimentResult,
    VisitorAssignment,
)
from app.services.experiments.errors import ExperimentError
from app.services.experiments.service import get_background_queue

settings = get_settings()
configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("startup", app=settings.APP_NAME, environment=settings.ENVIRONMENT)
    await init_db()
    logger.info("database_initialized")
    yield
    # Shutdown
    logger.info("shutdown")
    await get_background_queue().drain()
    await close_redis()
    await close_db()
    logger.info("cleanup_complete")


app = FastAPI(
    title=settings.APP_NAME,
    description="A/B testing engine: visitor bucketing, result tracking and significance-based decisions",
    version="0.1.0",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# CORS middleware
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(TelemetryMiddleware)


@app.exception_handler(ExperimentError)
async def experiment_error_handler(request: Request, exc: ExperimentError):
    logger.warning(
        "experiment_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Include routers
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": "0.1.0",
        "environment": settings.ENVIRONMENT,
    }
