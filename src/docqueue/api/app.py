"""FastAPI application for docqueue."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docqueue import __version__
from docqueue.api.routes import router as api_router
from docqueue.cache.factory import initialize_cache, shutdown_cache
from docqueue.errors import AuthenticationError, DocQueueError, PersistenceError, RateLimited
from docqueue.services import Services, get_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    logger.info("Starting docqueue API...")
    await initialize_cache()
    yield
    logger.info("Shutting down docqueue API...")
    await shutdown_cache()


async def handle_docqueue_error(request: Request, exc: DocQueueError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, PersistenceError):
        logger.error(f"Storage failure on {request.method} {request.url.path}: {exc.message}")
    elif isinstance(exc, AuthenticationError):
        headers["WWW-Authenticate"] = "Bearer"
    elif isinstance(exc, RateLimited):
        headers.update(exc.headers)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="docqueue",
        description="Admission, scheduling and quota accounting for document processing jobs",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        return response

    app.add_exception_handler(DocQueueError, handle_docqueue_error)
    app.include_router(api_router, prefix="/v1")

    @app.get("/health")
    async def health_check(services: Services = Depends(get_services)):
        database_ok = await run_in_threadpool(services.db_manager.health_check)
        return {
            "status": "healthy" if database_ok else "degraded",
            "version": __version__,
            "database": database_ok,
            "rate_limiting_degraded": services.limiter.is_degraded,
        }

    @app.get("/")
    async def root():
        return {
            "name": "docqueue",
            "version": __version__,
            "docs": "/docs",
            "openapi": "/openapi.json",
        }

    return app


# Create app instance
app = create_app()
