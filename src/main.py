"""
Background Remover - Main Application

FastAPI application with:
- POST /api/remove-background (upload, remove background, return image)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling with JSON error bodies
- Static single page app shell served for every other GET
"""

import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from src.core.config import settings
from src.core.logging import setup_logging, get_logger, request_id_var
from src.core.exceptions import register_exception_handlers, unhandled_exception_response
from src.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from src.api.routes import api_router
from src.api.dependencies import prepare_upload_directory, preload_model_async


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    try:
        prepare_upload_directory()
    except OSError as e:
        # Uploads will fail with StorageError until the directory is writable
        logger.error("upload_directory_unavailable", path=settings.UPLOAD_DIR, error=str(e))

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    if settings.PRELOAD_MODEL:
        logger.info("preloading_rembg_model", model=settings.REMBG_MODEL)
        if await preload_model_async():
            logger.info("rembg_model_preloaded")

    logger.info("application_ready", startup_time_seconds=time.time() - startup_start)

    yield

    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Upload an image and get it back with its background removed.

    - **POST /api/remove-background**: multipart form with `image` (JPG, PNG or WEBP)
      and optional `outputFormat` (`png`, `jpeg`, `jpg`, `webp`; default `png`)
    - **GET /api/metrics**: Prometheus metrics
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials="*" not in cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Request-ID"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps label cardinality bounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", "unmatched")

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# Request ID middleware (outermost, so handlers and logs all see it)
@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    except Exception as exc:
        # The outermost error middleware would answer without the request id
        response = unhandled_exception_response(request, exc)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_router)


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


# =============================================================================
# Static Files & UI
# =============================================================================

@app.get("/{full_path:path}", include_in_schema=False)
async def serve_app_shell(full_path: str):
    """Serve a static asset if it exists, otherwise the SPA shell."""
    if full_path == "api" or full_path.startswith("api/"):
        raise HTTPException(status_code=404, detail="Not found")

    static_root = Path(settings.STATIC_DIR).resolve()

    if full_path:
        candidate = (static_root / full_path).resolve()
        if candidate.is_relative_to(static_root) and candidate.is_file():
            return FileResponse(candidate)

    index_file = static_root / "index.html"
    if index_file.is_file():
        return FileResponse(index_file)

    raise HTTPException(status_code=404, detail="Not found")


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
