"""
Global Exception Handling

Provides the service's exception hierarchy and the handlers that turn
exceptions into structured JSON error responses.
"""

import traceback
from typing import Optional, Dict, Any
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.core.config import settings
from src.core.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class RemoverBaseException(Exception):
    """Base exception for the background remover."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(RemoverBaseException):
    """Raised when an upload is rejected before it is persisted."""

    def __init__(self, message: str, reason: str = "invalid", **kwargs):
        super().__init__(message, code=400, stage="receive", **kwargs)
        self.reason = reason


class StorageError(RemoverBaseException):
    """Raised when the temp upload cannot be written."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, stage="persist", **kwargs)


class ProcessingError(RemoverBaseException):
    """Raised when the background removal capability fails or times out."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, stage="process", **kwargs)


# =============================================================================
# Response Helpers
# =============================================================================

def _format_details(details: Dict[str, Any]) -> str:
    return "; ".join(f"{key}={value}" for key, value in details.items())


def build_error_content(exc: RemoverBaseException) -> Dict[str, Any]:
    """Build the client-visible body for a service exception."""
    content: Dict[str, Any] = {"error": exc.message}
    if exc.code >= 500 and settings.EXPOSE_ERROR_DETAILS and exc.details:
        content["details"] = _format_details(exc.details)
    return content


def unhandled_exception_response(request: Request, exc: Exception) -> JSONResponse:
    """Log an unexpected exception and build the generic 500 reply."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=str(request.url.path),
        traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    )

    content: Dict[str, Any] = {"error": "Internal server error"}
    if settings.EXPOSE_ERROR_DETAILS:
        content["details"] = f"{type(exc).__name__}: {exc}"

    return JSONResponse(
        status_code=500,
        content=content
    )


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(RemoverBaseException)
    async def remover_exception_handler(request: Request, exc: RemoverBaseException):
        if exc.code >= 500:
            logger.error(
                "request_failed",
                error=exc.message,
                code=exc.code,
                stage=exc.stage,
                details=exc.details,
                path=str(request.url.path),
                traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            )
        else:
            logger.warning(
                "request_rejected",
                error=exc.message,
                code=exc.code,
                stage=exc.stage,
                path=str(request.url.path)
            )

        return JSONResponse(
            status_code=exc.code,
            content=build_error_content(exc)
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        fields = ", ".join(
            str(err["loc"][-1]) for err in errors if err.get("loc")
        )
        message = f"Invalid request fields: {fields}" if fields else "Invalid request"

        logger.warning("request_validation_failed", path=str(request.url.path), fields=fields)

        return JSONResponse(
            status_code=400,
            content={"error": message}
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        return unhandled_exception_response(request, exc)
