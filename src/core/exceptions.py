"""
Global Exception Handling

Provides the pipeline exception taxonomy and structured error responses
for the HTTP adapter.
"""

import asyncio
import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, run_id_var

logger = get_logger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class PipelineBaseException(Exception):
    """Base exception for the image pipeline."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        run_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.run_id = run_id or run_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class FetchError(PipelineBaseException):
    """Raised when the source image cannot be retrieved or decoded."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        http_status: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, code=502, stage="fetch", **kwargs)
        self.details["url"] = url
        self.details["http_status"] = http_status


class FilterError(PipelineBaseException):
    """Raised when the filter cannot process the input buffer."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, stage="filter", **kwargs)


class InvalidTransitionError(PipelineBaseException):
    """Raised when a pipeline run is moved to a state it cannot reach."""

    def __init__(self, current: str, target: str, **kwargs):
        super().__init__(
            f"Cannot move pipeline run from '{current}' to '{target}'",
            code=500,
            **kwargs
        )
        self.details["current"] = current
        self.details["target"] = target


class ScopeClosedError(PipelineBaseException):
    """Raised when work is submitted to a scope that was already cancelled."""

    def __init__(self, scope: str, **kwargs):
        super().__init__(
            f"Task scope '{scope}' was cancelled and cannot accept new work",
            code=409,
            **kwargs
        )
        self.details["scope"] = scope


class CancellationSignal(asyncio.CancelledError):
    """Cooperative abort raised at a cancellation check. Never reported."""


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(PipelineBaseException)
    async def pipeline_exception_handler(request: Request, exc: PipelineBaseException):
        logger.error(
            "pipeline_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "run_id": exc.run_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": _utc_timestamp()
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "run_id": run_id_var.get(),
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )
