"""
Global Exception Handling

Typed errors for the upscale engine plus structured error responses
for the HTTP layer.
"""

import traceback
from typing import Optional, Dict, Any, Type
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, operation_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class UpscalerBaseException(Exception):
    """Base exception for the upscaler."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        operation_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.operation_id = operation_id or operation_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        """Plain-data form used to cross the worker boundary."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "stage": self.stage,
            "details": self.details,
        }


class InvalidConfigError(UpscalerBaseException):
    """Raised for non-positive scale/tile size or a non-positive tile step."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class TooManyTilesError(UpscalerBaseException):
    """Raised when the tile grid would exceed the block ceiling."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=413, **kwargs)


class ImageTooLargeError(UpscalerBaseException):
    """Raised when the input image exceeds the maximum dimension."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=413, **kwargs)


class OutputTooLargeError(UpscalerBaseException):
    """Raised when the output canvas would exceed the buffer element ceiling."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=413, **kwargs)


class ModelLoadFailedError(UpscalerBaseException):
    """Raised when a model cannot be fetched, cached, or parsed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=503, **kwargs)


class InferenceFailedError(UpscalerBaseException):
    """Raised when a tile's forward pass errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class UpscaleCancelledError(UpscalerBaseException):
    """Raised when the caller abandons an operation."""

    def __init__(self, message: str = "Upscale cancelled by caller", **kwargs):
        super().__init__(message, code=499, **kwargs)


class OutOfBoundsError(UpscalerBaseException):
    """Raised when a crop region exceeds the source tensor."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class EngineBusyError(UpscalerBaseException):
    """Raised when a second upscale is submitted while one is in flight."""

    def __init__(self, message: str = "An upscale operation is already in progress", **kwargs):
        super().__init__(message, code=409, **kwargs)


class EngineNotReadyError(UpscalerBaseException):
    """Raised when the engine has no loaded model or has been disposed."""

    def __init__(self, message: str = "Upscaler engine is not ready", **kwargs):
        super().__init__(message, code=503, **kwargs)


ERROR_TYPES: Dict[str, Type[UpscalerBaseException]] = {
    cls.__name__: cls
    for cls in (
        InvalidConfigError,
        TooManyTilesError,
        ImageTooLargeError,
        OutputTooLargeError,
        ModelLoadFailedError,
        InferenceFailedError,
        UpscaleCancelledError,
        OutOfBoundsError,
        EngineBusyError,
        EngineNotReadyError,
    )
}


def exception_from_payload(
    payload: Dict[str, Any],
    operation_id: Optional[str] = None
) -> UpscalerBaseException:
    """Rebuild a typed exception from a worker error payload.

    Unknown error types surface as InferenceFailedError.
    """
    cls = ERROR_TYPES.get(payload.get("error_type"), InferenceFailedError)
    exc = cls(payload.get("message", "Unknown error"), operation_id=operation_id)
    exc.stage = payload.get("stage")
    exc.details = dict(payload.get("details") or {})
    return exc


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(UpscalerBaseException)
    async def upscaler_exception_handler(request: Request, exc: UpscalerBaseException):
        operation_id = exc.operation_id or operation_id_var.get()

        logger.error(
            "upscaler_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "error_type": type(exc).__name__,
                "operation_id": operation_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        operation_id = operation_id_var.get()

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
                "operation_id": operation_id,
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
