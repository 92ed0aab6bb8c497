"""
Structured Logging with structlog

Every log line carries the operation it belongs to and the stage of the
tile pipeline it was emitted from, so one upscale can be followed end to
end across the API and the worker thread.
"""

import logging
import sys
import threading
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

from src.core.config import settings

# Operation-scoped context. ContextVars do not cross threads, so the worker
# re-enters a LogContext for each request it handles.
operation_id_var: ContextVar[Optional[str]] = ContextVar("operation_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)


def add_operation_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Attach version, operation_id and stage."""
    event_dict["version"] = settings.APP_VERSION

    operation_id = operation_id_var.get()
    if operation_id:
        event_dict.setdefault("operation_id", operation_id)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def add_thread_name(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Tag lines emitted off the main thread (the upscale worker)."""
    thread = threading.current_thread()
    if thread is not threading.main_thread():
        event_dict["thread"] = thread.name
    return event_dict


def setup_logging(log_level: str = "INFO", json_format: bool = True):
    """
    Configure stdlib logging and structlog.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines when True, colored console output otherwise
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Third-party chatter
    for noisy in ("httpx", "httpcore", "asyncio", "onnxruntime"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_operation_context,
            add_thread_name,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Scope log lines to one upscale operation.

    Usage:
        with LogContext(operation_id=op_id, stage="validate") as ctx:
            ...
            ctx.set_stage("tiling")
            logger.debug("tile_processed", tile=[0, 1])

    Both variables are restored on exit, including stages set in between.
    """

    def __init__(self, operation_id: Optional[str] = None, stage: Optional[str] = None):
        self.operation_id = operation_id
        self.stage = stage
        self._tokens = []

    def __enter__(self):
        if self.operation_id:
            self._tokens.append((operation_id_var, operation_id_var.set(self.operation_id)))
        self._tokens.append((stage_var, stage_var.set(self.stage)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []
        return False

    def set_stage(self, stage: str):
        stage_var.set(stage)


# Example line:
# {
#   "timestamp": "2024-05-20T10:00:00.123456Z",
#   "level": "debug",
#   "event": "tile_processed",
#   "logger": "src.engines.upscaler.services",
#   "operation_id": "550e8400-e29b-41d4-a716-446655440000",
#   "stage": "tiling",
#   "thread": "upscale-worker",
#   "version": "1.0.0",
#   "tile": [0, 1],
#   "inference_ms": 42.1
# }
