"""
Upscale Worker - isolated execution context for all heavy computation.

The worker is a dedicated daemon thread that owns the inference session.
Callers talk to it only through immutable messages:

    caller --(request, EventChannel)--> inbox --> worker
    worker --ProgressEvent*, CompleteEvent | ErrorEvent--> EventChannel --> caller

Nothing mutable is shared across the boundary; errors travel as plain
payloads and are re-raised as typed exceptions on the caller side.
"""

import asyncio
import queue
import threading
import time
from typing import Optional, Tuple

from src.core.exceptions import EngineNotReadyError, UpscalerBaseException
from src.core.logging import LogContext, get_logger
from src.engines.upscaler.schemas import (
    CompleteEvent,
    ErrorEvent,
    LoadModelRequest,
    ModelLoadedEvent,
    ProgressEvent,
    ShutdownCompleteEvent,
    ShutdownRequest,
    UpscaleProgress,
    UpscaleRequest,
    WorkerEvent,
    WorkerRequest,
)
from src.engines.upscaler.services import TiledUpscaleService
from src.engines.upscaler.session import InferenceSession, SessionFactory

logger = get_logger(__name__)


class EventChannel:
    """
    One-shot event stream from the worker thread to an asyncio consumer.

    close() marks the channel discarded. Events sent afterwards are dropped
    and the worker stops dispatching tiles for the operation.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, event: WorkerEvent) -> None:
        """Thread-safe; called from the worker."""
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # Consumer loop already shut down
            logger.debug("event_dropped", event_type=event.type)

    async def receive(self) -> WorkerEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._closed.set()

    def abort(self, error: UpscalerBaseException) -> None:
        """Close the channel and hand the consumer a terminal error."""
        self.close()
        self._loop.call_soon_threadsafe(self._queue.put_nowait, ErrorEvent(**error.to_payload()))


class UpscaleWorker(threading.Thread):
    """Processes LoadModel / Upscale / Shutdown requests one at a time."""

    def __init__(
        self,
        session_factory: SessionFactory,
        service: Optional[TiledUpscaleService] = None,
        name: str = "upscale-worker"
    ):
        super().__init__(name=name, daemon=True)
        self.session_factory = session_factory
        self.service = service or TiledUpscaleService()
        self._inbox: "queue.Queue[Tuple[WorkerRequest, EventChannel]]" = queue.Queue()
        self._session: Optional[InferenceSession] = None

    def submit(self, message: WorkerRequest, channel: EventChannel) -> None:
        self._inbox.put((message, channel))

    def run(self) -> None:
        logger.info("worker_started", thread=self.name)
        while True:
            message, channel = self._inbox.get()

            if isinstance(message, ShutdownRequest):
                self._close_session()
                channel.send(ShutdownCompleteEvent())
                logger.info("worker_stopped", thread=self.name)
                return

            try:
                if isinstance(message, LoadModelRequest):
                    self._handle_load(message, channel)
                elif isinstance(message, UpscaleRequest):
                    self._handle_upscale(message, channel)
                else:
                    logger.warning("unknown_message", message_type=type(message).__name__)
            except UpscalerBaseException as e:
                channel.send(ErrorEvent(**e.to_payload()))
            except Exception as e:
                logger.exception("worker_unexpected_error", error=str(e))
                channel.send(ErrorEvent(
                    error_type="InferenceFailedError",
                    message=str(e) or type(e).__name__,
                    details={"cause": type(e).__name__}
                ))

    def _handle_load(self, message: LoadModelRequest, channel: EventChannel) -> None:
        with LogContext(stage="model_load"):
            start = time.time()
            session = self.session_factory(message.weights)
            self._close_session()
            self._session = session

            load_time_ms = int((time.time() - start) * 1000)
            logger.info(
                "model_loaded",
                backends=session.backend_names,
                size_bytes=len(message.weights),
                load_time_ms=load_time_ms
            )
            channel.send(ModelLoadedEvent(backends=session.backend_names, load_time_ms=load_time_ms))

    def _handle_upscale(self, message: UpscaleRequest, channel: EventChannel) -> None:
        if self._session is None:
            raise EngineNotReadyError("No model loaded")

        def on_progress(progress: UpscaleProgress) -> None:
            channel.send(ProgressEvent(**progress.model_dump()))

        result = self.service.upscale(
            message.raster,
            message.config,
            self._session,
            operation_id=message.operation_id,
            on_progress=on_progress,
            is_cancelled=lambda: channel.closed
        )
        channel.send(CompleteEvent(raster=result))

    def _close_session(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
            logger.info("session_closed")
