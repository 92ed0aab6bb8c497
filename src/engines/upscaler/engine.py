"""
Upscaler Engine - caller-owned handle over one worker and one model.

State machine:
    IDLE -> MODEL_LOADING -> READY -> UPSCALING -> {COMPLETE | FAILED} -> READY

One upscale at a time per engine; a second request while one is in flight
is rejected with EngineBusyError. dispose() tears the worker and session
down explicitly.
"""

import asyncio
import uuid
from contextlib import aclosing
from functools import partial
from typing import AsyncIterator, Callable, List, Optional, Union

from src.core.config import settings
from src.core.exceptions import (
    EngineBusyError,
    EngineNotReadyError,
    ModelLoadFailedError,
    UpscaleCancelledError,
    exception_from_payload,
)
from src.core.logging import get_logger
from src.engines.upscaler.repositories import ModelRepository
from src.engines.upscaler.schemas import (
    CompleteEvent,
    EngineState,
    ErrorEvent,
    LoadModelRequest,
    ModelLoadedEvent,
    ProgressEvent,
    RasterImage,
    UpscaleConfig,
    UpscaleRequest,
    ShutdownRequest,
    WorkerRequest,
)
from src.engines.upscaler.services import TiledUpscaleService
from src.engines.upscaler.session import SessionFactory, create_session
from src.engines.upscaler.worker import EventChannel, UpscaleWorker

logger = get_logger(__name__)


def default_session_factory() -> SessionFactory:
    backends = [b for b in settings.EXECUTION_BACKENDS.split(",") if b.strip()]
    return partial(create_session, backend_priority=backends)


class UpscalerEngine:
    """Tiled super-resolution engine."""

    def __init__(
        self,
        model_repository: Optional[ModelRepository] = None,
        session_factory: Optional[SessionFactory] = None,
        load_timeout: Optional[float] = None,
        service: Optional[TiledUpscaleService] = None
    ):
        self.model_repository = model_repository or ModelRepository()
        self.session_factory = session_factory or default_session_factory()
        self.load_timeout = load_timeout or settings.MODEL_LOAD_TIMEOUT_SECONDS
        self.service = service or TiledUpscaleService()

        self.locator: Optional[str] = None
        self.backends: List[str] = []

        self._state = EngineState.IDLE
        self._worker: Optional[UpscaleWorker] = None
        self._channel: Optional[EventChannel] = None
        self._load_lock = asyncio.Lock()
        self._busy = False
        self._disposed = False

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return not self._disposed and self._state in (
            EngineState.READY, EngineState.COMPLETE, EngineState.FAILED
        )

    def _set_state(self, state: EngineState) -> None:
        if state != self._state:
            logger.info("engine_state_changed", previous=self._state.value, state=state.value)
            self._state = state

    def _ensure_worker(self) -> UpscaleWorker:
        if self._worker is None:
            self._worker = UpscaleWorker(self.session_factory, self.service)
            self._worker.start()
        return self._worker

    async def _request(self, message: WorkerRequest) -> Union[ModelLoadedEvent, CompleteEvent]:
        """Send one request and wait for its terminal event."""
        channel = EventChannel()
        self._ensure_worker().submit(message, channel)
        try:
            while True:
                event = await channel.receive()
                if isinstance(event, ErrorEvent):
                    raise exception_from_payload(event.to_payload())
                if not isinstance(event, ProgressEvent):
                    return event
        finally:
            channel.close()

    # =========================================================================
    # Model loading
    # =========================================================================

    async def initialize(self, locator: Optional[str] = None) -> None:
        """
        Load the model and move to READY.

        No-op when the same model is already loaded. Loading is bounded by
        load_timeout; on any failure the engine falls back to IDLE.

        Raises:
            ModelLoadFailedError: fetch, cache or parse failure, or timeout
            EngineBusyError: an upscale is in flight
            EngineNotReadyError: the engine was disposed
        """
        if self._disposed:
            raise EngineNotReadyError("Engine has been disposed")

        locator = locator or settings.MODEL_URL
        async with self._load_lock:
            if self.is_ready and locator == self.locator:
                return
            if self._busy:
                raise EngineBusyError("Cannot load a model while an upscale is in progress")

            self._set_state(EngineState.MODEL_LOADING)
            try:
                event = await asyncio.wait_for(self._load(locator), timeout=self.load_timeout)
            except asyncio.TimeoutError as e:
                self._set_state(EngineState.IDLE)
                logger.error("model_load_timeout", locator=locator, timeout_s=self.load_timeout)
                raise ModelLoadFailedError(
                    f"Model loading timed out after {self.load_timeout}s",
                    details={"locator": locator, "timeout_s": self.load_timeout}
                ) from e
            except Exception as e:
                self._set_state(EngineState.IDLE)
                logger.error("model_load_failed", locator=locator, error=str(e))
                raise

            self.locator = locator
            self.backends = list(event.backends)
            self._set_state(EngineState.READY)

    async def _load(self, locator: str) -> ModelLoadedEvent:
        weights = await self.model_repository.load(locator)
        return await self._request(LoadModelRequest(weights=weights))

    async def preload(self, locator: Optional[str] = None) -> None:
        """Warm the model ahead of the first upscale."""
        await self.initialize(locator)

    # =========================================================================
    # Upscaling
    # =========================================================================

    async def stream(
        self,
        raster: RasterImage,
        config: Optional[UpscaleConfig] = None
    ) -> AsyncIterator[Union[ProgressEvent, CompleteEvent]]:
        """
        Yield ProgressEvents, then exactly one CompleteEvent.

        Failures raise the typed exception instead of a terminal event.
        Closing the iterator early discards the channel, and the worker
        stops dispatching tiles.
        """
        if self._disposed:
            raise EngineNotReadyError("Engine has been disposed")
        if self._busy:
            raise EngineBusyError()
        if not self.is_ready:
            raise EngineNotReadyError("Model is not loaded; call initialize() first")

        self._busy = True
        config = config or UpscaleConfig()
        operation_id = str(uuid.uuid4())
        channel = EventChannel()
        self._channel = channel
        finished = False

        self._set_state(EngineState.UPSCALING)
        try:
            self._ensure_worker().submit(
                UpscaleRequest(operation_id=operation_id, raster=raster, config=config),
                channel
            )
            while True:
                event = await channel.receive()
                if isinstance(event, ProgressEvent):
                    yield event
                elif isinstance(event, CompleteEvent):
                    finished = True
                    self._set_state(EngineState.COMPLETE)
                    yield event
                    return
                elif isinstance(event, ErrorEvent):
                    finished = True
                    if not self._disposed:
                        self._set_state(EngineState.FAILED)
                    raise exception_from_payload(event.to_payload(), operation_id=operation_id)
        finally:
            channel.close()
            self._channel = None
            if not finished:
                logger.info("upscale_abandoned", operation_id=operation_id)
            self._busy = False
            if not self._disposed:
                self._set_state(EngineState.READY)

    async def upscale(
        self,
        raster: RasterImage,
        config: Optional[UpscaleConfig] = None,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None
    ) -> RasterImage:
        """Run one upscale to completion and return the output raster."""
        result = None
        async with aclosing(self.stream(raster, config)) as events:
            async for event in events:
                if isinstance(event, CompleteEvent):
                    result = event.raster
                elif on_progress is not None:
                    on_progress(event)
        return result

    # =========================================================================
    # Teardown
    # =========================================================================

    async def dispose(self) -> None:
        """
        Stop the worker and release the session. Safe to call twice.

        An upscale in flight is cancelled at its next tile boundary and its
        stream raises UpscaleCancelledError.
        """
        if self._disposed:
            return
        self._disposed = True

        if self._channel is not None:
            # Stops tile dispatch before the shutdown request is queued
            self._channel.abort(UpscaleCancelledError("Engine disposed during upscale"))
            logger.info("upscale_cancelled_by_dispose")

        if self._worker is not None:
            worker = self._worker
            self._worker = None
            worker.submit(ShutdownRequest(), EventChannel())
            await asyncio.to_thread(worker.join, self.load_timeout)
            if worker.is_alive():
                logger.warning("worker_join_timeout", timeout_s=self.load_timeout)

        self.backends = []
        self._set_state(EngineState.IDLE)
        logger.info("engine_disposed")

    async def __aenter__(self) -> "UpscalerEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.dispose()
        return False
