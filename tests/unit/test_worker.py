import asyncio

import pytest

from src.core.exceptions import (
    EngineNotReadyError,
    ImageTooLargeError,
    InferenceFailedError,
    UpscaleCancelledError,
    exception_from_payload,
)
from src.engines.upscaler.schemas import (
    ErrorEvent,
    LoadModelRequest,
    ModelLoadedEvent,
    ProgressEvent,
    ShutdownCompleteEvent,
    ShutdownRequest,
    UpscaleConfig,
    UpscaleRequest,
)
from src.engines.upscaler.worker import EventChannel, UpscaleWorker
from tests.stubs import StubSession


@pytest.mark.asyncio
async def test_closed_channel_drops_events():
    channel = EventChannel()
    channel.close()

    channel.send(ProgressEvent(current=1, total=1, percentage=100))
    await asyncio.sleep(0)

    assert channel.closed
    assert channel._queue.empty()


@pytest.mark.asyncio
async def test_abort_delivers_terminal_error():
    channel = EventChannel()

    channel.abort(UpscaleCancelledError("Engine disposed during upscale"))
    channel.send(ProgressEvent(current=1, total=1, percentage=100))

    event = await asyncio.wait_for(channel.receive(), timeout=1.0)
    assert channel.closed
    assert isinstance(event, ErrorEvent)
    assert event.error_type == "UpscaleCancelledError"
    assert channel._queue.empty()


@pytest.mark.asyncio
async def test_worker_message_flow(make_raster):
    # Arrange
    session = StubSession()
    worker = UpscaleWorker(lambda weights: session)
    worker.start()
    config = UpscaleConfig(scale=2, offset=16, tile_size=256)

    # Act: upscale before load, then load, then shutdown
    early = EventChannel()
    worker.submit(UpscaleRequest(operation_id="op-1", raster=make_raster(64, 64), config=config), early)
    load = EventChannel()
    worker.submit(LoadModelRequest(weights=b"weights"), load)
    stop = EventChannel()
    worker.submit(ShutdownRequest(), stop)

    # Assert
    error = await asyncio.wait_for(early.receive(), timeout=5)
    assert isinstance(error, ErrorEvent)
    assert isinstance(exception_from_payload(error.to_payload()), EngineNotReadyError)

    loaded = await asyncio.wait_for(load.receive(), timeout=5)
    assert isinstance(loaded, ModelLoadedEvent)
    assert loaded.backends == ["cpu"]

    stopped = await asyncio.wait_for(stop.receive(), timeout=5)
    assert isinstance(stopped, ShutdownCompleteEvent)
    await asyncio.to_thread(worker.join, 5)
    assert session.closed


@pytest.mark.asyncio
async def test_unexpected_error_becomes_inference_failed(make_raster):
    session = StubSession(error=RuntimeError("segfault-ish"))
    worker = UpscaleWorker(lambda weights: session)
    worker.start()
    load = EventChannel()
    worker.submit(LoadModelRequest(weights=b"weights"), load)
    await asyncio.wait_for(load.receive(), timeout=5)

    channel = EventChannel()
    worker.submit(
        UpscaleRequest(operation_id="op-2", raster=make_raster(64, 64), config=UpscaleConfig()),
        channel
    )
    event = await asyncio.wait_for(channel.receive(), timeout=5)

    worker.submit(ShutdownRequest(), EventChannel())
    await asyncio.to_thread(worker.join, 5)

    assert isinstance(event, ErrorEvent)
    exc = exception_from_payload(event.to_payload(), operation_id="op-2")
    assert isinstance(exc, InferenceFailedError)
    assert exc.operation_id == "op-2"
    assert "segfault-ish" in exc.message


def test_typed_payload_round_trip():
    original = ImageTooLargeError("Image too large: 5000x10", stage="validate", details={"width": 5000})

    restored = exception_from_payload(original.to_payload(), operation_id="op-3")

    assert type(restored) is ImageTooLargeError
    assert restored.code == 413
    assert restored.stage == "validate"
    assert restored.details == {"width": 5000}


def test_unknown_error_type_maps_to_inference_failed():
    restored = exception_from_payload({"error_type": "KeyError", "message": "boom"})

    assert isinstance(restored, InferenceFailedError)
    assert restored.message == "boom"
