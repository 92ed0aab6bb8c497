import time
from contextlib import aclosing
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.core.exceptions import (
    EngineBusyError,
    EngineNotReadyError,
    InferenceFailedError,
    InvalidConfigError,
    ModelLoadFailedError,
    UpscaleCancelledError,
)
from src.engines.upscaler.engine import UpscalerEngine
from src.engines.upscaler.schemas import CompleteEvent, EngineState, ProgressEvent, UpscaleConfig
from tests.stubs import StubSession

CONFIG = UpscaleConfig(scale=2, offset=16, tile_size=256)


@pytest.mark.asyncio
async def test_initialize_moves_to_ready(engine, model_repository):
    assert engine.state == EngineState.IDLE

    await engine.initialize("https://models.example.com/esrgan.onnx")

    assert engine.state == EngineState.READY
    assert engine.backends == ["cpu"]
    model_repository.load.assert_awaited_once_with("https://models.example.com/esrgan.onnx")


@pytest.mark.asyncio
async def test_initialize_is_idempotent(engine, model_repository):
    await engine.initialize("model.onnx")
    await engine.preload("model.onnx")

    assert model_repository.load.await_count == 1


@pytest.mark.asyncio
async def test_upscale_single_tile(engine, make_raster):
    await engine.initialize("model.onnx")
    progress = []

    result = await engine.upscale(make_raster(64, 64), CONFIG, on_progress=progress.append)

    assert (result.width, result.height) == (128, 128)
    assert [(p.current, p.total, p.percentage) for p in progress] == [(1, 1, 100)]
    assert engine.state == EngineState.READY


@pytest.mark.asyncio
async def test_stream_ends_with_one_complete_event(engine, make_raster):
    await engine.initialize("model.onnx")

    events = [event async for event in engine.stream(make_raster(300, 300), CONFIG)]

    assert all(isinstance(e, ProgressEvent) for e in events[:-1])
    assert isinstance(events[-1], CompleteEvent)
    assert (events[-1].width, events[-1].height) == (600, 600)
    assert events[-2].percentage == 100


@pytest.mark.asyncio
async def test_upscale_before_initialize(engine, make_raster):
    with pytest.raises(EngineNotReadyError):
        await engine.upscale(make_raster(64, 64), CONFIG)


@pytest.mark.asyncio
async def test_concurrent_upscale_rejected(model_repository, make_raster):
    # Arrange
    engine = UpscalerEngine(
        model_repository=model_repository,
        session_factory=lambda weights: StubSession(delay=0.05),
        load_timeout=5.0
    )
    await engine.initialize("model.onnx")

    try:
        async with aclosing(engine.stream(make_raster(600, 600), CONFIG)) as events:
            first = await events.__anext__()
            assert isinstance(first, ProgressEvent)
            assert engine.state == EngineState.UPSCALING

            # Act / Assert
            with pytest.raises(EngineBusyError):
                await engine.upscale(make_raster(64, 64), CONFIG)

        # Leaving early releases the engine
        assert engine.state == EngineState.READY
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_inference_failure_is_terminal_for_operation_only(model_repository, make_raster):
    session = StubSession(error=InferenceFailedError("backend exploded"))
    engine = UpscalerEngine(
        model_repository=model_repository,
        session_factory=lambda weights: session,
        load_timeout=5.0
    )
    await engine.initialize("model.onnx")

    try:
        with pytest.raises(InferenceFailedError) as exc_info:
            await engine.upscale(make_raster(64, 64), CONFIG)

        assert exc_info.value.message == "backend exploded"
        assert exc_info.value.operation_id is not None
        assert engine.state == EngineState.READY

        session.error = None
        result = await engine.upscale(make_raster(64, 64), CONFIG)
        assert result.width == 128
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_guardrail_error_crosses_worker_boundary(engine, make_raster):
    await engine.initialize("model.onnx")

    with pytest.raises(InvalidConfigError) as exc_info:
        await engine.upscale(make_raster(64, 64), UpscaleConfig(scale=2, offset=16, tile_size=8))

    assert exc_info.value.code == 400
    assert "input_tile_step" in exc_info.value.details


@pytest.mark.asyncio
async def test_model_load_timeout(model_repository):
    def slow_factory(weights):
        time.sleep(0.5)
        return StubSession()

    engine = UpscalerEngine(
        model_repository=model_repository,
        session_factory=slow_factory,
        load_timeout=0.1
    )

    try:
        with pytest.raises(ModelLoadFailedError) as exc_info:
            await engine.initialize("model.onnx")

        assert "timed out" in exc_info.value.message
        assert engine.state == EngineState.IDLE
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_model_load_failure_returns_to_idle():
    repo = MagicMock()
    repo.load = AsyncMock(side_effect=ModelLoadFailedError("HTTP 404"))
    engine = UpscalerEngine(model_repository=repo, session_factory=lambda weights: StubSession())

    with pytest.raises(ModelLoadFailedError):
        await engine.initialize("https://models.example.com/missing.onnx")

    assert engine.state == EngineState.IDLE
    await engine.dispose()


@pytest.mark.asyncio
async def test_session_factory_failure(model_repository):
    def broken_factory(weights):
        raise ModelLoadFailedError("Not an ONNX model")

    engine = UpscalerEngine(model_repository=model_repository, session_factory=broken_factory)

    try:
        with pytest.raises(ModelLoadFailedError) as exc_info:
            await engine.initialize("model.onnx")

        assert exc_info.value.message == "Not an ONNX model"
        assert engine.state == EngineState.IDLE
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_dispose_releases_session(engine, stub_session, make_raster):
    await engine.initialize("model.onnx")

    await engine.dispose()

    assert stub_session.closed
    assert engine.state == EngineState.IDLE
    with pytest.raises(EngineNotReadyError):
        await engine.upscale(make_raster(64, 64), CONFIG)
    with pytest.raises(EngineNotReadyError):
        await engine.initialize("model.onnx")

    # Second dispose is a no-op
    await engine.dispose()


@pytest.mark.asyncio
async def test_async_context_manager(model_repository, stub_session):
    async with UpscalerEngine(
        model_repository=model_repository,
        session_factory=lambda weights: stub_session
    ) as engine:
        await engine.initialize("model.onnx")
        assert engine.is_ready

    assert stub_session.closed
    assert not engine.is_ready


@pytest.mark.asyncio
async def test_dispose_mid_stream_stops_tile_dispatch(model_repository, make_raster):
    # Arrange
    session = StubSession(delay=0.1)
    engine = UpscalerEngine(
        model_repository=model_repository,
        session_factory=lambda weights: session,
        load_timeout=5.0
    )
    await engine.initialize("model.onnx")

    async with aclosing(engine.stream(make_raster(600, 600), CONFIG)) as events:
        assert isinstance(await events.__anext__(), ProgressEvent)

        # Act
        await engine.dispose()

        # Assert
        assert session.closed
        assert engine.state == EngineState.IDLE
        dispatched = session.calls
        assert dispatched < 9

        with pytest.raises(UpscaleCancelledError):
            async for _ in events:
                pass

    time.sleep(0.3)
    assert session.calls == dispatched
    assert engine.state == EngineState.IDLE
