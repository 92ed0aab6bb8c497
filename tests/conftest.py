from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient, ASGITransport

from src.main import app
from src.engines.upscaler.engine import UpscalerEngine
from tests.stubs import StubSession, build_raster


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_raster():
    return build_raster


@pytest.fixture
def stub_session():
    return StubSession()


@pytest.fixture
def model_repository():
    repo = MagicMock()
    repo.load = AsyncMock(return_value=b"fake-model-weights")
    return repo


@pytest.fixture
async def engine(model_repository, stub_session) -> AsyncGenerator[UpscalerEngine, None]:
    engine = UpscalerEngine(
        model_repository=model_repository,
        session_factory=lambda weights: stub_session,
        load_timeout=5.0
    )
    yield engine
    await engine.dispose()


@pytest.fixture
async def client(engine) -> AsyncGenerator[AsyncClient, None]:
    # Lifespan keeps a pre-set engine instead of building one
    app.state.engine = engine
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
