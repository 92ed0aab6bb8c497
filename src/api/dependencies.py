"""
FastAPI Dependencies for the Upscale Service

Provides dependency injection for:
- Upscaler engine (one per application, owned by the lifespan handler)
- Model repository over the ModelCacheFactory singleton
"""

from fastapi import Request

from src.core.config import settings
from src.core.exceptions import EngineNotReadyError
from src.core.logging import get_logger
from src.core.storage import get_model_cache
from src.engines.upscaler.engine import UpscalerEngine
from src.engines.upscaler.repositories import ModelRepository

logger = get_logger(__name__)


# =============================================================================
# Engine lifecycle
# =============================================================================

def build_engine() -> UpscalerEngine:
    """Create the application's engine over the configured model cache."""
    repository = ModelRepository(
        cache=get_model_cache(),
        fetch_timeout=settings.MODEL_FETCH_TIMEOUT_SECONDS
    )
    return UpscalerEngine(
        model_repository=repository,
        load_timeout=settings.MODEL_LOAD_TIMEOUT_SECONDS
    )


async def preload_model(engine: UpscalerEngine) -> bool:
    """Pre-load the model at startup.

    Failures are logged; the model is then loaded on the first request.
    """
    logger.info("preloading_model", locator=settings.MODEL_URL)
    try:
        await engine.preload(settings.MODEL_URL)
        logger.info("model_preloaded", backends=engine.backends)
        return True
    except Exception as e:
        logger.warning("model_preload_failed", error=str(e))
        return False


# =============================================================================
# Request-scoped accessors
# =============================================================================

def get_engine(request: Request) -> UpscalerEngine:
    """Returns the engine created in the lifespan handler."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise EngineNotReadyError("Upscaler engine has not been started")
    return engine


async def get_ready_engine(request: Request) -> UpscalerEngine:
    """Returns the engine, loading the model on first use."""
    engine = get_engine(request)
    await engine.initialize(settings.MODEL_URL)
    return engine
