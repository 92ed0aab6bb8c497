"""
Tiled Super-Resolution Service - Main Application

Wires the upscaler engine into FastAPI:
- /api/v1/upscale (JSON or NDJSON progress stream)
- /api/v1/models/{name} (cached model weights)
- /api/v1/metrics, /health, /ready
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.core.config import settings
from src.core.logging import setup_logging, get_logger
from src.core.exceptions import register_exception_handlers
from src.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from src.api.v1 import api_v1_router
from src.api.dependencies import build_engine, preload_model

setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Own the engine for the lifetime of the app.

    An engine already placed on app.state (tests, embedding) is reused
    instead of building one from settings.
    """
    started = time.time()
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )
    set_app_info(version=settings.APP_VERSION, environment=settings.ENVIRONMENT)

    engine = getattr(app.state, "engine", None) or build_engine()
    app.state.engine = engine

    if settings.PRELOAD_MODEL and settings.MODEL_URL:
        await preload_model(engine)

    logger.info(
        "application_ready",
        startup_time_seconds=round(time.time() - started, 3),
        engine_state=engine.state.value
    )

    try:
        yield
    finally:
        logger.info("application_shutting_down")
        await engine.dispose()
        app.state.engine = None
        logger.info("application_shutdown_complete")


# =============================================================================
# Middleware
# =============================================================================

async def record_request_metrics(request: Request, call_next):
    """Per-route request count and latency."""
    start = time.time()
    response = await call_next(request)
    elapsed = time.time() - start

    route = request.url.path
    http_request_duration_seconds.labels(method=request.method, endpoint=route).observe(elapsed)
    http_requests_total.labels(method=request.method, endpoint=route, status=response.status_code).inc()

    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    return response


# =============================================================================
# Application
# =============================================================================

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        Tiled neural image super-resolution.

        Images are split into overlapping, mirror-padded tiles, each tile is
        run through the model, and the outputs are stitched back with an
        online weighted average so no seams show. Memory stays bounded by
        the tile size rather than the image size.

        All endpoints are versioned under `/api/v1/`.
        """,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(record_request_metrics)

    register_exception_handlers(app)
    app.include_router(api_v1_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/api/docs",
            "upscale": "/api/v1/upscale",
            "metrics": "/api/v1/metrics"
        }

    @app.get("/health", tags=["health"])
    async def health():
        """Liveness only; does not touch the model."""
        return {"status": "healthy", "version": settings.APP_VERSION}

    @app.get("/ready", tags=["health"])
    async def ready(request: Request):
        """Ready once the engine has a model loaded."""
        engine = getattr(request.app.state, "engine", None)
        loaded = engine is not None and engine.is_ready

        return JSONResponse(
            status_code=200 if loaded else 503,
            content={
                "ready": loaded,
                "engine_state": engine.state.value if engine is not None else None,
                "backends": engine.backends if engine is not None else [],
                "model": settings.MODEL_NAME,
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("src.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG, log_level="info")
