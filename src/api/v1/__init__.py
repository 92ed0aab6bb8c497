"""
API v1 Router Module - Upscale Service

All v1 endpoints are prefixed with /api/v1/

Primary endpoint: POST /api/v1/upscale
- Blocking JSON response or NDJSON progress stream
- Model weights served from the local cache
"""

from fastapi import APIRouter

from src.api.v1.upscale import router as upscale_router
from src.api.v1.models import router as models_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(upscale_router, prefix="/upscale", tags=["upscale"])
api_v1_router.include_router(models_router, prefix="/models", tags=["models"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
