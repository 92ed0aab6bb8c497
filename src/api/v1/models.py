"""
Model Endpoint

GET /api/v1/models/{model_name} - Serve model weights from the local cache
"""

from fastapi import APIRouter, Depends, HTTPException, Response

from src.core.config import settings
from src.api.dependencies import get_engine
from src.engines.upscaler.engine import UpscalerEngine

router = APIRouter()


@router.get("/{model_name}")
async def get_model(model_name: str, engine: UpscalerEngine = Depends(get_engine)):
    """
    Serve the configured model's bytes, fetching into the cache on a miss.

    Weights never change for a given name, so the response is marked
    immutable for a year.
    """
    if model_name != settings.MODEL_NAME or not settings.MODEL_URL:
        raise HTTPException(status_code=404, detail=f"Unknown model: {model_name}")

    data = await engine.model_repository.load(settings.MODEL_URL)

    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={
            "Cache-Control": "public, max-age=31536000, immutable",
            "Content-Disposition": f'attachment; filename="{model_name}"',
        }
    )
