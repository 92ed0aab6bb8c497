"""
Upscale Endpoints

POST /api/v1/upscale         - Upscale an image, return the PNG when done
POST /api/v1/upscale/stream  - Same, streamed as NDJSON progress lines
"""

import asyncio
import base64
import binascii
import io
import json
import time
from contextlib import aclosing
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field, field_validator

from src.core.config import settings
from src.core.exceptions import InvalidConfigError, UpscalerBaseException
from src.core.logging import get_logger
from src.api.dependencies import get_ready_engine
from src.engines.upscaler.engine import UpscalerEngine
from src.engines.upscaler.schemas import CompleteEvent, RasterImage, UpscaleConfig

# Constants for file size limits
MAX_IMAGE_SIZE_BYTES = settings.MAX_IMAGE_SIZE_BYTES
MAX_IMAGE_SIZE_MB = MAX_IMAGE_SIZE_BYTES / (1024 * 1024)

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class UpscaleRequestDTO(BaseModel):
    """Request body for an upscale."""
    image_base64: str = Field(..., description="Base64 encoded PNG/JPEG/WebP image")
    scale: Optional[int] = Field(default=None, description="Model upscale factor")
    offset: Optional[int] = Field(default=None, description="Per-tile context margin in output pixels")
    tile_size: Optional[int] = Field(default=None, description="Input tile edge length")

    @field_validator("image_base64")
    @classmethod
    def validate_image_size(cls, v: str) -> str:
        """Validate that the base64 image doesn't exceed the maximum size."""
        # Approximate decoded size (base64 is ~33% larger than binary)
        decoded_size_bytes = len(v) * 3 / 4

        if decoded_size_bytes > MAX_IMAGE_SIZE_BYTES:
            actual_size_mb = decoded_size_bytes / (1024 * 1024)
            raise ValueError(
                f"Image size ({actual_size_mb:.2f}MB) exceeds maximum allowed size ({MAX_IMAGE_SIZE_MB:.0f}MB)."
            )
        return v

    def to_config(self) -> UpscaleConfig:
        overrides = {
            key: value
            for key, value in (("scale", self.scale), ("offset", self.offset), ("tile_size", self.tile_size))
            if value is not None
        }
        return UpscaleConfig(**overrides)


class UpscaleResponse(BaseModel):
    """Result of a completed upscale."""
    width: int
    height: int
    image_base64: str
    tiles: int
    duration_ms: int


# =============================================================================
# Helpers
# =============================================================================

def decode_image(image_base64: str) -> RasterImage:
    """Decode a base64 image into an RGBA raster."""
    if "," in image_base64:
        image_base64 = image_base64.split(",", 1)[1]
    try:
        data = base64.b64decode(image_base64, validate=True)
        with Image.open(io.BytesIO(data)) as image:
            return RasterImage.from_pil(image)
    except (binascii.Error, UnidentifiedImageError, OSError) as e:
        raise InvalidConfigError(f"Could not decode image: {e}") from e


def encode_png(raster: RasterImage) -> str:
    buffer = io.BytesIO()
    raster.to_pil().save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=UpscaleResponse)
async def upscale_image(
    request: UpscaleRequestDTO,
    engine: UpscalerEngine = Depends(get_ready_engine)
):
    """
    Upscale an image and return the result as a base64 PNG.

    Errors:
    - 400 InvalidConfigError: undecodable image or bad tile configuration
    - 409 EngineBusyError: another upscale is in progress
    - 413 ImageTooLarge / TooManyTiles / OutputTooLarge
    - 500 InferenceFailedError
    """
    raster = await asyncio.to_thread(decode_image, request.image_base64)
    config = request.to_config()

    start = time.time()
    tiles = 0

    def count_tiles(progress) -> None:
        nonlocal tiles
        tiles = progress.total

    result = await engine.upscale(raster, config, on_progress=count_tiles)

    return UpscaleResponse(
        width=result.width,
        height=result.height,
        image_base64=await asyncio.to_thread(encode_png, result),
        tiles=tiles,
        duration_ms=int((time.time() - start) * 1000)
    )


@router.post("/stream")
async def upscale_image_stream(
    request: UpscaleRequestDTO,
    engine: UpscalerEngine = Depends(get_ready_engine)
):
    """
    Upscale with live progress.

    Response is NDJSON: one {"type": "progress", ...} line per tile, then a
    single terminal {"type": "complete", ...} or {"type": "error", ...} line.
    A client disconnect stops tile dispatch.
    """
    raster = await asyncio.to_thread(decode_image, request.image_base64)
    config = request.to_config()

    async def event_lines():
        try:
            async with aclosing(engine.stream(raster, config)) as events:
                async for event in events:
                    if isinstance(event, CompleteEvent):
                        line = {
                            "type": "complete",
                            "width": event.width,
                            "height": event.height,
                            "image_base64": await asyncio.to_thread(encode_png, event.raster),
                        }
                    else:
                        line = event.model_dump()
                    yield json.dumps(line) + "\n"
        except UpscalerBaseException as e:
            yield json.dumps({"type": "error", "code": e.code, **e.to_payload()}) + "\n"

    return StreamingResponse(event_lines(), media_type="application/x-ndjson")
