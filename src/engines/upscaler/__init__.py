"""
Upscaler Engine - tiled neural super-resolution

Splits an image into overlapping tiles, runs each through a pretrained
model, and stitches the outputs back with seam blending.
"""

from src.engines.upscaler.engine import UpscalerEngine
from src.engines.upscaler.params import calc_rendering_params
from src.engines.upscaler.repositories import ModelRepository
from src.engines.upscaler.schemas import (
    CompleteEvent,
    EngineState,
    ProgressEvent,
    RasterImage,
    RenderingParams,
    UpscaleConfig,
    UpscaleProgress,
)

__all__ = [
    "UpscalerEngine",
    "ModelRepository",
    "calc_rendering_params",
    "CompleteEvent",
    "EngineState",
    "ProgressEvent",
    "RasterImage",
    "RenderingParams",
    "UpscaleConfig",
    "UpscaleProgress",
]
