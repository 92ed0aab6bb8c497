from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

import numpy as np
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.core.config import settings


class EngineState(str, Enum):
    IDLE = "IDLE"
    MODEL_LOADING = "MODEL_LOADING"
    READY = "READY"
    UPSCALING = "UPSCALING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class UpscaleConfig(BaseModel):
    """Tiling configuration for one upscale call.

    Values are range-checked by calc_rendering_params, which raises
    InvalidConfigError, so construction itself accepts any integers.
    """
    model_config = ConfigDict(frozen=True)

    scale: int = Field(default_factory=lambda: settings.UPSCALE_SCALE)
    offset: int = Field(default_factory=lambda: settings.UPSCALE_OFFSET)
    tile_size: int = Field(default_factory=lambda: settings.UPSCALE_TILE_SIZE)


class RenderingParams(BaseModel):
    """Tiling geometry derived once per operation from image size and config."""
    model_config = ConfigDict(frozen=True)

    y_h: int
    y_w: int
    input_offset: int
    input_blend_size: int
    input_tile_step: int
    output_tile_step: int
    h_blocks: int
    w_blocks: int
    input_h: int
    input_w: int
    y_buffer_h: int
    y_buffer_w: int
    pad: Tuple[int, int, int, int]  # left, right, top, bottom
    scale: int

    @property
    def total_tiles(self) -> int:
        return self.h_blocks * self.w_blocks

    @property
    def output_crop_offset(self) -> int:
        return self.input_offset * self.scale

    @property
    def buffer_elements(self) -> int:
        return 3 * self.y_buffer_h * self.y_buffer_w


class RasterImage(BaseModel):
    """Decoded 8-bit interleaved RGBA raster."""
    model_config = ConfigDict(frozen=True)

    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    pixels: bytes

    @model_validator(mode="after")
    def _check_length(self):
        expected = self.width * self.height * 4
        if len(self.pixels) != expected:
            raise ValueError(
                f"RGBA buffer has {len(self.pixels)} bytes, expected {expected} "
                f"for {self.width}x{self.height}"
            )
        return self

    def as_array(self) -> np.ndarray:
        """Read-only (H, W, 4) uint8 view of the pixels."""
        return np.frombuffer(self.pixels, dtype=np.uint8).reshape(self.height, self.width, 4)

    @classmethod
    def from_array(cls, rgba: np.ndarray) -> "RasterImage":
        if rgba.ndim != 3 or rgba.shape[2] != 4:
            raise ValueError(f"Expected HxWx4 array, got shape {rgba.shape}")
        h, w = rgba.shape[:2]
        return cls(width=w, height=h, pixels=np.ascontiguousarray(rgba, dtype=np.uint8).tobytes())

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RasterImage":
        rgba = image.convert("RGBA")
        return cls(width=rgba.width, height=rgba.height, pixels=rgba.tobytes())

    def to_pil(self) -> Image.Image:
        return Image.frombytes("RGBA", (self.width, self.height), self.pixels)


class UpscaleProgress(BaseModel):
    current: int
    total: int
    percentage: int


# =============================================================================
# Worker messages (caller -> worker)
# =============================================================================

class LoadModelRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["load_model"] = "load_model"
    weights: bytes


class UpscaleRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["upscale"] = "upscale"
    operation_id: str
    raster: RasterImage
    config: UpscaleConfig


class ShutdownRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["shutdown"] = "shutdown"


WorkerRequest = Union[LoadModelRequest, UpscaleRequest, ShutdownRequest]


# =============================================================================
# Worker events (worker -> caller)
# =============================================================================

class ModelLoadedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["model_loaded"] = "model_loaded"
    backends: List[str] = Field(default_factory=list)
    load_time_ms: int = 0


class ProgressEvent(UpscaleProgress):
    model_config = ConfigDict(frozen=True)

    type: Literal["progress"] = "progress"


class CompleteEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["complete"] = "complete"
    raster: RasterImage

    @property
    def width(self) -> int:
        return self.raster.width

    @property
    def height(self) -> int:
        return self.raster.height


class ErrorEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    error_type: str
    message: str
    stage: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "message": self.message,
            "stage": self.stage,
            "details": self.details,
        }


class ShutdownCompleteEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["shutdown_complete"] = "shutdown_complete"


WorkerEvent = Union[ModelLoadedEvent, ProgressEvent, CompleteEvent, ErrorEvent, ShutdownCompleteEvent]
