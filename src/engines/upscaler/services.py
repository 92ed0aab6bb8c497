"""
Tiled Upscale Service - the per-operation tile loop.

For one raster:
1. Guardrails (max dimension, rendering params) before any allocation
2. Raster -> tensor, mirror pad
3. Row-major tile loop: crop, infer, blend, report progress
4. Crop the canvas, tensor -> raster

All buffers are local to one call and released when it returns or raises.
"""

import time
from typing import Callable, Optional

import numpy as np

from src.core.config import settings
from src.core.exceptions import ImageTooLargeError, UpscaleCancelledError
from src.core.logging import LogContext, get_logger
from src.core.metrics import record_tile, track_operation
from src.engines.upscaler.blending import SeamBlendingAccumulator, create_blend_filter
from src.engines.upscaler.codec import raster_to_tensor, tensor_to_raster
from src.engines.upscaler.params import calc_rendering_params
from src.engines.upscaler.schemas import RasterImage, UpscaleConfig, UpscaleProgress
from src.engines.upscaler.session import InferenceSession
from src.engines.upscaler.tiling import crop_tensor, reflection_pad

logger = get_logger(__name__)

ProgressCallback = Callable[[UpscaleProgress], None]


def make_progress(current: int, total: int) -> UpscaleProgress:
    return UpscaleProgress(
        current=current,
        total=total,
        percentage=round(current / total * 100)
    )


def trim_tile_output(output: np.ndarray, config: UpscaleConfig) -> np.ndarray:
    """
    Drop the offset margin from a full-size tile output.

    Models that return tile_size * scale on each axis still carry the
    context margin; models that trim it themselves pass through unchanged.
    """
    full = config.tile_size * config.scale
    if config.offset > 0 and output.ndim in (3, 4) and output.shape[-2:] == (full, full):
        trimmed = full - 2 * config.offset
        return crop_tensor(output, config.offset, config.offset, trimmed, trimmed)
    return output


class TiledUpscaleService:
    """Runs one tiled super-resolution pass against a loaded session."""

    def __init__(self, max_image_dimension: Optional[int] = None):
        self.max_image_dimension = max_image_dimension or settings.MAX_IMAGE_DIMENSION

    def check_dimensions(self, raster: RasterImage) -> None:
        if raster.width > self.max_image_dimension or raster.height > self.max_image_dimension:
            raise ImageTooLargeError(
                f"Image too large: {raster.width}x{raster.height}. "
                f"Maximum dimension: {self.max_image_dimension}px",
                details={
                    "width": raster.width,
                    "height": raster.height,
                    "max_dimension": self.max_image_dimension,
                }
            )

    def upscale(
        self,
        raster: RasterImage,
        config: UpscaleConfig,
        session: InferenceSession,
        operation_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        is_cancelled: Optional[Callable[[], bool]] = None
    ) -> RasterImage:
        """
        Upscale a raster by config.scale.

        Raises:
            ImageTooLargeError, InvalidConfigError, TooManyTilesError,
            OutputTooLargeError: guardrails, before any buffer exists
            InferenceFailedError: a tile's forward pass failed
            UpscaleCancelledError: is_cancelled() turned true between tiles
        """
        outcome = {}
        with LogContext(operation_id=operation_id, stage="validate") as ctx, track_operation(outcome):
            start = time.time()
            try:
                self.check_dimensions(raster)
                params = calc_rendering_params(raster.width, raster.height, config)

                logger.info(
                    "upscale_started",
                    width=raster.width,
                    height=raster.height,
                    scale=config.scale,
                    offset=config.offset,
                    tile_size=config.tile_size,
                    h_blocks=params.h_blocks,
                    w_blocks=params.w_blocks
                )

                ctx.set_stage("prepare")
                pad_left, pad_right, pad_top, pad_bottom = params.pad
                padded = reflection_pad(raster_to_tensor(raster), pad_left, pad_right, pad_top, pad_bottom)
                accumulator = SeamBlendingAccumulator(
                    params,
                    config,
                    create_blend_filter(config.scale, config.offset, config.tile_size)
                )

                ctx.set_stage("tiling")
                total = params.total_tiles
                current = 0
                for tile_row in range(params.h_blocks):
                    for tile_col in range(params.w_blocks):
                        if is_cancelled is not None and is_cancelled():
                            outcome["status"] = "cancelled"
                            raise UpscaleCancelledError(details={"completed_tiles": current, "total_tiles": total})

                        tile = crop_tensor(
                            padded,
                            tile_col * params.input_tile_step,
                            tile_row * params.input_tile_step,
                            config.tile_size,
                            config.tile_size
                        )

                        tile_start = time.time()
                        output = trim_tile_output(session.run(tile), config)
                        tile_latency = time.time() - tile_start

                        accumulator.update(output, tile_row, tile_col)
                        record_tile(tile_latency)

                        current += 1
                        logger.debug(
                            "tile_processed",
                            tile=[tile_row, tile_col],
                            inference_ms=round(tile_latency * 1000, 1)
                        )
                        if on_progress is not None:
                            on_progress(make_progress(current, total))

                ctx.set_stage("finalize")
                crop = params.output_crop_offset
                result = crop_tensor(accumulator.get_result(), crop, crop, params.y_w, params.y_h)
                output_raster = tensor_to_raster(result, params.y_w, params.y_h)

            except Exception as e:
                logger.error(
                    "upscale_failed",
                    error=getattr(e, "message", str(e)),
                    error_type=type(e).__name__
                )
                raise

            outcome["status"] = "completed"
            logger.info(
                "upscale_completed",
                output_width=output_raster.width,
                output_height=output_raster.height,
                tiles=total,
                duration_ms=int((time.time() - start) * 1000)
            )
            return output_raster
