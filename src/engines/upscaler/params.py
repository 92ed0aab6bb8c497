"""
Rendering parameters for tiled inference.

Derives the tile grid, padding and output canvas for one image. All
guardrails fire here, before any buffer is allocated.
"""

import math

from src.core.exceptions import InvalidConfigError, OutputTooLargeError, TooManyTilesError
from src.engines.upscaler.schemas import RenderingParams, UpscaleConfig

# Width of the seam blending ramp, in output pixels
BLEND_SIZE = 16

# Per-axis tile count ceiling
MAX_TILE_BLOCKS = 1000

# Ceiling on 3 * y_buffer_h * y_buffer_w float elements
MAX_BUFFER_ELEMENTS = (2 ** 30) // 3


def validate_config(config: UpscaleConfig) -> int:
    """Check config ranges and return the input tile step."""
    if config.scale < 1:
        raise InvalidConfigError(
            f"scale must be >= 1, got {config.scale}",
            details={"scale": config.scale}
        )
    if config.offset < 0:
        raise InvalidConfigError(
            f"offset must be >= 0, got {config.offset}",
            details={"offset": config.offset}
        )
    if config.tile_size <= 0:
        raise InvalidConfigError(
            f"tile_size must be > 0, got {config.tile_size}",
            details={"tile_size": config.tile_size}
        )

    input_offset = math.ceil(config.offset / config.scale)
    input_blend_size = math.ceil(BLEND_SIZE / config.scale)
    input_tile_step = config.tile_size - (input_offset * 2 + input_blend_size)

    if input_tile_step <= 0:
        raise InvalidConfigError(
            f"Invalid tile configuration: input_tile_step={input_tile_step}. "
            f"Tile size ({config.tile_size}) is too small for offset ({config.offset}) "
            f"and blend size ({BLEND_SIZE}).",
            details={
                "scale": config.scale,
                "offset": config.offset,
                "tile_size": config.tile_size,
                "input_tile_step": input_tile_step,
            }
        )
    return input_tile_step


def _count_blocks(length: int, input_offset: int, tile_size: int, step: int, axis: str):
    """Return (blocks, covered_length) for one axis.

    covered_length is the smallest ``n * step + tile_size`` reaching
    ``length + 2 * input_offset``; blocks is ``n + 1``.
    """
    target = length + input_offset * 2
    n = max(0, math.ceil((target - tile_size) / step))
    blocks = n + 1
    if blocks > MAX_TILE_BLOCKS:
        raise TooManyTilesError(
            f"Too many {axis} blocks ({blocks}). Image may be too large or "
            f"tile configuration is invalid.",
            details={"axis": axis, "blocks": blocks, "max_blocks": MAX_TILE_BLOCKS}
        )
    return blocks, n * step + tile_size


def calc_rendering_params(image_width: int, image_height: int, config: UpscaleConfig) -> RenderingParams:
    """Compute tiling geometry for an image.

    Raises:
        InvalidConfigError: bad scale/offset/tile size, or non-positive tile step
        TooManyTilesError: either axis needs more than MAX_TILE_BLOCKS tiles
        OutputTooLargeError: the output canvas exceeds MAX_BUFFER_ELEMENTS
    """
    if image_width <= 0 or image_height <= 0:
        raise InvalidConfigError(
            f"Image dimensions must be positive, got {image_width}x{image_height}"
        )

    input_tile_step = validate_config(config)
    scale = config.scale
    input_offset = math.ceil(config.offset / scale)
    input_blend_size = math.ceil(BLEND_SIZE / scale)

    h_blocks, input_h = _count_blocks(image_height, input_offset, config.tile_size, input_tile_step, "height")
    w_blocks, input_w = _count_blocks(image_width, input_offset, config.tile_size, input_tile_step, "width")

    y_buffer_h = input_h * scale
    y_buffer_w = input_w * scale
    buffer_elements = 3 * y_buffer_h * y_buffer_w
    if buffer_elements > MAX_BUFFER_ELEMENTS:
        raise OutputTooLargeError(
            f"Output buffer too large: {buffer_elements} elements (max: {MAX_BUFFER_ELEMENTS}). "
            f"Please use a smaller input image.",
            details={
                "y_buffer_h": y_buffer_h,
                "y_buffer_w": y_buffer_w,
                "max_elements": MAX_BUFFER_ELEMENTS,
            }
        )

    return RenderingParams(
        y_h=image_height * scale,
        y_w=image_width * scale,
        input_offset=input_offset,
        input_blend_size=input_blend_size,
        input_tile_step=input_tile_step,
        output_tile_step=input_tile_step * scale,
        h_blocks=h_blocks,
        w_blocks=w_blocks,
        input_h=input_h,
        input_w=input_w,
        y_buffer_h=y_buffer_h,
        y_buffer_w=y_buffer_w,
        pad=(
            input_offset,
            input_w - (image_width + input_offset),
            input_offset,
            input_h - (image_height + input_offset),
        ),
        scale=scale,
    )
