"""
Seam blending for overlapping tile outputs.

Each tile output is weighted by a border ramp (the blend filter) and folded
into a canvas-sized buffer with an online weighted average, so the buffer is
a valid image after every update and no normalization pass runs at the end.
"""

from typing import Optional

import numpy as np

from src.core.exceptions import InferenceFailedError, OutputTooLargeError
from src.core.logging import get_logger
from src.engines.upscaler.params import BLEND_SIZE, MAX_BUFFER_ELEMENTS
from src.engines.upscaler.schemas import RenderingParams, UpscaleConfig

logger = get_logger(__name__)

# Weight sums at or below this are treated as empty
WEIGHT_EPSILON = 1e-8


def create_blend_filter(scale: int, offset: int, tile_size: int) -> np.ndarray:
    """
    Per-pixel confidence mask of shape (3, S, S), S = tile_size * scale - 2 * offset.

    Pixels at least BLEND_SIZE from every edge weigh 1.0. Closer pixels ramp
    linearly as (d + 1) / (BLEND_SIZE + 1), where d is the distance to the
    nearest edge, so the outermost ring still weighs 1 / (BLEND_SIZE + 1).
    """
    filter_size = tile_size * scale - offset * 2
    if filter_size <= 0:
        raise ValueError(f"Blend filter size must be positive, got {filter_size}")

    idx = np.arange(filter_size)
    edge_dist = np.minimum(idx, filter_size - 1 - idx)
    min_dist = np.minimum(edge_dist[:, None], edge_dist[None, :])

    weights = np.where(
        min_dist >= BLEND_SIZE,
        1.0,
        (min_dist + 1.0) / (BLEND_SIZE + 1.0)
    ).astype(np.float32)

    return np.ascontiguousarray(np.broadcast_to(weights, (3, filter_size, filter_size)))


class SeamBlendingAccumulator:
    """
    Online weighted-average buffer spanning the whole output canvas.

    Owned by exactly one upscale operation and mutated in place without
    locking; never share an instance between operations.
    """

    def __init__(self, params: RenderingParams, config: UpscaleConfig, blend_filter: Optional[np.ndarray] = None):
        if params.buffer_elements > MAX_BUFFER_ELEMENTS:
            raise OutputTooLargeError(
                f"Buffer size too large: {params.buffer_elements} elements (max: {MAX_BUFFER_ELEMENTS})"
            )

        self.params = params
        self.config = config
        self.blend_filter = (
            blend_filter if blend_filter is not None
            else create_blend_filter(config.scale, config.offset, config.tile_size)
        )

        shape = (3, params.y_buffer_h, params.y_buffer_w)
        self.pixels = np.zeros(shape, dtype=np.float32)
        self.weights = np.zeros(shape, dtype=np.float32)
        self.updates = 0

        logger.debug(
            "accumulator_allocated",
            buffer_shape=shape,
            filter_shape=self.blend_filter.shape,
            buffer_bytes=2 * self.pixels.nbytes
        )

    def update(self, tile: np.ndarray, tile_row: int, tile_col: int) -> np.ndarray:
        """
        Fold one tile output into the canvas and return the blended region.

        The tile lands at (tile_row, tile_col) * output_tile_step. For every
        covered element:
            new_w = old_w + blend_w
            pixel = pixel * old_w / new_w + value * blend_w / new_w   (new_w > eps)
            pixel = value                                             (otherwise)
            weight = new_w
        """
        if tile.ndim == 4:
            tile = tile[0]
        if tile.ndim != 3:
            raise InferenceFailedError(f"Unexpected tile output rank {tile.ndim}")

        c, h, w = tile.shape
        if tile.shape != self.blend_filter.shape:
            raise InferenceFailedError(
                f"Tile size ({c}x{h}x{w}) does not match blend filter size "
                f"({'x'.join(str(d) for d in self.blend_filter.shape)})",
                details={"tile_shape": list(tile.shape), "filter_shape": list(self.blend_filter.shape)}
            )

        top = self.params.output_tile_step * tile_row
        left = self.params.output_tile_step * tile_col
        if top + h > self.params.y_buffer_h or left + w > self.params.y_buffer_w:
            raise InferenceFailedError(
                f"Tile ({tile_row}, {tile_col}) extends past the output canvas",
                details={"top": top, "left": left, "tile_h": h, "tile_w": w}
            )

        region = (slice(None), slice(top, top + h), slice(left, left + w))
        old_pixels = self.pixels[region]
        old_weights = self.weights[region]
        tile = tile.astype(np.float32, copy=False)

        next_weights = old_weights + self.blend_filter
        valid = next_weights > WEIGHT_EPSILON
        safe_weights = np.where(valid, next_weights, 1.0)

        blended = np.where(
            valid,
            old_pixels * (old_weights / safe_weights) + tile * (self.blend_filter / safe_weights),
            tile
        )

        self.pixels[region] = blended
        self.weights[region] = next_weights
        self.updates += 1
        return blended

    def get_result(self) -> np.ndarray:
        """The (3, y_buffer_h, y_buffer_w) canvas, already normalized."""
        return self.pixels
