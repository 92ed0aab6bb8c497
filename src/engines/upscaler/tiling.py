"""
Tile extraction and mirror padding on planar float tensors.

Both operations return new owned arrays; nothing aliases the source.
"""

import numpy as np

from src.core.exceptions import OutOfBoundsError


def crop_tensor(tensor: np.ndarray, x: int, y: int, width: int, height: int) -> np.ndarray:
    """Copy the region [y:y+height, x:x+width] of a (C,H,W) or (B,C,H,W) tensor."""
    if tensor.ndim not in (3, 4):
        raise ValueError(f"Unsupported tensor format: {tensor.ndim} dimensions")

    src_h, src_w = tensor.shape[-2:]
    if x < 0 or y < 0 or width <= 0 or height <= 0 or x + width > src_w or y + height > src_h:
        raise OutOfBoundsError(
            f"Crop ({x}, {y}, {width}x{height}) exceeds source {src_w}x{src_h}",
            details={"x": x, "y": y, "width": width, "height": height,
                     "source_width": src_w, "source_height": src_h}
        )

    return tensor[..., y:y + height, x:x + width].copy()


def reflect_indices(size: int, pad_before: int, pad_after: int) -> np.ndarray:
    """
    Source index for every destination coordinate along one axis.

    s = d - pad_before; s < 0 -> -s - 1; s >= size -> 2 * size - s - 1;
    then clamp into [0, size - 1]. The two reflections apply in sequence,
    so pads wider than the axis fall through to the clamp.
    """
    src = np.arange(size + pad_before + pad_after) - pad_before
    src = np.where(src < 0, -src - 1, src)
    src = np.where(src >= size, 2 * size - src - 1, src)
    return np.clip(src, 0, size - 1)


def reflection_pad(
    tensor: np.ndarray,
    pad_left: int,
    pad_right: int,
    pad_top: int,
    pad_bottom: int
) -> np.ndarray:
    """Mirror-pad the last two axes of a (C,H,W) or (B,C,H,W) tensor."""
    if tensor.ndim not in (3, 4):
        raise ValueError(f"Unsupported tensor format: {tensor.ndim} dimensions")
    if min(pad_left, pad_right, pad_top, pad_bottom) < 0:
        raise ValueError(
            f"Padding must be non-negative, got {(pad_left, pad_right, pad_top, pad_bottom)}"
        )

    h, w = tensor.shape[-2:]
    rows = reflect_indices(h, pad_top, pad_bottom)
    cols = reflect_indices(w, pad_left, pad_right)
    return np.ascontiguousarray(tensor[..., rows[:, None], cols[None, :]])
