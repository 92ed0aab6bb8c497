import numpy as np

from src.engines.upscaler.schemas import RasterImage


def raster_to_tensor(raster: RasterImage) -> np.ndarray:
    """RGBA8 raster -> (1, 3, H, W) float32 in [0, 1]. Alpha is dropped."""
    rgba = raster.as_array()
    rgb = rgba[:, :, :3].astype(np.float32) / 255.0
    return np.ascontiguousarray(rgb.transpose(2, 0, 1)[np.newaxis])


def tensor_to_raster(tensor: np.ndarray, width: int, height: int) -> RasterImage:
    """
    Planar RGB tensor -> RGBA8 raster with opaque alpha.

    Accepts (3, H, W) or (1, 3, H, W). Values are scaled by 255, rounded
    half-up and clamped to [0, 255] on both sides, since model output can
    overshoot the unit range.
    """
    if tensor.ndim == 4:
        tensor = tensor[0]
    if tensor.shape != (3, height, width):
        raise ValueError(f"Tensor shape {tensor.shape} does not match 3x{height}x{width}")

    rgb = np.floor(tensor.astype(np.float32) * 255.0 + 0.5)
    rgb = np.clip(rgb, 0.0, 255.0).astype(np.uint8)

    rgba = np.full((height, width, 4), 255, dtype=np.uint8)
    rgba[:, :, :3] = rgb.transpose(1, 2, 0)
    return RasterImage.from_array(rgba)
