"""Test doubles shared across unit and e2e tests."""

import time
from typing import Iterable, Optional

import numpy as np

from src.engines.upscaler.schemas import RasterImage
from src.engines.upscaler.session import BACKENDS, InferenceSession


class StubSession(InferenceSession):
    """Returns a constant tile of the size a real model would produce.

    values: one constant per call in order, the last one repeating.
    """

    def __init__(
        self,
        scale: int = 2,
        offset: int = 16,
        values: Iterable[float] = (0.5,),
        delay: float = 0.0,
        error: Optional[Exception] = None
    ):
        self.backends = [BACKENDS["cpu"]]
        self.scale = scale
        self.offset = offset
        self.values = list(values)
        self.delay = delay
        self.error = error
        self.calls = 0
        self.closed = False

    def run(self, tile: np.ndarray) -> np.ndarray:
        if self.error is not None:
            raise self.error
        if self.delay:
            time.sleep(self.delay)
        value = self.values[min(self.calls, len(self.values) - 1)]
        self.calls += 1
        size = tile.shape[-1] * self.scale - 2 * self.offset
        return np.full((1, 3, size, size), value, dtype=np.float32)

    def close(self) -> None:
        self.closed = True


class FullSizeSession(StubSession):
    """Returns tile_size * scale outputs whose offset margin is zeroed."""

    def run(self, tile: np.ndarray) -> np.ndarray:
        inner = super().run(tile)
        size = tile.shape[-1] * self.scale
        output = np.zeros((1, 3, size, size), dtype=np.float32)
        output[..., self.offset:size - self.offset, self.offset:size - self.offset] = inner
        return output


def build_raster(width: int, height: int, seed: int = 0) -> RasterImage:
    rng = np.random.default_rng(seed)
    rgba = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
    return RasterImage.from_array(rgba)
