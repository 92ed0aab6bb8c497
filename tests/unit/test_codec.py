import numpy as np
import pytest

from src.engines.upscaler.codec import raster_to_tensor, tensor_to_raster
from src.engines.upscaler.schemas import RasterImage


def test_tensor_layout_and_range(make_raster):
    raster = make_raster(5, 3)

    tensor = raster_to_tensor(raster)

    assert tensor.shape == (1, 3, 3, 5)
    assert tensor.dtype == np.float32
    assert tensor.min() >= 0.0
    assert tensor.max() <= 1.0
    # Pixel (row 1, col 4), green channel
    assert tensor[0, 1, 1, 4] == pytest.approx(raster.as_array()[1, 4, 1] / 255.0)


def test_round_trip_within_one_and_opaque(make_raster):
    raster = make_raster(17, 11, seed=7)

    restored = tensor_to_raster(raster_to_tensor(raster), 17, 11)

    original = raster.as_array().astype(np.int16)
    result = restored.as_array().astype(np.int16)
    assert np.abs(result[:, :, :3] - original[:, :, :3]).max() <= 1
    assert (result[:, :, 3] == 255).all()


def test_clamps_out_of_range_values():
    tensor = np.zeros((3, 1, 3), dtype=np.float32)
    tensor[:, 0, 0] = -0.5
    tensor[:, 0, 1] = 1.7
    tensor[:, 0, 2] = 0.5

    raster = tensor_to_raster(tensor, 3, 1)

    pixels = raster.as_array()
    assert list(pixels[0, 0]) == [0, 0, 0, 255]
    assert list(pixels[0, 1]) == [255, 255, 255, 255]
    assert list(pixels[0, 2]) == [128, 128, 128, 255]


def test_shape_mismatch_rejected():
    with pytest.raises(ValueError):
        tensor_to_raster(np.zeros((3, 4, 4), dtype=np.float32), 5, 4)


def test_raster_rejects_wrong_buffer_length():
    with pytest.raises(ValueError):
        RasterImage(width=2, height=2, pixels=b"\x00" * 15)
