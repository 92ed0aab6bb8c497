#!/usr/bin/env python3
"""
Upscale Image Script - run the tiled upscaler on a local file

This script:
1. Decodes the input image with Pillow
2. Loads the model through the local model cache
3. Runs the tiled upscale, printing progress
4. Saves the result as PNG

Usage:
    python scripts/upscale_image.py input.jpg output.png --model https://example.com/model.onnx

Environment variables:
    MODEL_URL: Default model locator
    MODEL_CACHE_DIR: Directory to cache models (default: ./ml_cache)
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path

from PIL import Image

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import settings
from src.core.exceptions import UpscalerBaseException
from src.core.logging import setup_logging, get_logger
from src.engines.upscaler import RasterImage, UpscaleConfig, UpscalerEngine

logger = get_logger(__name__)


async def upscale_file(input_path: Path, output_path: Path, locator: str, config: UpscaleConfig) -> None:
    with Image.open(input_path) as image:
        raster = RasterImage.from_pil(image)

    logger.info("input_loaded", path=str(input_path), width=raster.width, height=raster.height)

    def show_progress(progress) -> None:
        print(f"\rTile {progress.current}/{progress.total} ({progress.percentage}%)", end="", flush=True)

    async with UpscalerEngine() as engine:
        start = time.time()
        await engine.initialize(locator)
        result = await engine.upscale(raster, config, on_progress=show_progress)
        print()

    result.to_pil().save(output_path, format="PNG")
    logger.info(
        "output_saved",
        path=str(output_path),
        width=result.width,
        height=result.height,
        duration_s=round(time.time() - start, 2)
    )


def main():
    parser = argparse.ArgumentParser(
        description="Upscale an image with a tiled super-resolution model"
    )
    parser.add_argument("input", type=Path, help="Input image (PNG/JPEG/WebP)")
    parser.add_argument("output", type=Path, help="Output PNG path")
    parser.add_argument(
        "--model",
        default=settings.MODEL_URL,
        help="Model URL or local path (ONNX or TorchScript)"
    )
    parser.add_argument("--scale", type=int, default=settings.UPSCALE_SCALE, help="Model upscale factor")
    parser.add_argument("--offset", type=int, default=settings.UPSCALE_OFFSET, help="Per-tile context margin")
    parser.add_argument("--tile-size", type=int, default=settings.UPSCALE_TILE_SIZE, help="Input tile size")
    parser.add_argument("--verbose", action="store_true", help="Console logs at DEBUG level")

    args = parser.parse_args()

    setup_logging(log_level="DEBUG" if args.verbose else "WARNING", json_format=False)

    if not args.model:
        parser.error("no model given; pass --model or set MODEL_URL")

    config = UpscaleConfig(scale=args.scale, offset=args.offset, tile_size=args.tile_size)
    try:
        asyncio.run(upscale_file(args.input, args.output, args.model, config))
    except UpscalerBaseException as e:
        print(f"Upscale failed ({type(e).__name__}): {e.message}", file=sys.stderr)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
