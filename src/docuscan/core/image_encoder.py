#!/usr/bin/env python3
"""
image_encoder.py: Shrink a letter photo into a size-bounded base64 JPEG.

The image is downscaled to a maximum width and re-encoded at decreasing JPEG
quality until the estimated size fits under the target or the quality floor is
reached. The size estimate is ``len(base64) * 0.75``, which is what the upload
ceiling was tuned against.

Supports input formats JPEG, PNG, and HEIC (requires pillow-heif).

Usage:
    python3 -m docuscan.core.image_encoder <input_path> -o out.jpeg [--target-bytes 1048576]
"""

import argparse
import asyncio
import base64
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from ..utils.log_utils import configure_logging, get_logger
from .errors import CompressionFailure

logger = get_logger(__name__)

try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
except ImportError:
    pass

from PIL import Image, ImageOps

MAX_WIDTH = 1200
TARGET_BYTES = 1024 * 1024
INITIAL_QUALITY = 80
QUALITY_STEP = 10
QUALITY_FLOOR = 10
SIZE_RATIO = 0.75

ImageSource = Union[str, Path, bytes, Image.Image]


def estimate_size(b64: str) -> int:
    """Approximate decoded byte size of a base64 string."""
    return int(len(b64) * SIZE_RATIO)


@dataclass(frozen=True)
class CompressedImage:
    """Result of compression: base64 JPEG plus how it was produced."""
    b64: str
    quality: int
    estimated_size: int
    width: int
    height: int
    target_bytes: int

    @property
    def data(self) -> bytes:
        return base64.b64decode(self.b64)

    @property
    def within_target(self) -> bool:
        return self.estimated_size <= self.target_bytes


def _open(source: ImageSource) -> Image.Image:
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, (bytes, bytearray)):
        return Image.open(io.BytesIO(source))
    return Image.open(source)


def _resize_to_width(img: Image.Image, max_width: int) -> Image.Image:
    w, h = img.size
    if w <= max_width:
        return img
    new_h = max(1, int(round(h * max_width / w)))
    try:
        resample_filter = Image.Resampling.LANCZOS
    except AttributeError:
        resample_filter = Image.LANCZOS
    return img.resize((max_width, new_h), resample=resample_filter)


def _encode(img: Image.Image, quality: int) -> str:
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class ImageCompressor:
    """Downscale and re-encode images until they fit a soft size ceiling."""

    def __init__(
        self,
        max_width: int = MAX_WIDTH,
        initial_quality: int = INITIAL_QUALITY,
        quality_step: int = QUALITY_STEP,
        quality_floor: int = QUALITY_FLOOR,
    ) -> None:
        if quality_step <= 0:
            raise ValueError("quality_step must be positive")
        if not 1 <= quality_floor <= initial_quality <= 95:
            raise ValueError("expected 1 <= quality_floor <= initial_quality <= 95")
        self.max_width = max_width
        self.initial_quality = initial_quality
        self.quality_step = quality_step
        self.quality_floor = quality_floor

    def compress(self, source: ImageSource, target_bytes: int = TARGET_BYTES) -> CompressedImage:
        """
        Compress `source` towards `target_bytes`.

        Never fails because the target is unmet: once the quality floor is
        reached the last encoding is returned as best effort.

        Raises:
            CompressionFailure: if the image cannot be opened or encoded.
        """
        try:
            img = _open(source)
            img = ImageOps.exif_transpose(img)
            if img.mode != "RGB":
                img = img.convert("RGB")
            img = _resize_to_width(img, self.max_width)

            quality = self.initial_quality
            b64 = _encode(img, quality)
            size = estimate_size(b64)
            logger.debug("Initial encoding at q=%d: ~%d bytes", quality, size)

            while size > target_bytes and quality > self.quality_floor:
                quality = max(self.quality_floor, quality - self.quality_step)
                b64 = _encode(img, quality)
                size = estimate_size(b64)
                logger.debug("Re-encoded at q=%d: ~%d bytes", quality, size)
        except (OSError, ValueError, Image.DecompressionBombError) as err:
            logger.error("Failed to compress image: %s", err)
            raise CompressionFailure(f"compression failed: {err}")

        if size > target_bytes:
            logger.warning("Quality floor reached at ~%d bytes (target %d)", size, target_bytes)
        else:
            logger.info("Compressed to ~%d bytes at q=%d (%dx%d)", size, quality, img.width, img.height)
        return CompressedImage(
            b64=b64,
            quality=quality,
            estimated_size=size,
            width=img.width,
            height=img.height,
            target_bytes=target_bytes,
        )

    async def compress_async(self, source: ImageSource, target_bytes: int = TARGET_BYTES) -> CompressedImage:
        """Run `compress` in the default executor (it is CPU-bound)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.compress, source, target_bytes)


def parse_args():
    # mainly used to test
    parser = argparse.ArgumentParser(
        description="Downscale an image and re-encode it as JPEG under a target size."
    )
    parser.add_argument("input", help="Path to the input image file.")
    parser.add_argument("-o", "--output", required=True, help="Where to write the JPEG.")
    parser.add_argument(
        "--target-bytes",
        type=int,
        default=TARGET_BYTES,
        help=f"Soft size ceiling in bytes (default: {TARGET_BYTES}).",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical", "none"],
        default="none",
        help="Set logging level ('none' disables logging)",
    )
    return parser.parse_args()


def main():
    args = parse_args()
    if args.log_level.lower() != "none":
        configure_logging(getattr(logging, args.log_level.upper()))
    result = ImageCompressor().compress(args.input, args.target_bytes)
    Path(args.output).write_bytes(result.data)


if __name__ == "__main__":
    main()
