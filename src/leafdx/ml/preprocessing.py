"""Image preprocessing: caller-side decoding and the model input encoder.

``decode_image`` sits on the caller's side of the pipeline boundary and turns
file bytes into an RGB raster. ``encode`` converts that raster into the flat
float32 buffer the inference engine expects: resampled to the model's
spatial size, values scaled to [0, 1], row-major with R, G, B interleaved
per pixel.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from leafdx.exceptions import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

PIXEL_SIZE: int = 3  # R, G, B
MAX_CHANNEL_VALUE: float = 255.0


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Optional upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        DecodeError: If the image cannot be decoded or exceeds the size limit.
    """
    if not image_bytes:
        raise DecodeError("Image data is empty")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise DecodeError(f"Image has {width * height} pixels, limit is {max_pixels}")
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Cannot decode image: {exc}") from exc

    return np.asarray(rgb, dtype=np.uint8)


def encode(image: NDArray[np.uint8], target_width: int, target_height: int) -> NDArray[np.float32]:
    """Convert an RGB image into the model's flat input buffer.

    The image is resampled bilinearly to exactly ``target_width`` x
    ``target_height``; aspect ratio is not preserved. The source array is
    never modified.

    Args:
        image: HxWx3 RGB uint8 array.
        target_width: Model input width in pixels.
        target_height: Model input height in pixels.

    Returns:
        float32 array of length ``target_width * target_height * 3``.

    Raises:
        ValueError: If the image is not an HxWx3 uint8 array or the target
            size is not positive.
    """
    if image.ndim != 3 or image.shape[2] != PIXEL_SIZE:
        raise ValueError(f"Expected an HxWx3 RGB image, got shape {image.shape}")
    if image.dtype != np.uint8:
        raise ValueError(f"Expected uint8 pixels, got {image.dtype}")
    if target_width <= 0 or target_height <= 0:
        raise ValueError(f"Invalid target size {target_width}x{target_height}")

    resized = Image.fromarray(image).resize(
        (target_width, target_height),
        resample=Image.Resampling.BILINEAR,
    )
    # (height, width, 3) in C order flattens to row-major RGBRGB...
    pixels = np.asarray(resized, dtype=np.float32)
    buffer = (pixels / MAX_CHANNEL_VALUE).reshape(-1)

    logger.debug(
        "Encoded %dx%d image into %dx%d buffer",
        image.shape[1],
        image.shape[0],
        target_width,
        target_height,
    )
    return buffer
