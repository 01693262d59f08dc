"""Image preprocessing pipeline.

Decodes raw upload bytes into an RGB Pillow image (format detection, EXIF
orientation, color space conversion, size validation) and converts decoded
images into the NCHW float tensor the classification model expects.
"""

from __future__ import annotations

import io
import math
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from imagelens.errors import InvalidInputError

if TYPE_CHECKING:
    from numpy.typing import NDArray


def decode_image(image_bytes: bytes, max_pixels: int) -> Image.Image:
    """Decode raw image bytes into an RGB image.

    The caller owns the returned image and must ``close()`` it.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Upper bound on width * height.

    Returns:
        Decoded image in RGB mode with EXIF orientation applied.

    Raises:
        InvalidInputError: If the bytes are empty, not an image, or too large.
    """
    if not image_bytes:
        raise InvalidInputError("Empty image payload")

    try:
        with Image.open(io.BytesIO(image_bytes)) as probe:
            probe.verify()
        source = Image.open(io.BytesIO(image_bytes))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, EOFError) as exc:
        raise InvalidInputError(f"Could not decode image: {exc}") from exc

    try:
        width, height = source.size
        if width * height > max_pixels:
            raise InvalidInputError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")
        oriented = ImageOps.exif_transpose(source)
        rgb = oriented.convert("RGB")
    except (OSError, EOFError, Image.DecompressionBombError) as exc:
        raise InvalidInputError(f"Could not decode image: {exc}") from exc
    finally:
        source.close()

    if oriented is not rgb:
        oriented.close()
    return rgb


def to_model_input(
    image: Image.Image,
    size: int,
    crop_pct: float,
    mean: tuple[float, float, float],
    std: tuple[float, float, float],
) -> NDArray[np.float32]:
    """Resize, center-crop and normalize an RGB image.

    The shorter side is resized to ``size / crop_pct`` and the center
    ``size`` x ``size`` square is kept.

    Returns:
        Float32 tensor of shape (1, 3, size, size).
    """
    scale_to = math.floor(size / crop_pct)
    width, height = image.size
    if width <= height:
        new_w, new_h = scale_to, max(1, round(height * scale_to / width))
    else:
        new_w, new_h = max(1, round(width * scale_to / height)), scale_to

    resized = image.resize((new_w, new_h), Image.Resampling.BICUBIC)
    left = (new_w - size) // 2
    top = (new_h - size) // 2
    cropped = resized.crop((left, top, left + size, top + size))

    pixels = np.asarray(cropped, dtype=np.float32) / 255.0
    resized.close()
    cropped.close()

    pixels = (pixels - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
