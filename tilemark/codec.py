"""Pixel buffer decode/encode adapters around Pillow."""

import io

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import EncodeError, FetchError


def decode_image(raw: bytes) -> np.ndarray:
    """Decode image bytes into an ``(H, W, 4)`` uint8 RGBA buffer."""
    if not raw:
        raise FetchError("Source image is empty")
    try:
        with Image.open(io.BytesIO(raw)) as image:
            image = ImageOps.exif_transpose(image)
            rgba = image.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise FetchError(f"Failed to decode image: {e}") from e
    # Own a writable copy; the buffer is mutated in place while rendering.
    return np.array(rgba, dtype=np.uint8)


def encode_jpeg(buffer: np.ndarray, quality: int) -> bytes:
    """Encode an RGBA buffer as baseline JPEG, dropping alpha."""
    try:
        image = Image.fromarray(buffer).convert("RGB")
        out = io.BytesIO()
        image.save(out, format="JPEG", quality=quality)
    except (OSError, ValueError, TypeError) as e:
        raise EncodeError(f"Failed to encode image: {e}") from e
    return out.getvalue()
