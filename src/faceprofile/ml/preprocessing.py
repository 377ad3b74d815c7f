"""Image loading and decoding.

Uploaded bytes, local sample files and remote URLs all end up as an
``HxWx3`` RGB ``uint8`` numpy array. Alpha channels are dropped, palette and
greyscale images are expanded, and EXIF orientation is applied so the
detector sees the picture the way a viewer would.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import httpx
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


def decode_image(image_bytes: bytes, max_image_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow understands).
        max_image_pixels: Upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ValueError: If the image is empty, cannot be decoded or exceeds the pixel limit.
    """
    if not image_bytes:
        raise ValueError("Empty image")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_image_pixels:
                raise ValueError(f"Image too large: {width}x{height} exceeds {max_image_pixels} pixels")
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc

    return np.asarray(rgb, dtype=np.uint8)


def load_image(path: Path, max_image_pixels: int) -> NDArray[np.uint8]:
    """Read and decode an image file from disk."""
    logger.debug("Loading image: %s", path)
    return decode_image(path.read_bytes(), max_image_pixels)


async def fetch_image_bytes(url: str, *, max_file_size: int, timeout: float) -> bytes:
    """Download an image over HTTP(S).

    Raises:
        ValueError: On a transport error, a non-2xx response, or a body larger than ``max_file_size``.
    """
    logger.debug("Loading image: %s", url)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            raise ValueError(f"Invalid image URL: {url} ({exc})") from exc

    if not response.is_success:
        raise ValueError(
            f"Invalid image URL: {url} {response.status_code} {response.reason_phrase} "
            f"{response.headers.get('content-type', '')}".rstrip()
        )
    if len(response.content) > max_file_size:
        raise ValueError(f"Image too large: {len(response.content)} bytes exceeds {max_file_size}")
    return response.content


def to_bgr(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Swap RGB to BGR channel order (the layout insightface's wrappers expect)."""
    return np.ascontiguousarray(image[:, :, ::-1])
