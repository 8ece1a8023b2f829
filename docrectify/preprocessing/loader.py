"""Photo loading: URI resolution, file reads and decoding to RGB arrays.

Supports JPEG, PNG, TIFF, WebP and HEIC/HEIF. HEIC decoding goes through
pillow-heif, registered as a Pillow plugin on first use.
"""

import io
import logging
from pathlib import Path
from typing import Tuple, Union
from urllib.parse import unquote, urlparse

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from docrectify.utils.exceptions import DecodeError

logger = logging.getLogger(__name__)

_heif_registered = False


def _register_heif() -> None:
    """Register the HEIC/HEIF opener with Pillow once per process."""
    global _heif_registered
    if _heif_registered:
        return

    try:
        from pillow_heif import register_heif_opener
    except ImportError as e:
        raise ImportError(
            "pillow-heif is required for HEIC support. "
            "Install with: pip install pillow-heif"
        ) from e

    register_heif_opener()
    _heif_registered = True


def resolve_uri(uri: Union[str, Path]) -> Path:
    """Turn a ``file://`` URI or plain path into a filesystem path.

    Args:
        uri: ``file:///abs/path.jpg`` or a plain path.

    Returns:
        Path pointing at the photo.

    Raises:
        ValueError: If the URI uses a scheme other than ``file``.
    """
    text = str(uri)
    parsed = urlparse(text)

    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    # Single letters are Windows drive letters, not schemes
    if parsed.scheme and len(parsed.scheme) > 1:
        raise ValueError(f"Unsupported photo URI scheme: {parsed.scheme!r}")

    return Path(text)


def read_photo_bytes(uri: Union[str, Path]) -> bytes:
    """Read the raw bytes of a photo.

    Raises:
        FileNotFoundError: If the photo does not exist.
    """
    path = resolve_uri(uri)
    if not path.exists():
        raise FileNotFoundError(f"Photo not found: {uri}")

    data = path.read_bytes()
    logger.debug(f"Read {len(data)} bytes from {path}")
    return data


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes to an RGB uint8 array.

    EXIF orientation is applied so the array is upright as the user saw it.

    Args:
        data: Encoded image bytes.

    Returns:
        RGB uint8 array with shape (H, W, 3).

    Raises:
        DecodeError: If the bytes are empty or not a supported image.
    """
    if not data:
        raise DecodeError("Cannot decode image: empty input")

    _register_heif()

    try:
        img = Image.open(io.BytesIO(data))
        img = ImageOps.exif_transpose(img)
        img = img.convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeError(f"Cannot decode image: {e}") from e

    arr = np.asarray(img, dtype=np.uint8)
    logger.debug(f"Decoded {img.format or 'image'}: {arr.shape[1]}x{arr.shape[0]}")
    return arr


def image_size(image: np.ndarray) -> Tuple[int, int]:
    """(width, height) of an (H, W, C) array."""
    return image.shape[1], image.shape[0]
