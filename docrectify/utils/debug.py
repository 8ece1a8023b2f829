"""Image output and debug visualization utilities."""

import logging
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)

_FORMAT_EXTENSIONS = {
    "jpeg": ".jpg",
    "jpg": ".jpg",
    "png": ".png",
}


def extension_for(output_format: str) -> str:
    """File extension for an output format name ("jpeg" or "png")."""
    try:
        return _FORMAT_EXTENSIONS[output_format.lower()]
    except KeyError:
        raise ValueError(f"Unsupported output format: {output_format!r}") from None


def _to_bgr_uint8(image: np.ndarray) -> np.ndarray:
    """Convert float [0,1] or uint8 RGB/gray arrays to BGR uint8 for OpenCV."""
    if image.dtype == np.float32 or image.dtype == np.float64:
        img_uint8 = (np.clip(image, 0.0, 1.0) * 255).astype(np.uint8)
    else:
        img_uint8 = image.astype(np.uint8, copy=False)

    if img_uint8.ndim == 2:
        return cv2.cvtColor(img_uint8, cv2.COLOR_GRAY2BGR)
    if img_uint8.shape[2] == 3:
        return cv2.cvtColor(img_uint8, cv2.COLOR_RGB2BGR)
    if img_uint8.shape[2] == 4:
        return cv2.cvtColor(img_uint8, cv2.COLOR_RGBA2BGR)
    raise ValueError(f"Unsupported number of channels: {img_uint8.shape[2]}")


def encode_image(image: np.ndarray, output_format: str = "jpeg", quality: int = 92) -> bytes:
    """Encode an RGB image to JPEG or PNG bytes.

    Args:
        image: RGB uint8 [0,255] or float [0,1] array
        output_format: "jpeg" or "png"
        quality: JPEG quality (0-100), ignored for PNG

    Returns:
        Encoded file contents
    """
    ext = extension_for(output_format)
    params = [cv2.IMWRITE_JPEG_QUALITY, quality] if ext == ".jpg" else []

    ok, buf = cv2.imencode(ext, _to_bgr_uint8(image), params)
    if not ok:
        raise ValueError(f"OpenCV failed to encode image as {output_format}")
    return buf.tobytes()


def save_debug_image(
    image: np.ndarray,
    output_path: Union[str, Path],
    description: Optional[str] = None,
    quality: int = 95
) -> Path:
    """Save debug image with step numbering, always as JPEG for easy viewing.

    Args:
        image: Image array as float32 RGB [0,1] or uint8 RGB [0,255]
        output_path: Path to save debug image (should include step number prefix)
        description: Optional description to log
        quality: JPEG quality (0-100)

    Returns:
        Path actually written (extension forced to .jpg)
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if output_path.suffix.lower() not in ['.jpg', '.jpeg']:
        output_path = output_path.with_suffix('.jpg')

    cv2.imwrite(
        str(output_path),
        _to_bgr_uint8(image),
        [cv2.IMWRITE_JPEG_QUALITY, quality]
    )

    if description:
        logger.debug(f"Saved debug image: {output_path} - {description}")
    else:
        logger.debug(f"Saved debug image: {output_path}")

    return output_path


def draw_polygon(
    image: np.ndarray,
    corners: np.ndarray,
    label: Optional[str] = None,
) -> np.ndarray:
    """Draw a page polygon overlay for debugging.

    The first corner is marked in red, the rest in blue, so the clockwise
    ordering is visible.

    Args:
        image: RGB uint8 image.
        corners: (4, 2) corner points.
        label: Optional text drawn in the top-left corner.

    Returns:
        Copy of the image with the overlay, RGB uint8.
    """
    canvas = image.copy()
    pts = np.round(np.asarray(corners)).astype(np.int32)
    thickness = max(2, min(canvas.shape[:2]) // 300)

    cv2.polylines(canvas, [pts.reshape(-1, 1, 2)], True, (0, 255, 0), thickness)
    for i, corner in enumerate(pts):
        color = (255, 0, 0) if i == 0 else (0, 0, 255)
        cv2.circle(canvas, (int(corner[0]), int(corner[1])), thickness * 4, color, -1)

    if label:
        cv2.putText(canvas, label, (20, 40), cv2.FONT_HERSHEY_SIMPLEX, 1.0, (0, 255, 0), 2)

    return canvas


def visualize_confidence(confidence_map: np.ndarray) -> np.ndarray:
    """Visualize confidence map as color gradient (green=high, red=low).

    Args:
        confidence_map: Confidence values [0, 1], shape (H, W)

    Returns:
        RGB image, float32 [0, 1], shape (H, W, 3)
    """
    # OpenCV HSV hue: 0 = red, 60 = green
    hue = (np.clip(confidence_map, 0.0, 1.0) * 60).astype(np.uint8)

    saturation = np.full_like(hue, 255, dtype=np.uint8)
    value = np.full_like(hue, 255, dtype=np.uint8)

    hsv = np.stack([hue, saturation, value], axis=-1)
    rgb = cv2.cvtColor(hsv, cv2.COLOR_HSV2RGB)

    return rgb.astype(np.float32) / 255.0
