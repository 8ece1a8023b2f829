"""Synthetic photos and heatmaps shared by the test modules."""

import io
from typing import Sequence, Tuple

import cv2
import numpy as np
from PIL import Image

from docrectify.page_detection.detector import CornerPostprocessor
from docrectify.preprocessing.normalizer import LetterboxTransform
from docrectify.tensor import Heatmap


def rotated_rect_corners(
    center: Tuple[float, float],
    size: Tuple[float, float],
    angle_deg: float,
) -> np.ndarray:
    """Corners [TL, TR, BR, BL] of a (width, height) rectangle rotated about its center."""
    cx, cy = center
    w, h = size
    local = np.array([
        [-w / 2, -h / 2],
        [w / 2, -h / 2],
        [w / 2, h / 2],
        [-w / 2, h / 2],
    ])
    return _rotate(local, angle_deg) + np.array([cx, cy])


def _rotate(points: np.ndarray, angle_deg: float) -> np.ndarray:
    theta = np.deg2rad(angle_deg)
    rot = np.array([
        [np.cos(theta), -np.sin(theta)],
        [np.sin(theta), np.cos(theta)],
    ])
    return points @ rot.T


def make_page_photo(
    width: int = 800,
    height: int = 600,
    page_size: Tuple[int, int] = (300, 200),
    angle_deg: float = 10.0,
    background: int = 60,
    page: int = 230,
    marker: int = 20,
) -> Tuple[np.ndarray, np.ndarray]:
    """Create a photo of a bright rotated page on a dark background.

    A dark square marks the page's top-left area (page-local 10..60 px) so
    orientation can be checked after rectification.

    Returns:
        (RGB uint8 image (H, W, 3), page corners (4, 2) as [TL, TR, BR, BL]).
    """
    image = np.full((height, width, 3), background, dtype=np.uint8)
    center = (width / 2.0, height / 2.0)

    corners = rotated_rect_corners(center, page_size, angle_deg)
    cv2.fillPoly(image, [np.round(corners).astype(np.int32)], (page, page, page))

    pw, ph = page_size
    marker_local = np.array([[10, 10], [60, 10], [60, 60], [10, 60]], dtype=np.float64)
    marker_local -= np.array([pw / 2, ph / 2])
    marker_pts = _rotate(marker_local, angle_deg) + np.array(center)
    cv2.fillPoly(image, [np.round(marker_pts).astype(np.int32)], (marker, marker, marker))

    return image, corners


def encode_png(image: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(image).save(buf, format="PNG")
    return buf.getvalue()


def gaussian_blob(
    width: int,
    height: int,
    cx: float,
    cy: float,
    sigma: float = 2.0,
    amplitude: float = 1.0,
) -> np.ndarray:
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    return amplitude * np.exp(-((xs - cx) ** 2 + (ys - cy) ** 2) / (2 * sigma ** 2))


def heatmap_points(
    corners: np.ndarray,
    original_size: Tuple[int, int],
    model_input_size: int = 256,
    heatmap_size: Tuple[int, int] = (128, 128),
) -> np.ndarray:
    """Where original-pixel corners land in heatmap pixels."""
    transform = LetterboxTransform.from_sizes(original_size, (model_input_size, model_input_size))
    model_points = transform.to_model(corners)
    return CornerPostprocessor(model_input_size).model_to_heatmap(model_points, heatmap_size)


def blob_heatmap(
    corners: np.ndarray,
    original_size: Tuple[int, int],
    channels: int = 1,
    amplitudes: Sequence[float] = (1.0, 1.0, 1.0, 1.0),
    heatmap_size: Tuple[int, int] = (128, 128),
    sigma: float = 2.0,
) -> Heatmap:
    """Heatmap with one gaussian blob at each corner's letterboxed position.

    With ``channels=4`` corner ``i`` goes into channel ``i``.
    """
    heat_w, heat_h = heatmap_size
    points = heatmap_points(corners, original_size, heatmap_size=heatmap_size)

    maps = np.zeros((channels, heat_h, heat_w), dtype=np.float64)
    for i, (x, y) in enumerate(points):
        c = i if channels == 4 else 0
        blob = gaussian_blob(heat_w, heat_h, x, y, sigma, amplitudes[i % len(amplitudes)])
        maps[c] = np.maximum(maps[c], blob)

    return Heatmap.from_array(maps.astype(np.float32))


def uniform_heatmap(value: float = 0.0, size: Tuple[int, int] = (128, 128)) -> Heatmap:
    heat_w, heat_h = size
    return Heatmap.from_array(np.full((1, heat_h, heat_w), value, dtype=np.float32))
