"""Perspective correction via homographic transform.

Takes a detected page polygon and warps the photo to a fronto-parallel
rectangle whose size follows the page's own aspect ratio.
"""

import itertools
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import cv2
import numpy as np

from docrectify.page_detection.polygon import Polygon
from docrectify.utils.debug import encode_image, extension_for
from docrectify.utils.exceptions import TransformError

logger = logging.getLogger(__name__)

# Triangles whose doubled area is below this fraction of the squared polygon
# span count as collinear
_COLLINEAR_TOLERANCE = 1e-3

# Condition number above which the DLT system is treated as singular
_MAX_CONDITION = 1e12


def compute_output_dimensions(corners: np.ndarray) -> Tuple[int, int]:
    """Compute output rectangle dimensions from corner points.

    Width is the average of the top and bottom edge lengths, height the
    average of the left and right edge lengths.

    Args:
        corners: Ordered corner points (4, 2) as [TL, TR, BR, BL].

    Returns:
        (width, height) in pixels.
    """
    tl, tr, br, bl = np.asarray(corners, dtype=np.float64)

    width = (np.linalg.norm(tr - tl) + np.linalg.norm(br - bl)) / 2.0
    height = (np.linalg.norm(bl - tl) + np.linalg.norm(br - tr)) / 2.0

    return int(round(width)), int(round(height))


def _check_not_collinear(points: np.ndarray) -> None:
    """Raise TransformError if any three of the four points are near-collinear."""
    span = max(float(np.ptp(points[:, 0])), float(np.ptp(points[:, 1])))
    if span <= 0:
        raise TransformError("All corners coincide")

    for a, b, c in itertools.combinations(points, 3):
        doubled_area = abs((b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0]))
        if doubled_area < _COLLINEAR_TOLERANCE * span * span:
            raise TransformError(
                f"Corners ({a[0]:.1f},{a[1]:.1f}), ({b[0]:.1f},{b[1]:.1f}), "
                f"({c[0]:.1f},{c[1]:.1f}) are near-collinear"
            )


def _normalizing_transform(points: np.ndarray) -> np.ndarray:
    """Similarity moving points to their centroid with mean distance sqrt(2)."""
    center = points.mean(axis=0)
    mean_dist = np.mean(np.linalg.norm(points - center, axis=1))
    scale = np.sqrt(2.0) / mean_dist
    return np.array([
        [scale, 0.0, -scale * center[0]],
        [0.0, scale, -scale * center[1]],
        [0.0, 0.0, 1.0],
    ])


def compute_homography(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """Direct linear transform from four source to four destination points.

    Solves the 8x8 system for h11..h32 with h33 fixed to 1:

        u = (h11 x + h12 y + h13) / (h31 x + h32 y + 1)
        v = (h21 x + h22 y + h23) / (h31 x + h32 y + 1)

    Args:
        src: (4, 2) source points.
        dst: (4, 2) destination points.

    Returns:
        3x3 homography H with ``dst ~ H @ src``.

    Raises:
        TransformError: Near-collinear corners or a singular system.
    """
    src = np.asarray(src, dtype=np.float64).reshape(4, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(4, 2)

    _check_not_collinear(src)
    _check_not_collinear(dst)

    # Solve in normalized coordinates so the system stays well conditioned
    # for multi-megapixel photos, then undo the normalization
    t_src = _normalizing_transform(src)
    t_dst = _normalizing_transform(dst)
    src_n = apply_homography(t_src, src)
    dst_n = apply_homography(t_dst, dst)

    a = np.zeros((8, 8), dtype=np.float64)
    b = np.zeros(8, dtype=np.float64)
    for i, ((x, y), (u, v)) in enumerate(zip(src_n, dst_n)):
        a[2 * i] = [x, y, 1, 0, 0, 0, -u * x, -u * y]
        a[2 * i + 1] = [0, 0, 0, x, y, 1, -v * x, -v * y]
        b[2 * i] = u
        b[2 * i + 1] = v

    cond = np.linalg.cond(a)
    if not np.isfinite(cond) or cond > _MAX_CONDITION:
        raise TransformError(f"Homography system is singular (condition number {cond:.3g})")

    try:
        h = np.linalg.solve(a, b)
    except np.linalg.LinAlgError as e:
        raise TransformError(f"Homography system is singular: {e}") from e

    normalized = np.append(h, 1.0).reshape(3, 3)
    if abs(np.linalg.det(normalized)) < 1e-12:
        raise TransformError("Homography is not invertible")

    matrix = np.linalg.inv(t_dst) @ normalized @ t_src
    return matrix / matrix[2, 2]


def apply_homography(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Project (N, 2) points through a 3x3 homography."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    homogeneous = np.column_stack([pts, np.ones(len(pts))]) @ matrix.T
    return homogeneous[:, :2] / homogeneous[:, 2:3]


@dataclass(eq=False)
class Rectification:
    """Rectified page image and the transform that produced it.

    Attributes:
        image: RGB uint8 array of shape (height, width, 3)
        homography: 3x3 matrix mapping source pixels to output pixels
        width: Output width in pixels
        height: Output height in pixels
    """

    image: np.ndarray
    homography: np.ndarray
    width: int
    height: int


class Rectifier:
    """Flattens the page inside a polygon into an upright rectangle.

    Attributes:
        max_output_pixels: Upper bound on output area, guards against
            polygons far outside the photo
    """

    def __init__(self, max_output_pixels: int = 64_000_000) -> None:
        self.max_output_pixels = max_output_pixels

    def rectify(self, image: np.ndarray, polygon: Polygon) -> Rectification:
        """Apply the page homography to the photo.

        Resamples through the inverse homography with bilinear interpolation.
        The input array is not modified.

        Args:
            image: RGB uint8 array (H, W, 3).
            polygon: Page corners in image pixels, clockwise from top-left.

        Returns:
            Rectification with the flattened page.

        Raises:
            TransformError: Singular corner configuration or unusable output size.
        """
        corners = polygon.points
        width, height = compute_output_dimensions(corners)

        if width < 2 or height < 2:
            raise TransformError(f"Output size {width}x{height} is too small")
        if width * height > self.max_output_pixels:
            raise TransformError(
                f"Output size {width}x{height} exceeds {self.max_output_pixels} pixels"
            )

        dst = np.array([
            [0, 0],
            [width - 1, 0],
            [width - 1, height - 1],
            [0, height - 1],
        ], dtype=np.float64)

        matrix = compute_homography(corners, dst)
        inverse = np.linalg.inv(matrix)

        warped = cv2.warpPerspective(
            image,
            inverse,
            (width, height),
            flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
            borderMode=cv2.BORDER_REPLICATE,
        )

        logger.info(
            f"Perspective corrected: {image.shape[1]}x{image.shape[0]} -> {width}x{height}"
        )

        return Rectification(image=warped, homography=matrix, width=width, height=height)

    @staticmethod
    def output_path(
        output_dir: Union[str, Path],
        photo_id: str,
        output_format: str = "jpeg",
    ) -> Path:
        """Fresh, unused path for a rectified photo."""
        suffix = extension_for(output_format)
        return Path(output_dir) / f"{photo_id}_rectified_{uuid.uuid4().hex[:8]}{suffix}"

    @staticmethod
    def save(
        rectification: Rectification,
        path: Union[str, Path],
        output_format: str = "jpeg",
        quality: int = 92,
    ) -> Path:
        """Write the rectified image to a new file.

        Raises:
            FileExistsError: If ``path`` already exists. Existing files,
                the source photo included, are never overwritten.
        """
        path = Path(path)
        data = encode_image(rectification.image, output_format, quality)

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "xb") as f:
            f.write(data)

        logger.debug(f"Wrote rectified image: {path} ({len(data)} bytes)")
        return path
