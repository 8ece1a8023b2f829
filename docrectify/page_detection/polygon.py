"""Four-corner page polygon: canonical ordering and validity checks."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from docrectify.utils.exceptions import DegeneratePolygon

logger = logging.getLogger(__name__)

# Relative tolerance for the convexity cross-product test
_CROSS_EPS = 1e-9


def order_corners(pts: np.ndarray) -> np.ndarray:
    """Order four points clockwise, starting at the one nearest the top-left.

    Points are sorted by their angle around the centroid. In image coordinates
    (y grows downward) increasing ``atan2(dy, dx)`` runs clockwise on screen.
    The sequence is then rotated so it starts at the point closest to the
    top-left corner of the points' bounding box.

    Args:
        pts: Array of shape (4, 2) with (x, y) coordinates.

    Returns:
        Ordered float64 array of shape (4, 2).
    """
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] != 4:
        raise ValueError(f"Expected 4 points, got {pts.shape[0]}")

    center = pts.mean(axis=0)
    angles = np.arctan2(pts[:, 1] - center[1], pts[:, 0] - center[0])
    clockwise = pts[np.argsort(angles, kind="stable")]

    top_left = pts.min(axis=0)
    start = int(np.argmin(np.linalg.norm(clockwise - top_left, axis=1)))

    return np.roll(clockwise, -start, axis=0)


def polygon_area(pts: np.ndarray) -> float:
    """Absolute shoelace area of a closed polygon."""
    x, y = pts[:, 0], pts[:, 1]
    return 0.5 * abs(float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))


def is_convex(pts: np.ndarray) -> bool:
    """True if consecutive edge turns all have the same strict orientation.

    A self-intersecting (bow-tie) quadrilateral fails this test as well.
    """
    n = len(pts)
    scale = max(float(np.ptp(pts[:, 0])), float(np.ptp(pts[:, 1])), 1.0)
    signs = []
    for i in range(n):
        a, b, c = pts[i], pts[(i + 1) % n], pts[(i + 2) % n]
        cross = (b[0] - a[0]) * (c[1] - b[1]) - (b[1] - a[1]) * (c[0] - b[0])
        if abs(cross) <= _CROSS_EPS * scale * scale:
            return False
        signs.append(cross > 0)
    return all(signs) or not any(signs)


@dataclass(frozen=True)
class Polygon:
    """Page quadrilateral in original-image pixels.

    Corners run clockwise from the one nearest the top-left. Construct with
    ``Polygon.from_points`` to get ordering and validation.
    """

    points: np.ndarray  # shape (4, 2), float64

    def __post_init__(self) -> None:
        pts = np.array(self.points, dtype=np.float64)
        if pts.shape != (4, 2):
            raise ValueError(f"Polygon needs exactly 4 (x, y) points, got shape {pts.shape}")
        pts.setflags(write=False)
        object.__setattr__(self, "points", pts)

    @classmethod
    def from_points(
        cls,
        points: Sequence[Sequence[float]],
        image_size: Optional[Tuple[int, int]] = None,
        min_area_ratio: float = 0.0,
    ) -> "Polygon":
        """Order points canonically and validate the quadrilateral.

        Args:
            points: Four (x, y) points in any order.
            image_size: Optional (width, height) used for the area check.
            min_area_ratio: Minimum polygon area as a fraction of the image.

        Raises:
            DegeneratePolygon: Near-zero area, self-intersecting or non-convex.
        """
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if pts.shape[0] != 4:
            raise DegeneratePolygon(f"Expected 4 corners, got {pts.shape[0]}")
        if not np.all(np.isfinite(pts)):
            raise DegeneratePolygon("Corner coordinates are not finite")

        ordered = order_corners(pts)
        area = polygon_area(ordered)

        min_area = 1.0
        if image_size is not None:
            min_area = max(min_area, min_area_ratio * image_size[0] * image_size[1])
        if area < min_area:
            raise DegeneratePolygon(f"Polygon area {area:.1f}px^2 below minimum {min_area:.1f}px^2")

        if not is_convex(ordered):
            raise DegeneratePolygon("Polygon is self-intersecting or not convex")

        return cls(points=ordered)

    @property
    def area(self) -> float:
        return polygon_area(self.points)

    def edge_lengths(self) -> np.ndarray:
        """Lengths of edges top, right, bottom, left."""
        return np.linalg.norm(np.roll(self.points, -1, axis=0) - self.points, axis=1)

    def to_list(self) -> List[List[float]]:
        """JSON-friendly [[x, y], ...]."""
        return [[float(x), float(y)] for x, y in self.points]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Polygon):
            return NotImplemented
        return bool(np.array_equal(self.points, other.points))

    def __hash__(self) -> int:
        return hash(self.points.tobytes())
