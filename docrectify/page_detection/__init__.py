"""Page corner detection and perspective correction."""

from docrectify.page_detection.detector import (
    CornerDetection,
    CornerPostprocessor,
    PointPrediction,
)
from docrectify.page_detection.perspective import (
    Rectification,
    Rectifier,
    apply_homography,
    compute_homography,
)
from docrectify.page_detection.polygon import Polygon, order_corners

__all__ = [
    "CornerDetection",
    "CornerPostprocessor",
    "PointPrediction",
    "Rectification",
    "Rectifier",
    "apply_homography",
    "compute_homography",
    "Polygon",
    "order_corners",
]
