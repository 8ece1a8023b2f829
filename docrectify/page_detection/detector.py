"""Turn detection model outputs into ordered page polygons.

Two model outputs are supported:
- "heatmap": corner confidence maps. A single-channel map holds all four
  corners as separate blobs; a four-channel map holds one corner per channel.
  Blobs above the confidence threshold are found as connected components and
  located by their confidence-weighted centroid.
- "points": eight normalized corner coordinates plus an objectness score,
  used as a second opinion when the heatmap is inconclusive.

Detected points are mapped back to original-image pixels by inverting the
letterbox the preprocessor applied, then ordered clockwise from top-left.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from scipy import ndimage

from docrectify.page_detection.polygon import Polygon
from docrectify.preprocessing.normalizer import LetterboxTransform
from docrectify.tensor import Heatmap
from docrectify.utils.exceptions import LowConfidenceDetection

logger = logging.getLogger(__name__)

# Heatmap cells at or above this confidence belong to a corner blob
DEFAULT_PEAK_THRESHOLD = 0.3

# Point-model objectness at or below this means "no page in view"
DEFAULT_OBJECTNESS_THRESHOLD = 0.4


@dataclass(eq=False)
class CornerDetection:
    """Result of corner detection."""

    polygon: Polygon
    confidence: float  # 0.0 to 1.0
    method: str = field(default="heatmap")  # "heatmap", "points" or "manual"
    peaks: Optional[np.ndarray] = None  # (4, 2) peaks in heatmap pixels


@dataclass(eq=False)
class PointPrediction:
    """Raw point-model output.

    Attributes:
        points: (8,) x/y pairs normalized to the model input, [0, 1]
        has_object: Objectness score, [0, 1]
    """

    points: np.ndarray
    has_object: float


def _single_channel_peaks(
    channel: np.ndarray,
    threshold: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Locate every confident blob in one heatmap channel.

    Returns:
        (centroids as (N, 2) x/y, peak values as (N,)) sorted by peak value
        descending.
    """
    mask = channel >= threshold
    labels, count = ndimage.label(mask)
    if count == 0:
        return np.empty((0, 2)), np.empty(0)

    index = np.arange(1, count + 1)
    peak_values = np.asarray(ndimage.maximum(channel, labels, index), dtype=np.float64)
    centers = ndimage.center_of_mass(channel, labels, index)
    # center_of_mass gives (row, col)
    centroids = np.array([[c[1], c[0]] for c in centers], dtype=np.float64)

    order = np.argsort(-peak_values, kind="stable")
    return centroids[order], peak_values[order]


def _largest_blob(
    channel: np.ndarray,
    threshold: float,
) -> Tuple[np.ndarray, float]:
    """Centroid and peak value of the largest confident blob, or (None, 0.0)."""
    mask = channel >= threshold
    labels, count = ndimage.label(mask)
    if count == 0:
        return None, 0.0

    index = np.arange(1, count + 1)
    areas = ndimage.sum(mask, labels, index)
    largest = int(index[int(np.argmax(areas))])

    row, col = ndimage.center_of_mass(channel, labels, largest)
    peak = float(ndimage.maximum(channel, labels, largest))
    return np.array([col, row], dtype=np.float64), peak


class CornerPostprocessor:
    """Converts heatmaps and point predictions to validated page polygons.

    Attributes:
        model_input_size: Square input dimension of the detection model
        peak_threshold: Minimum heatmap confidence for a corner blob
        objectness_threshold: Minimum point-model objectness
        min_polygon_area_ratio: Minimum polygon area as a fraction of the photo
    """

    def __init__(
        self,
        model_input_size: int = 256,
        peak_threshold: float = DEFAULT_PEAK_THRESHOLD,
        objectness_threshold: float = DEFAULT_OBJECTNESS_THRESHOLD,
        min_polygon_area_ratio: float = 0.01,
    ) -> None:
        self.model_input_size = model_input_size
        self.peak_threshold = peak_threshold
        self.objectness_threshold = objectness_threshold
        self.min_polygon_area_ratio = min_polygon_area_ratio

    def _transform_for(self, original_size: Tuple[int, int]) -> LetterboxTransform:
        return LetterboxTransform.from_sizes(
            original_size, (self.model_input_size, self.model_input_size)
        )

    def find_peaks(self, heatmap: Heatmap) -> Tuple[np.ndarray, np.ndarray]:
        """Find up to four corner peaks in heatmap space.

        Returns:
            (points as (N, 2) x/y in heatmap pixels, confidences as (N,)),
            N <= 4.
        """
        if heatmap.channels == 1:
            centroids, values = _single_channel_peaks(heatmap.channel(0), self.peak_threshold)
            return centroids[:4], values[:4]

        points, values = [], []
        for c in range(heatmap.channels):
            centroid, peak = _largest_blob(heatmap.channel(c), self.peak_threshold)
            if centroid is not None:
                points.append(centroid)
                values.append(peak)

        return np.array(points, dtype=np.float64).reshape(-1, 2), np.array(values, dtype=np.float64)

    def heatmap_to_model(self, points: np.ndarray, heatmap: Heatmap) -> np.ndarray:
        """Scale heatmap-pixel points up to model-input pixels."""
        sx = self.model_input_size / heatmap.width
        sy = self.model_input_size / heatmap.height
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return np.column_stack([
            (pts[:, 0] + 0.5) * sx - 0.5,
            (pts[:, 1] + 0.5) * sy - 0.5,
        ])

    def model_to_heatmap(self, points: np.ndarray, heatmap_size: Tuple[int, int]) -> np.ndarray:
        """Inverse of ``heatmap_to_model`` for a heatmap of (width, height)."""
        sx = self.model_input_size / heatmap_size[0]
        sy = self.model_input_size / heatmap_size[1]
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return np.column_stack([
            (pts[:, 0] + 0.5) / sx - 0.5,
            (pts[:, 1] + 0.5) / sy - 0.5,
        ])

    def postprocess(
        self,
        heatmap: Heatmap,
        original_size: Tuple[int, int],
    ) -> CornerDetection:
        """Heatmap -> ordered polygon in original-image pixels.

        Args:
            heatmap: Model output, 1 or 4 channels.
            original_size: (width, height) of the photo before letterboxing.

        Raises:
            LowConfidenceDetection: Fewer than four confident peaks.
            DegeneratePolygon: The peaks form a degenerate quadrilateral.
        """
        peaks, values = self.find_peaks(heatmap)

        if len(peaks) < 4:
            raise LowConfidenceDetection(
                f"Found {len(peaks)} corner peak(s) above {self.peak_threshold:.2f}, need 4"
            )

        model_points = self.heatmap_to_model(peaks, heatmap)
        original_points = self._transform_for(original_size).to_original(model_points)

        polygon = Polygon.from_points(
            original_points,
            image_size=original_size,
            min_area_ratio=self.min_polygon_area_ratio,
        )
        confidence = float(np.mean(values))

        logger.info(
            f"Heatmap corners detected: confidence={confidence:.3f}, "
            f"area_ratio={polygon.area / (original_size[0] * original_size[1]):.3f}"
        )

        return CornerDetection(
            polygon=polygon,
            confidence=confidence,
            method="heatmap",
            peaks=peaks,
        )

    def postprocess_points(
        self,
        prediction: PointPrediction,
        original_size: Tuple[int, int],
    ) -> CornerDetection:
        """Point-model output -> ordered polygon in original-image pixels.

        Raises:
            LowConfidenceDetection: Objectness too low or malformed output.
            DegeneratePolygon: The points form a degenerate quadrilateral.
        """
        if prediction.has_object <= self.objectness_threshold:
            raise LowConfidenceDetection(
                f"Point model objectness {prediction.has_object:.3f} "
                f"<= {self.objectness_threshold:.2f}"
            )

        coords = np.asarray(prediction.points, dtype=np.float64).reshape(-1)
        if coords.size != 8:
            logger.warning(f"Point model returned {coords.size} values, expected 8")
            raise LowConfidenceDetection(f"Point model returned {coords.size} values, expected 8")

        model_points = coords.reshape(4, 2) * self.model_input_size - 0.5
        original_points = self._transform_for(original_size).to_original(model_points)

        polygon = Polygon.from_points(
            original_points,
            image_size=original_size,
            min_area_ratio=self.min_polygon_area_ratio,
        )

        logger.info(f"Point-model corners detected: objectness={prediction.has_object:.3f}")

        return CornerDetection(
            polygon=polygon,
            confidence=float(prediction.has_object),
            method="points",
        )
