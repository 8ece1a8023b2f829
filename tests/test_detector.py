"""Tests for corner ordering, polygon validation and heatmap postprocessing."""

import numpy as np
import pytest

from docrectify.page_detection.detector import CornerPostprocessor, PointPrediction
from docrectify.page_detection.polygon import Polygon, is_convex, order_corners
from docrectify.preprocessing.normalizer import LetterboxTransform
from docrectify.utils.exceptions import DegeneratePolygon, LowConfidenceDetection

from synthetic_images import blob_heatmap, make_page_photo, uniform_heatmap


def _signed_area(pts: np.ndarray) -> float:
    x, y = pts[:, 0], pts[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


class TestOrderCorners:
    """Test canonical corner ordering."""

    def test_already_ordered(self) -> None:
        pts = np.array([[10, 10], [90, 10], [90, 90], [10, 90]], dtype=np.float32)
        ordered = order_corners(pts)
        np.testing.assert_array_almost_equal(ordered[0], [10, 10])  # TL
        np.testing.assert_array_almost_equal(ordered[1], [90, 10])  # TR
        np.testing.assert_array_almost_equal(ordered[2], [90, 90])  # BR
        np.testing.assert_array_almost_equal(ordered[3], [10, 90])  # BL

    def test_shuffled_corners(self) -> None:
        pts = np.array([[90, 90], [10, 10], [10, 90], [90, 10]], dtype=np.float32)
        ordered = order_corners(pts)
        np.testing.assert_array_almost_equal(
            ordered, [[10, 10], [90, 10], [90, 90], [10, 90]]
        )

    def test_clockwise_on_screen(self) -> None:
        _, corners = make_page_photo(angle_deg=25.0)
        shuffled = corners[[2, 0, 3, 1]]

        ordered = order_corners(shuffled)
        # Positive signed area with y pointing down means clockwise on screen
        assert _signed_area(ordered) > 0
        np.testing.assert_allclose(ordered, corners)

    def test_starts_nearest_top_left(self) -> None:
        pts = np.array([[120, 40], [20, 60], [30, 180], [140, 150]], dtype=np.float64)
        ordered = order_corners(pts)
        np.testing.assert_array_equal(ordered[0], [20, 60])
        assert _signed_area(ordered) > 0

    def test_wrong_count(self) -> None:
        with pytest.raises(ValueError):
            order_corners(np.zeros((3, 2)))


class TestPolygon:
    """Test polygon construction and validation."""

    def test_from_points_orders(self) -> None:
        polygon = Polygon.from_points([[90, 90], [10, 10], [10, 90], [90, 10]])
        assert polygon.to_list() == [[10, 10], [90, 10], [90, 90], [10, 90]]
        assert polygon.area == pytest.approx(6400.0)

    def test_points_read_only(self) -> None:
        source = np.array([[10, 10], [90, 10], [90, 90], [10, 90]], dtype=np.float64)
        polygon = Polygon(points=source)

        assert not polygon.points.flags.writeable
        assert source.flags.writeable

    def test_equality(self) -> None:
        a = Polygon.from_points([[0, 0], [10, 0], [10, 10], [0, 10]])
        b = Polygon.from_points([[10, 10], [0, 0], [0, 10], [10, 0]])
        assert a == b
        assert hash(a) == hash(b)

    def test_zero_area(self) -> None:
        with pytest.raises(DegeneratePolygon):
            Polygon.from_points([[0, 0], [10, 0], [20, 0], [30, 0]])

    def test_non_convex(self) -> None:
        # Fourth point sits inside the triangle of the other three
        with pytest.raises(DegeneratePolygon, match="convex"):
            Polygon.from_points([[0, 0], [100, 0], [50, 100], [50, 30]])

    def test_too_small_for_image(self) -> None:
        with pytest.raises(DegeneratePolygon, match="area"):
            Polygon.from_points(
                [[0, 0], [10, 0], [10, 10], [0, 10]],
                image_size=(800, 600),
                min_area_ratio=0.01,
            )

    def test_non_finite(self) -> None:
        with pytest.raises(DegeneratePolygon):
            Polygon.from_points([[0, 0], [10, 0], [np.nan, 10], [0, 10]])

    def test_is_convex(self) -> None:
        assert is_convex(np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=np.float64))
        assert not is_convex(np.array([[0, 0], [10, 10], [10, 0], [0, 10]], dtype=np.float64))


class TestHeatmapPostprocessing:
    """Test heatmap -> polygon conversion."""

    def test_single_channel_corners(self) -> None:
        _, corners = make_page_photo()
        heatmap = blob_heatmap(corners, (800, 600))

        detection = CornerPostprocessor().postprocess(heatmap, (800, 600))

        np.testing.assert_allclose(detection.polygon.points, corners, atol=2.0)
        assert detection.method == "heatmap"
        assert 0.5 < detection.confidence <= 1.0
        assert detection.peaks.shape == (4, 2)

    def test_four_channel_corners(self) -> None:
        _, corners = make_page_photo(angle_deg=-15.0)
        heatmap = blob_heatmap(corners, (800, 600), channels=4)

        detection = CornerPostprocessor().postprocess(heatmap, (800, 600))
        np.testing.assert_allclose(detection.polygon.points, corners, atol=2.0)

    def test_portrait_photo(self) -> None:
        _, corners = make_page_photo(width=600, height=900, page_size=(260, 380), angle_deg=5.0)
        heatmap = blob_heatmap(corners, (600, 900))

        detection = CornerPostprocessor().postprocess(heatmap, (600, 900))
        np.testing.assert_allclose(detection.polygon.points, corners, atol=3.0)

    def test_confidence_is_mean_peak(self) -> None:
        _, corners = make_page_photo()
        heatmap = blob_heatmap(corners, (800, 600), amplitudes=(0.9, 0.8, 0.7, 0.6))

        detection = CornerPostprocessor().postprocess(heatmap, (800, 600))
        # Sampled peaks sit slightly below the amplitudes
        assert detection.confidence == pytest.approx(0.75, abs=0.06)

    def test_strongest_four_kept(self) -> None:
        _, corners = make_page_photo()
        spurious = np.array([[400.0, 300.0]])
        points = np.vstack([corners, spurious])
        heatmap = blob_heatmap(points, (800, 600), amplitudes=(1.0, 1.0, 1.0, 1.0, 0.45))

        detection = CornerPostprocessor().postprocess(heatmap, (800, 600))
        np.testing.assert_allclose(detection.polygon.points, corners, atol=2.0)

    def test_empty_heatmap(self) -> None:
        with pytest.raises(LowConfidenceDetection):
            CornerPostprocessor().postprocess(uniform_heatmap(0.0), (800, 600))

    def test_uniform_heatmap(self) -> None:
        # One plateau above threshold is a single blob, not four corners
        with pytest.raises(LowConfidenceDetection):
            CornerPostprocessor().postprocess(uniform_heatmap(0.5), (800, 600))

    def test_three_peaks(self) -> None:
        _, corners = make_page_photo()
        heatmap = blob_heatmap(corners[:3], (800, 600))

        with pytest.raises(LowConfidenceDetection, match="3 corner"):
            CornerPostprocessor().postprocess(heatmap, (800, 600))

    def test_weak_peaks_below_threshold(self) -> None:
        _, corners = make_page_photo()
        heatmap = blob_heatmap(corners, (800, 600), amplitudes=(0.2, 0.2, 0.2, 0.2))

        with pytest.raises(LowConfidenceDetection):
            CornerPostprocessor().postprocess(heatmap, (800, 600))

    def test_tiny_polygon(self) -> None:
        corners = np.array([[100, 100], [150, 100], [150, 150], [100, 150]], dtype=np.float64)
        heatmap = blob_heatmap(corners, (800, 600))

        with pytest.raises(DegeneratePolygon):
            CornerPostprocessor().postprocess(heatmap, (800, 600))

    def test_non_convex_peaks(self) -> None:
        corners = np.array([[100, 100], [700, 100], [400, 550], [400, 250]], dtype=np.float64)
        heatmap = blob_heatmap(corners, (800, 600))

        with pytest.raises(DegeneratePolygon):
            CornerPostprocessor().postprocess(heatmap, (800, 600))

    def test_heatmap_scaling_inverse(self) -> None:
        post = CornerPostprocessor(model_input_size=256)
        points = np.array([[0.0, 0.0], [63.5, 100.25]])

        model = post.heatmap_to_model(points, uniform_heatmap(0.0))
        np.testing.assert_allclose(post.model_to_heatmap(model, (128, 128)), points)


class TestPointPostprocessing:
    """Test the point model fallback path."""

    def _prediction(self, corners: np.ndarray, original_size, has_object: float) -> PointPrediction:
        transform = LetterboxTransform.from_sizes(original_size, (256, 256))
        normalized = (transform.to_model(corners) + 0.5) / 256
        return PointPrediction(points=normalized.reshape(-1), has_object=has_object)

    def test_points_to_polygon(self) -> None:
        _, corners = make_page_photo()
        prediction = self._prediction(corners, (800, 600), 0.9)

        detection = CornerPostprocessor().postprocess_points(prediction, (800, 600))

        np.testing.assert_allclose(detection.polygon.points, corners, atol=1e-6)
        assert detection.method == "points"
        assert detection.confidence == pytest.approx(0.9)

    def test_points_in_any_order(self) -> None:
        _, corners = make_page_photo()
        prediction = self._prediction(corners[[3, 1, 0, 2]], (800, 600), 0.9)

        detection = CornerPostprocessor().postprocess_points(prediction, (800, 600))
        np.testing.assert_allclose(detection.polygon.points, corners, atol=1e-6)

    def test_low_objectness(self) -> None:
        _, corners = make_page_photo()
        prediction = self._prediction(corners, (800, 600), 0.4)

        with pytest.raises(LowConfidenceDetection, match="objectness"):
            CornerPostprocessor().postprocess_points(prediction, (800, 600))

    def test_wrong_point_count(self) -> None:
        prediction = PointPrediction(points=np.zeros(6), has_object=0.9)
        with pytest.raises(LowConfidenceDetection):
            CornerPostprocessor().postprocess_points(prediction, (800, 600))
