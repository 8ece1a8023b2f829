"""Per-photo rectification pipeline.

Stages run strictly in order for one photo:

    read -> decode/preprocess -> infer -> postprocess -> rectify -> write

Only the inference call and the file reads/writes suspend; everything else
runs inline. Between stages the caller-supplied ``checkpoint`` is invoked so
a cancelled task stops advancing.
"""

import asyncio
import dataclasses
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np

from docrectify.inference.gateway import InferenceGateway, PointModelGateway
from docrectify.page_detection.detector import CornerDetection, CornerPostprocessor
from docrectify.page_detection.perspective import Rectification, Rectifier
from docrectify.page_detection.polygon import Polygon
from docrectify.preprocessing.loader import decode_image, image_size, read_photo_bytes
from docrectify.preprocessing.normalizer import Preprocessor, PreprocessResult
from docrectify.tensor import Heatmap
from docrectify.utils.exceptions import RecoverableDetectionError

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOCRECTIFY_"

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class PipelineConfig:
    """All tunable parameters in one place."""

    # Models
    models_dir: str = "./models"
    heatmap_model_file: str = "model_heat.onnx"
    point_model_file: str = "model_point.onnx"
    model_input_size: int = 256  # px, square
    use_point_model_fallback: bool = True

    # Corner detection
    heatmap_peak_threshold: float = 0.3
    objectness_threshold: float = 0.4
    min_polygon_area_ratio: float = 0.01  # of the photo area

    # Session
    max_concurrency: int = 2

    # Output
    output_dir: str = "./output"
    output_format: str = "jpeg"
    jpeg_quality: int = 92
    debug_dir: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides) -> "PipelineConfig":
        """Defaults overlaid with ``DOCRECTIFY_<FIELD>`` variables, then ``overrides``.

        Args:
            environ: Mapping to read instead of ``os.environ``.
            **overrides: Explicit values that win over the environment.

        Raises:
            ValueError: If a variable cannot be converted to the field type.
        """
        environ = os.environ if environ is None else environ
        values = {}

        for f in dataclasses.fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue

            default = f.default
            if isinstance(default, bool):
                values[f.name] = raw.strip().lower() in _TRUE_VALUES
            elif isinstance(default, int):
                values[f.name] = int(raw)
            elif isinstance(default, float):
                values[f.name] = float(raw)
            else:
                values[f.name] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def heatmap_model_path(self) -> Path:
        return Path(self.models_dir) / self.heatmap_model_file

    @property
    def point_model_path(self) -> Path:
        return Path(self.models_dir) / self.point_model_file


@dataclass(frozen=True, eq=False)
class RectificationResult:
    """Usable image for one photo, rectified or the original as fallback.

    Attributes:
        photo_id: Source photo id
        image_uri: Rectified image path, or the original URI on fallback
        polygon: Page corners in the source photo, None on fallback
        homography: 3x3 source->output matrix, None on fallback
        confidence: Detection confidence, 0.0 on fallback
        method: "heatmap", "points", "manual" or "none"
        fallback: True when the original photo is returned unrectified
        fallback_reason: Why rectification was skipped
    """

    photo_id: str
    image_uri: str
    polygon: Optional[Polygon] = None
    homography: Optional[np.ndarray] = None
    confidence: float = 0.0
    method: str = "none"
    width: int = 0
    height: int = 0
    fallback: bool = False
    fallback_reason: Optional[str] = None
    processing_time: float = 0.0

    @classmethod
    def unrectified(cls, photo_id: str, source_uri: str, reason: str) -> "RectificationResult":
        """Fallback result pointing at the untouched original photo."""
        return cls(
            photo_id=photo_id,
            image_uri=source_uri,
            method="none",
            fallback=True,
            fallback_reason=reason,
        )

    def to_dict(self) -> dict:
        """Convert result to a JSON-friendly dictionary."""
        return {
            "photo_id": self.photo_id,
            "image_uri": self.image_uri,
            "polygon": self.polygon.to_list() if self.polygon is not None else None,
            "homography": self.homography.tolist() if self.homography is not None else None,
            "confidence": self.confidence,
            "method": self.method,
            "width": self.width,
            "height": self.height,
            "fallback": self.fallback,
            "fallback_reason": self.fallback_reason,
            "processing_time": self.processing_time,
        }


def _no_checkpoint() -> None:
    return None


class RectificationPipeline:
    """Detects the page in one photo and writes its flattened rendering.

    Args:
        heatmap_gateway: Heatmap model capability.
        point_gateway: Optional point model, consulted when the heatmap is
            inconclusive.
        config: Pipeline configuration. If None, uses defaults.
    """

    def __init__(
        self,
        heatmap_gateway: InferenceGateway,
        point_gateway: Optional[PointModelGateway] = None,
        config: Optional[PipelineConfig] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.heatmap_gateway = heatmap_gateway
        self.point_gateway = point_gateway

        self.preprocessor = Preprocessor(input_size=self.config.model_input_size)
        self.postprocessor = CornerPostprocessor(
            model_input_size=self.config.model_input_size,
            peak_threshold=self.config.heatmap_peak_threshold,
            objectness_threshold=self.config.objectness_threshold,
            min_polygon_area_ratio=self.config.min_polygon_area_ratio,
        )
        self.rectifier = Rectifier()

    def is_model_ready(self) -> bool:
        return self.heatmap_gateway.is_ready()

    async def ensure_model_ready(self) -> bool:
        """Readiness check run off the event loop; the first call may load the model."""
        return await asyncio.to_thread(self.heatmap_gateway.is_ready)

    async def run(
        self,
        photo_id: str,
        source_uri: str,
        checkpoint: Callable[[], None] = _no_checkpoint,
        corners: Optional[Sequence[Sequence[float]]] = None,
    ) -> RectificationResult:
        """Rectify one photo.

        Args:
            photo_id: Id used to name the output file.
            source_uri: Path or ``file://`` URI of the photo.
            checkpoint: Called between stages; raises ``Cancelled`` to stop.
            corners: User-supplied corners. Skips detection when given.

        Returns:
            RectificationResult for the written image.

        Raises:
            FileNotFoundError: Source photo missing.
            DecodeError: Source is not a valid image.
            NativeBridgeError: Model or bridge failure.
            LowConfidenceDetection, DegeneratePolygon, TransformError:
                Recoverable; the caller decides on fallback.
            Cancelled: ``checkpoint`` reported cancellation.
        """
        start_time = time.time()
        step_times: Dict[str, float] = {}

        logger.info(f"Processing photo {photo_id}: {source_uri}")

        # Step 1: Read
        step_start = time.time()
        data = await asyncio.to_thread(read_photo_bytes, source_uri)
        step_times['read'] = time.time() - step_start
        checkpoint()

        # Step 2: Decode
        step_start = time.time()
        image = decode_image(data)
        original_size = image_size(image)
        step_times['decode'] = time.time() - step_start

        # Steps 3-5: Preprocess, infer, postprocess
        step_start = time.time()
        heatmap = None
        if corners is not None:
            detection = CornerDetection(
                polygon=Polygon.from_points(corners, image_size=original_size),
                confidence=1.0,
                method="manual",
            )
            logger.info(f"Using manual corners for {photo_id}")
        else:
            detection, heatmap = await self._detect(photo_id, image, checkpoint)
        step_times['detect'] = time.time() - step_start
        checkpoint()

        # Step 6: Rectify
        step_start = time.time()
        rectification = self.rectifier.rectify(image, detection.polygon)
        step_times['rectify'] = time.time() - step_start
        checkpoint()

        # Step 7: Write
        step_start = time.time()
        output_path = Rectifier.output_path(
            self.config.output_dir, photo_id, self.config.output_format
        )
        await asyncio.to_thread(
            Rectifier.save,
            rectification,
            output_path,
            self.config.output_format,
            self.config.jpeg_quality,
        )
        step_times['write'] = time.time() - step_start

        if self.config.debug_dir:
            try:
                await asyncio.to_thread(
                    self._save_debug, photo_id, image, detection, rectification, heatmap
                )
            except OSError as e:
                logger.warning(f"Could not write debug images for {photo_id}: {e}")

        total_time = time.time() - start_time
        logger.info(
            f"Rectified {photo_id} via {detection.method} in {total_time:.3f}s "
            f"({', '.join(f'{k}={v:.3f}s' for k, v in step_times.items())})"
        )

        return RectificationResult(
            photo_id=photo_id,
            image_uri=str(output_path),
            polygon=detection.polygon,
            homography=rectification.homography,
            confidence=detection.confidence,
            method=detection.method,
            width=rectification.width,
            height=rectification.height,
            processing_time=total_time,
        )

    async def _detect(
        self,
        photo_id: str,
        image: np.ndarray,
        checkpoint: Callable[[], None],
    ) -> Tuple[CornerDetection, Heatmap]:
        """Heatmap detection with the point model as second opinion."""
        prep = self.preprocessor.preprocess_image(image)
        checkpoint()

        heatmap = await self.heatmap_gateway.infer(prep.tensor)
        checkpoint()

        try:
            detection = self.postprocessor.postprocess(heatmap, prep.original_size)
        except RecoverableDetectionError as heatmap_error:
            logger.info(f"Heatmap detection inconclusive for {photo_id}: {heatmap_error}")
            detection = await self._detect_points(photo_id, prep, checkpoint)
            if detection is None:
                raise heatmap_error

        return detection, heatmap

    async def _detect_points(
        self,
        photo_id: str,
        prep: PreprocessResult,
        checkpoint: Callable[[], None],
    ) -> Optional[CornerDetection]:
        if not self.config.use_point_model_fallback or self.point_gateway is None:
            return None
        if not await asyncio.to_thread(self.point_gateway.is_ready):
            logger.debug("Point model not ready, skipping point detection")
            return None

        prediction = await self.point_gateway.infer(prep.tensor)
        checkpoint()

        try:
            return self.postprocessor.postprocess_points(prediction, prep.original_size)
        except RecoverableDetectionError as e:
            logger.info(f"Point detection inconclusive for {photo_id}: {e}")
            return None

    def _save_debug(
        self,
        photo_id: str,
        image: np.ndarray,
        detection: CornerDetection,
        rectification: Rectification,
        heatmap: Optional[Heatmap] = None,
    ) -> None:
        from docrectify.utils.debug import draw_polygon, save_debug_image, visualize_confidence

        debug_dir = Path(self.config.debug_dir) / photo_id

        if heatmap is not None:
            combined = heatmap.as_array().max(axis=0)
            save_debug_image(
                visualize_confidence(combined),
                debug_dir / "00_heatmap.jpg",
                f"Corner heatmap ({heatmap.channels} channel(s))",
            )

        overlay = draw_polygon(
            image,
            detection.polygon.points,
            f"conf:{detection.confidence:.2f} method:{detection.method}",
        )
        save_debug_image(
            overlay,
            debug_dir / "01_corners.jpg",
            f"Detected corners (method={detection.method})",
        )
        save_debug_image(
            rectification.image,
            debug_dir / "02_rectified.jpg",
            f"Rectified {rectification.width}x{rectification.height}",
        )
