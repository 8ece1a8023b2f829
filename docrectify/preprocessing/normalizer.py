"""Letterbox normalization of photos into detection model tensors.

Pipeline:
    1. Uniform scale so the photo fits the model input (aspect preserved)
    2. Center on a padded canvas of the exact model input size
    3. Scale RGB to [0, 1]
    4. Transpose HWC -> CHW into a flat Tensor

The letterbox is recorded as a ``LetterboxTransform`` so detected points can
be mapped back to original pixel coordinates.
"""

import logging
from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np

from docrectify.preprocessing.loader import decode_image, image_size
from docrectify.tensor import Tensor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LetterboxTransform:
    """Invertible mapping between original pixels and model-input pixels.

    Points use the pixel-center convention: pixel ``i`` spans ``[i - 0.5, i + 0.5]``.
    """

    original_width: int
    original_height: int
    target_width: int
    target_height: int
    resized_width: int
    resized_height: int
    pad_x: int
    pad_y: int

    @classmethod
    def from_sizes(
        cls,
        original_size: Tuple[int, int],
        target_size: Tuple[int, int],
    ) -> "LetterboxTransform":
        """Compute the letterbox for an image of ``original_size`` (width, height).

        Deterministic in its inputs, so the postprocessor can rebuild the
        exact transform the preprocessor applied.
        """
        width, height = original_size
        target_w, target_h = target_size
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid original size: {width}x{height}")

        scale = min(target_w / width, target_h / height)
        resized_w = min(target_w, max(1, int(round(width * scale))))
        resized_h = min(target_h, max(1, int(round(height * scale))))

        return cls(
            original_width=width,
            original_height=height,
            target_width=target_w,
            target_height=target_h,
            resized_width=resized_w,
            resized_height=resized_h,
            pad_x=(target_w - resized_w) // 2,
            pad_y=(target_h - resized_h) // 2,
        )

    @property
    def scale_x(self) -> float:
        return self.resized_width / self.original_width

    @property
    def scale_y(self) -> float:
        return self.resized_height / self.original_height

    def to_model(self, points: np.ndarray) -> np.ndarray:
        """Map (N, 2) original-pixel points into model-input pixels."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        out = np.empty_like(pts)
        out[:, 0] = (pts[:, 0] + 0.5) * self.scale_x - 0.5 + self.pad_x
        out[:, 1] = (pts[:, 1] + 0.5) * self.scale_y - 0.5 + self.pad_y
        return out

    def to_original(self, points: np.ndarray) -> np.ndarray:
        """Map (N, 2) model-input points back to original pixels."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        out = np.empty_like(pts)
        out[:, 0] = (pts[:, 0] - self.pad_x + 0.5) / self.scale_x - 0.5
        out[:, 1] = (pts[:, 1] - self.pad_y + 0.5) / self.scale_y - 0.5
        return out

    def apply(self, image: np.ndarray, pad_value: int = 0) -> np.ndarray:
        """Letterbox an (H, W, 3) uint8 image onto the target canvas."""
        height, width = image.shape[:2]
        if (width, height) != (self.original_width, self.original_height):
            raise ValueError(
                f"Image is {width}x{height}, transform expects "
                f"{self.original_width}x{self.original_height}"
            )

        # INTER_AREA is best for downscaling, which is the common case
        shrinking = self.resized_width < width
        resized = cv2.resize(
            image,
            (self.resized_width, self.resized_height),
            interpolation=cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR,
        )

        canvas = np.full(
            (self.target_height, self.target_width, image.shape[2]),
            pad_value,
            dtype=image.dtype,
        )
        canvas[
            self.pad_y:self.pad_y + self.resized_height,
            self.pad_x:self.pad_x + self.resized_width,
        ] = resized
        return canvas


@dataclass(eq=False)
class PreprocessResult:
    """Output of the preprocessor.

    Attributes:
        tensor: Model input, (3, target_h, target_w) float32 in [0, 1]
        original_size: (width, height) of the decoded photo
        transform: Letterbox applied, for mapping detections back
    """

    tensor: Tensor
    original_size: Tuple[int, int]
    transform: LetterboxTransform


class Preprocessor:
    """Turns photos into the fixed-size tensor the detection model expects.

    Example:
        >>> preprocessor = Preprocessor(input_size=256)
        >>> image = np.zeros((600, 800, 3), dtype=np.uint8)
        >>> result = preprocessor.preprocess_image(image)
        >>> result.tensor.shape
        (3, 256, 256)
        >>> result.original_size
        (800, 600)
    """

    def __init__(self, input_size: int = 256, pad_value: int = 0) -> None:
        self.input_size = input_size
        self.pad_value = pad_value

    @property
    def target_size(self) -> Tuple[int, int]:
        return (self.input_size, self.input_size)

    def preprocess(self, data: bytes) -> PreprocessResult:
        """Decode raw image bytes and build the model tensor.

        Raises:
            DecodeError: If the bytes are not a valid image.
        """
        return self.preprocess_image(decode_image(data))

    def preprocess_image(self, image: np.ndarray) -> PreprocessResult:
        """Build the model tensor from an already decoded RGB uint8 array."""
        if image.ndim != 3 or image.shape[2] != 3:
            raise ValueError(f"Expected (H, W, 3) RGB array, got shape {image.shape}")

        original_size = image_size(image)
        transform = LetterboxTransform.from_sizes(original_size, self.target_size)

        letterboxed = transform.apply(image, self.pad_value)
        normalized = letterboxed.astype(np.float32) / 255.0
        chw = np.ascontiguousarray(normalized.transpose(2, 0, 1))

        logger.debug(
            f"Letterboxed {original_size[0]}x{original_size[1]} -> "
            f"{transform.resized_width}x{transform.resized_height} "
            f"(pad {transform.pad_x},{transform.pad_y})"
        )

        return PreprocessResult(
            tensor=Tensor.from_array(chw),
            original_size=original_size,
            transform=transform,
        )
