"""Wire contract with the native inference/vision runtime.

Tensors and heatmaps cross the boundary as base64 text of little-endian
float32 buffers in planar (channel-major) order. Every decoded buffer is
checked against ``width * height * channels * 4`` bytes before use.

``NativeBridge`` exposes the two collaborator calls:

    preprocess(image_base64) -> {"tensor": str, "originalSize": {"width", "height"}}
    postprocess_heatmap(heatmap_base64, width, height) -> Polygon
"""

import base64
import binascii
import logging
from typing import Any, Dict, Optional, Tuple

import numpy as np

from docrectify.page_detection.detector import CornerPostprocessor
from docrectify.page_detection.polygon import Polygon
from docrectify.preprocessing.normalizer import Preprocessor
from docrectify.tensor import Heatmap, Tensor
from docrectify.utils.exceptions import DecodeError, NativeBridgeError

logger = logging.getLogger(__name__)

FLOAT32_LE = np.dtype("<f4")


def encode_float_buffer(values: np.ndarray) -> str:
    """Base64 of the values as little-endian float32."""
    return base64.b64encode(np.asarray(values, dtype=FLOAT32_LE).tobytes()).decode("ascii")


def _b64decode(data: str) -> bytes:
    try:
        # Native encoders may wrap lines
        compact = "".join(data.split()) if isinstance(data, str) else data
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError, TypeError, AttributeError) as e:
        raise NativeBridgeError(f"Invalid base64 payload: {e}") from e


def buffer_from_bytes(raw: bytes, width: int, height: int, channels: int = 1) -> np.ndarray:
    """Validate and view raw little-endian float32 bytes as a flat array.

    Raises:
        NativeBridgeError: Non-positive dimensions or a length mismatch.
    """
    if width <= 0 or height <= 0 or channels <= 0:
        raise NativeBridgeError(f"Invalid buffer dimensions {width}x{height}x{channels}")

    expected = width * height * channels * FLOAT32_LE.itemsize
    if len(raw) != expected:
        raise NativeBridgeError(
            f"Buffer is {len(raw)} bytes, expected {width}*{height}*{channels}*4={expected}"
        )

    return np.frombuffer(raw, dtype=FLOAT32_LE).astype(np.float32)


def decode_float_buffer(data: str, width: int, height: int, channels: int = 1) -> np.ndarray:
    """Decode a base64 float32 buffer, validating its length."""
    return buffer_from_bytes(_b64decode(data), width, height, channels)


def encode_tensor(tensor: Tensor) -> str:
    return encode_float_buffer(tensor.buffer)


def decode_tensor(data: str, width: int, height: int, channels: int) -> Tensor:
    buffer = decode_float_buffer(data, width, height, channels)
    return Tensor(width=width, height=height, channels=channels, buffer=buffer)


def decode_heatmap(data: str, width: int, height: int, channels: int = 1) -> Heatmap:
    buffer = decode_float_buffer(data, width, height, channels)
    return Heatmap(width=width, height=height, channels=channels, buffer=buffer)


def _infer_channels(num_bytes: int, width: int, height: int) -> int:
    plane = width * height * FLOAT32_LE.itemsize
    for channels in (1, 4):
        if num_bytes == plane * channels:
            return channels
    raise NativeBridgeError(
        f"Heatmap is {num_bytes} bytes, expected {plane} or {plane * 4} for {width}x{height}"
    )


class NativeBridge:
    """Serves the collaborator calls on top of the in-process pipeline stages.

    Args:
        preprocessor: Letterbox preprocessor for the detection model.
        postprocessor: Heatmap postprocessor.
        heatmap_size: (width, height) of heatmaps arriving over the bridge.
        heatmap_channels: 1 for a combined corner map, 4 for one map per
            corner. None infers it from the payload length, so the bundled
            model's 4x128x128 heatmaps and single-channel maps both decode.
    """

    def __init__(
        self,
        preprocessor: Optional[Preprocessor] = None,
        postprocessor: Optional[CornerPostprocessor] = None,
        heatmap_size: Tuple[int, int] = (128, 128),
        heatmap_channels: Optional[int] = None,
    ) -> None:
        self.preprocessor = preprocessor or Preprocessor()
        self.postprocessor = postprocessor or CornerPostprocessor(
            model_input_size=self.preprocessor.input_size
        )
        self.heatmap_size = heatmap_size
        self.heatmap_channels = heatmap_channels

    def preprocess(self, image_base64: str) -> Dict[str, Any]:
        """Decode a base64 photo and return the encoded model tensor.

        Raises:
            NativeBridgeError: Invalid base64 or undecodable image.
        """
        raw = _b64decode(image_base64)
        try:
            result = self.preprocessor.preprocess(raw)
        except DecodeError as e:
            raise NativeBridgeError(f"Invalid image: {e}") from e

        width, height = result.original_size
        return {
            "tensor": encode_tensor(result.tensor),
            "originalSize": {"width": width, "height": height},
        }

    def postprocess_heatmap(self, heatmap_base64: str, width: int, height: int) -> Polygon:
        """Decode a heatmap and return the page polygon in original pixels.

        Args:
            heatmap_base64: Encoded heatmap of ``heatmap_size`` x ``heatmap_channels``.
            width: Original photo width.
            height: Original photo height.

        Raises:
            NativeBridgeError: Malformed heatmap buffer or invalid size.
            LowConfidenceDetection: Fewer than four confident corners.
            DegeneratePolygon: Corners do not form a usable quadrilateral.
        """
        if width <= 0 or height <= 0:
            raise NativeBridgeError(f"Invalid original size {width}x{height}")

        heat_w, heat_h = self.heatmap_size
        raw = _b64decode(heatmap_base64)
        channels = self.heatmap_channels or _infer_channels(len(raw), heat_w, heat_h)
        buffer = buffer_from_bytes(raw, heat_w, heat_h, channels)
        heatmap = Heatmap(width=heat_w, height=heat_h, channels=channels, buffer=buffer)
        return self.postprocessor.postprocess(heatmap, (width, height)).polygon
