"""Model invocation and the native bridge wire contract."""

from docrectify.inference.bridge import (
    NativeBridge,
    decode_float_buffer,
    decode_heatmap,
    decode_tensor,
    encode_float_buffer,
    encode_tensor,
)
from docrectify.inference.gateway import (
    InferenceGateway,
    OnnxHeatmapGateway,
    OnnxModel,
    OnnxPointGateway,
    PointModelGateway,
    SessionConfig,
)

__all__ = [
    "NativeBridge",
    "decode_float_buffer",
    "decode_heatmap",
    "decode_tensor",
    "encode_float_buffer",
    "encode_tensor",
    "InferenceGateway",
    "OnnxHeatmapGateway",
    "OnnxModel",
    "OnnxPointGateway",
    "PointModelGateway",
    "SessionConfig",
]
