"""Photo decoding and letterbox normalization."""

from docrectify.preprocessing.loader import decode_image, read_photo_bytes, resolve_uri
from docrectify.preprocessing.normalizer import (
    LetterboxTransform,
    Preprocessor,
    PreprocessResult,
)

__all__ = [
    "decode_image",
    "read_photo_bytes",
    "resolve_uri",
    "LetterboxTransform",
    "Preprocessor",
    "PreprocessResult",
]
