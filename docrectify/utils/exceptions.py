"""Exception taxonomy for the rectification pipeline.

Recoverable detection failures (``RecoverableDetectionError`` subclasses) are
absorbed by the session manager, which falls back to the unrectified photo.
Everything else is surfaced to the caller as a failed task.
"""


class RectificationError(Exception):
    """Base class for every error raised by the pipeline."""


class DecodeError(RectificationError):
    """The input bytes are not a decodable image."""


class NativeBridgeError(RectificationError):
    """Malformed data crossed the inference/vision collaborator boundary."""


class RecoverableDetectionError(RectificationError):
    """Detection or transform failure that still leaves the original photo usable."""


class LowConfidenceDetection(RecoverableDetectionError):
    """Fewer than four sufficiently confident corners were found."""


class DegeneratePolygon(RecoverableDetectionError):
    """The detected quadrilateral has near-zero area or is not convex."""


class TransformError(RecoverableDetectionError):
    """The corner configuration yields a singular homography."""


class Cancelled(RectificationError):
    """The task was cancelled before it reached a terminal stage."""
