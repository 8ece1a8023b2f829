"""Tensor value types exchanged with the detection models."""

import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Tensor:
    """Flat float32 buffer with planar (channel-major) layout.

    ``buffer[c * height * width + y * width + x]`` is the value of channel
    ``c`` at pixel ``(x, y)``.
    """

    width: int
    height: int
    channels: int
    buffer: np.ndarray

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0 or self.channels <= 0:
            raise ValueError(
                f"Tensor dimensions must be positive, got "
                f"{self.width}x{self.height}x{self.channels}"
            )

        self.buffer = np.ascontiguousarray(self.buffer, dtype=np.float32).reshape(-1)
        expected = self.width * self.height * self.channels
        if self.buffer.size != expected:
            raise ValueError(
                f"Tensor buffer has {self.buffer.size} values, expected "
                f"{self.width}*{self.height}*{self.channels}={expected}"
            )

    @classmethod
    def from_array(cls, array: np.ndarray) -> "Tensor":
        """Build a tensor from a (C, H, W) or (H, W) array."""
        if array.ndim == 2:
            array = array[np.newaxis]
        if array.ndim != 3:
            raise ValueError(f"Expected (C, H, W) or (H, W) array, got shape {array.shape}")

        channels, height, width = array.shape
        return cls(width=width, height=height, channels=channels, buffer=array.copy())

    @property
    def shape(self) -> tuple:
        """(channels, height, width)."""
        return (self.channels, self.height, self.width)

    def as_array(self) -> np.ndarray:
        """View of the buffer as a (C, H, W) array."""
        return self.buffer.reshape(self.shape)

    def batched(self) -> np.ndarray:
        """Copy shaped (1, C, H, W) for model runtimes."""
        return self.as_array()[np.newaxis].copy()


class Heatmap(Tensor):
    """Per-pixel corner confidence map in heatmap space.

    A single channel holds all four corners; four channels hold one corner
    each. Values are clipped to [0, 1].
    """

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.channels not in (1, 4):
            raise ValueError(f"Heatmap must have 1 or 4 channels, got {self.channels}")

        if not np.all(np.isfinite(self.buffer)) or self.buffer.min() < 0.0 or self.buffer.max() > 1.0:
            logger.debug("Heatmap values outside [0, 1], clipping")
            self.buffer = np.clip(np.nan_to_num(self.buffer, nan=0.0), 0.0, 1.0).astype(np.float32)

    def channel(self, index: int) -> np.ndarray:
        """Single channel as an (H, W) array."""
        return self.as_array()[index]
