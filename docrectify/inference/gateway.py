"""Asynchronous model invocation.

The pipeline only depends on the ``InferenceGateway`` and
``PointModelGateway`` protocols: ``await infer(tensor)`` plus ``is_ready()``.
The ONNX Runtime realization below runs each session call in the event
loop's default executor so the calling thread never blocks on a model.
"""

import asyncio
import functools
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Union

import numpy as np

from docrectify.inference.bridge import buffer_from_bytes
from docrectify.page_detection.detector import PointPrediction
from docrectify.tensor import Heatmap, Tensor
from docrectify.utils.exceptions import NativeBridgeError

logger = logging.getLogger(__name__)


class InferenceGateway(Protocol):
    """Heatmap model capability."""

    def is_ready(self) -> bool:
        ...

    async def infer(self, tensor: Tensor) -> Heatmap:
        ...


class PointModelGateway(Protocol):
    """Point model capability."""

    def is_ready(self) -> bool:
        ...

    async def infer(self, tensor: Tensor) -> PointPrediction:
        ...


@dataclass
class SessionConfig:
    """Configuration for ONNX Runtime inference sessions.

    Attributes:
        intra_op_threads: Number of threads for intra-op parallelism
        inter_op_threads: Number of threads for inter-op parallelism
        providers: Execution providers (default: CPUExecutionProvider)
    """

    intra_op_threads: int = 2
    inter_op_threads: int = 1
    providers: List[str] = field(default_factory=lambda: ["CPUExecutionProvider"])


class OnnxModel:
    """Lazily loaded ONNX Runtime session for one model file.

    Loading happens on first use and is cached. A missing or unloadable file
    makes ``is_ready()`` return False instead of raising. The first
    ``is_ready()`` blocks while the model loads; async callers run it in a
    worker thread.
    """

    def __init__(
        self,
        model_path: Union[str, Path],
        config: Optional[SessionConfig] = None,
    ) -> None:
        self.model_path = Path(model_path)
        self.config = config or SessionConfig()
        self._session = None
        self._lock = threading.Lock()

    def _load(self):
        import onnxruntime as ort

        if not self.model_path.exists():
            raise FileNotFoundError(f"Model file not found: {self.model_path}")

        logger.info(f"Loading model from {self.model_path}")

        sess_options = ort.SessionOptions()
        sess_options.intra_op_num_threads = self.config.intra_op_threads
        sess_options.inter_op_num_threads = self.config.inter_op_threads

        session = ort.InferenceSession(
            str(self.model_path),
            sess_options,
            providers=self.config.providers,
        )

        inputs = [i.name for i in session.get_inputs()]
        outputs = [o.name for o in session.get_outputs()]
        logger.info(f"  Loaded {self.model_path.name}: inputs={inputs} outputs={outputs}")
        return session

    @property
    def session(self):
        """The loaded session.

        Raises:
            NativeBridgeError: If the model cannot be loaded.
        """
        with self._lock:
            if self._session is None:
                try:
                    self._session = self._load()
                except Exception as e:
                    message = f"Cannot load model {self.model_path}: {e}"
                    logger.warning(message)
                    raise NativeBridgeError(message) from e
            return self._session

    def is_ready(self) -> bool:
        try:
            self.session
        except NativeBridgeError:
            return False
        return True

    def _run_sync(self, output_names: Sequence[str], feeds: Dict[str, np.ndarray]) -> List[np.ndarray]:
        try:
            return self.session.run(list(output_names), feeds)
        except NativeBridgeError:
            raise
        except Exception as e:
            raise NativeBridgeError(f"Inference failed for {self.model_path.name}: {e}") from e

    async def run(self, output_names: Sequence[str], feeds: Dict[str, np.ndarray]) -> List[np.ndarray]:
        """Run the session off the event loop thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self._run_sync, output_names, feeds)
        )


def _as_float32_le_bytes(array: np.ndarray) -> bytes:
    return np.ascontiguousarray(array, dtype="<f4").tobytes()


class OnnxHeatmapGateway:
    """Heatmap model on ONNX Runtime.

    Expects an input ``img`` of shape (1, 3, S, S) and an output ``heatmap`` of
    shape (1, C, H, W) with C in {1, 4}.
    """

    def __init__(
        self,
        model: OnnxModel,
        input_name: str = "img",
        output_name: str = "heatmap",
    ) -> None:
        self.model = model
        self.input_name = input_name
        self.output_name = output_name

    def is_ready(self) -> bool:
        return self.model.is_ready()

    async def infer(self, tensor: Tensor) -> Heatmap:
        (output,) = await self.model.run([self.output_name], {self.input_name: tensor.batched()})

        output = np.asarray(output)
        if output.ndim == 4 and output.shape[0] == 1:
            output = output[0]
        if output.ndim == 2:
            output = output[np.newaxis]
        if output.ndim != 3:
            raise NativeBridgeError(f"Unexpected heatmap shape {output.shape}")

        channels, height, width = output.shape
        buffer = buffer_from_bytes(_as_float32_le_bytes(output), width, height, channels)
        try:
            return Heatmap(width=width, height=height, channels=channels, buffer=buffer)
        except ValueError as e:
            raise NativeBridgeError(str(e)) from e


class OnnxPointGateway:
    """Point model on ONNX Runtime.

    Expects outputs ``points`` (8 normalized coordinates) and ``has_obj``
    (objectness score).
    """

    def __init__(
        self,
        model: OnnxModel,
        input_name: str = "img",
        points_name: str = "points",
        objectness_name: str = "has_obj",
    ) -> None:
        self.model = model
        self.input_name = input_name
        self.points_name = points_name
        self.objectness_name = objectness_name

    def is_ready(self) -> bool:
        return self.model.is_ready()

    async def infer(self, tensor: Tensor) -> PointPrediction:
        points, has_obj = await self.model.run(
            [self.points_name, self.objectness_name],
            {self.input_name: tensor.batched()},
        )

        has_obj = np.asarray(has_obj, dtype=np.float32).reshape(-1)
        if has_obj.size == 0:
            raise NativeBridgeError("Point model returned an empty objectness output")

        return PointPrediction(
            points=np.asarray(points, dtype=np.float32).reshape(-1),
            has_object=float(has_obj[0]),
        )
