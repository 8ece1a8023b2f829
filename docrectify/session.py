"""Per-photo processing state machine and result cache.

A ``ProcessingSession`` is created per composition session and owns the task
table and the result cache, both keyed by photo id. Task states:

    IDLE -> QUEUED -> RUNNING -> RECTIFIED | FAILED_FALLBACK | CANCELLED
                              -> FAILED (decode, bridge or I/O errors)

Photos run concurrently as asyncio tasks, bounded by a semaphore. Only the
task currently holding RUNNING for a photo id writes that id's cache entry.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from docrectify.pipeline import RectificationPipeline, RectificationResult
from docrectify.utils.exceptions import (
    Cancelled,
    DecodeError,
    NativeBridgeError,
    RecoverableDetectionError,
)

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    RECTIFIED = "rectified"
    FAILED_FALLBACK = "failed_fallback"
    CANCELLED = "cancelled"
    FAILED = "failed"


ACTIVE_STATES = (TaskState.QUEUED, TaskState.RUNNING)


class PhotoState(str, Enum):
    CAPTURED = "captured"
    QUEUED = "queued"
    PROCESSING = "processing"
    RECTIFIED = "rectified"
    FAILED = "failed"


@dataclass
class PhotoAsset:
    """A captured photo. Only ``state`` changes after capture."""

    id: str
    source_uri: str
    captured_at: datetime = field(default_factory=datetime.now)
    state: PhotoState = PhotoState.CAPTURED


@dataclass(eq=False)
class ProcessingTask:
    """One rectification run for one photo.

    Attributes:
        photo_id: Photo being processed
        state: Current TaskState
        cancel_requested: Set by ``ProcessingSession.cancel``
        handle: asyncio task running the pipeline
        corners: User-supplied corners, skips detection when set
        error: Error message when the task FAILED
    """

    photo_id: str
    state: TaskState = TaskState.IDLE
    cancel_requested: bool = False
    handle: Optional["asyncio.Task"] = None
    corners: Optional[Sequence[Sequence[float]]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def checkpoint(self) -> None:
        """Raise Cancelled if cancellation was requested."""
        if self.cancel_requested:
            raise Cancelled(f"Task for photo {self.photo_id} was cancelled")

    def to_dict(self) -> dict:
        """Convert task to dictionary for reporting."""
        return {
            "photo_id": self.photo_id,
            "state": self.state.value,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class Pending:
    """Result placeholder while a task is queued or running."""

    photo_id: str
    state: TaskState


@dataclass(frozen=True)
class Failed:
    """Result of a task that failed or was cancelled."""

    photo_id: str
    state: TaskState
    error: Optional[str] = None


ResultView = Union[RectificationResult, Pending, Failed, None]


class ProcessingSession:
    """Schedules rectification runs and serves their results by photo id.

    Must be used from within a running event loop.

    Args:
        pipeline: Pipeline executing one photo.
        max_concurrency: Maximum number of photos processed at once.
            Defaults to ``pipeline.config.max_concurrency``.
    """

    def __init__(
        self,
        pipeline: RectificationPipeline,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.pipeline = pipeline
        self.max_concurrency = max_concurrency or pipeline.config.max_concurrency
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

        self._tasks: Dict[str, ProcessingTask] = {}
        self._assets: Dict[str, PhotoAsset] = {}
        self._results: Dict[str, RectificationResult] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None

        self.running_count = 0
        self.peak_running = 0

    @staticmethod
    def photo_id_for(uri: Union[str, Path]) -> str:
        """Stable photo id derived from the source URI."""
        return uuid.uuid5(uuid.NAMESPACE_URL, str(uri)).hex

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the loop that runs the tasks
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        return self._semaphore

    def is_model_ready(self) -> bool:
        return self.pipeline.is_model_ready()

    def submit_photo(
        self,
        uri: Union[str, Path],
        photo_id: Optional[str] = None,
        corners: Optional[Sequence[Sequence[float]]] = None,
    ) -> ProcessingTask:
        """Schedule a photo for rectification.

        Re-submitting a photo whose task is queued or running returns that
        task unchanged. Re-submitting after a terminal state starts a new run;
        its result replaces the cached one and deletes the earlier rectified
        image.

        Args:
            uri: Path or ``file://`` URI of the photo.
            photo_id: Id to track the photo by. Defaults to an id derived
                from ``uri``.
            corners: User-adjusted corners; detection is skipped.

        Returns:
            The task tracking this photo.
        """
        loop = asyncio.get_running_loop()
        uri = str(uri)
        photo_id = photo_id or self.photo_id_for(uri)

        existing = self._tasks.get(photo_id)
        if existing is not None and existing.is_active:
            logger.debug(f"Photo {photo_id} already {existing.state.value}, reusing task")
            return existing

        asset = self._assets.get(photo_id)
        if asset is None or asset.source_uri != uri:
            asset = PhotoAsset(id=photo_id, source_uri=uri)
            self._assets[photo_id] = asset
        asset.state = PhotoState.QUEUED

        task = ProcessingTask(photo_id=photo_id, state=TaskState.QUEUED, corners=corners)
        self._tasks[photo_id] = task
        task.handle = loop.create_task(self._run(task, asset))

        logger.info(f"Queued photo {photo_id}: {uri}")
        return task

    def get_task(self, photo_id: str) -> Optional[ProcessingTask]:
        return self._tasks.get(photo_id)

    def get_asset(self, photo_id: str) -> Optional[PhotoAsset]:
        return self._assets.get(photo_id)

    def list_tasks(self) -> List[ProcessingTask]:
        return list(self._tasks.values())

    def get_result(self, photo_id: str) -> ResultView:
        """Current result for a photo.

        Returns:
            RectificationResult for RECTIFIED and FAILED_FALLBACK tasks,
            Pending while queued or running, Failed for FAILED and
            CANCELLED tasks, None for unknown or evicted photos.
        """
        task = self._tasks.get(photo_id)
        if task is None:
            return None
        if task.is_active:
            return Pending(photo_id=photo_id, state=task.state)
        if task.state in (TaskState.FAILED, TaskState.CANCELLED):
            return Failed(photo_id=photo_id, state=task.state, error=task.error)
        return self._results.get(photo_id)

    def cancel(self, photo_id: str) -> bool:
        """Request cancellation of a queued or running task.

        The run stops at its next stage boundary; an in-flight inference
        call completes but its result is discarded.

        Returns:
            True if an active task was cancelled.
        """
        task = self._tasks.get(photo_id)
        if task is None or not task.is_active:
            return False

        task.cancel_requested = True
        task.state = TaskState.CANCELLED
        task.completed_at = datetime.now()

        asset = self._assets.get(photo_id)
        if asset is not None:
            asset.state = PhotoState.CAPTURED

        logger.info(f"Cancelled processing of photo {photo_id}")
        return True

    def evict(self, photo_id: str, delete_output: bool = False) -> bool:
        """Forget a photo, cancelling any active task.

        Args:
            photo_id: Photo to evict.
            delete_output: Also delete the rectified image file.

        Returns:
            True if anything was known about the photo.
        """
        self.cancel(photo_id)

        task = self._tasks.pop(photo_id, None)
        asset = self._assets.pop(photo_id, None)
        result = self._results.pop(photo_id, None)

        if delete_output and result is not None and not result.fallback:
            Path(result.image_uri).unlink(missing_ok=True)
            logger.debug(f"Deleted rectified image {result.image_uri}")

        found = task is not None or asset is not None or result is not None
        if found:
            logger.info(f"Evicted photo {photo_id}")
        return found

    async def wait(self, photo_id: str) -> ResultView:
        """Wait for the photo's current task to finish and return its result."""
        task = self._tasks.get(photo_id)
        if task is not None and task.handle is not None:
            await task.handle
        return self.get_result(photo_id)

    async def wait_all(self) -> None:
        handles = [t.handle for t in self._tasks.values() if t.handle is not None]
        if handles:
            await asyncio.gather(*handles)

    async def close(self) -> None:
        """Cancel all active tasks and wait for their runs to stop."""
        for photo_id, task in list(self._tasks.items()):
            if task.is_active:
                self.cancel(photo_id)
        await self.wait_all()

    async def _run(self, task: ProcessingTask, asset: PhotoAsset) -> None:
        async with self._get_semaphore():
            if task.cancel_requested:
                return

            task.state = TaskState.RUNNING
            task.started_at = datetime.now()
            asset.state = PhotoState.PROCESSING

            self.running_count += 1
            self.peak_running = max(self.peak_running, self.running_count)
            try:
                await self._execute(task, asset)
            finally:
                self.running_count -= 1

    async def _execute(self, task: ProcessingTask, asset: PhotoAsset) -> None:
        photo_id = task.photo_id

        # Manual corners need no model
        if task.corners is None and not await self.pipeline.ensure_model_ready():
            logger.warning(f"Model not ready, using original photo for {photo_id}")
            self._store(
                task,
                asset,
                TaskState.FAILED_FALLBACK,
                RectificationResult.unrectified(photo_id, asset.source_uri, "model not ready"),
            )
            return

        try:
            result = await self.pipeline.run(
                photo_id,
                asset.source_uri,
                checkpoint=task.checkpoint,
                corners=task.corners,
            )
        except Cancelled:
            logger.debug(f"Run for photo {photo_id} stopped after cancellation")
            return
        except RecoverableDetectionError as e:
            if task.cancel_requested:
                return
            logger.warning(f"Rectification failed for {photo_id}, using original photo: {e}")
            self._store(
                task,
                asset,
                TaskState.FAILED_FALLBACK,
                RectificationResult.unrectified(photo_id, asset.source_uri, str(e)),
            )
            return
        except (DecodeError, NativeBridgeError, OSError, ValueError) as e:
            self._fail(task, asset, e)
            return
        except Exception as e:
            logger.error(f"Unexpected error processing {photo_id}: {e}", exc_info=True)
            self._fail(task, asset, e)
            return

        if task.cancel_requested:
            # Cancelled while the output was being written
            Path(result.image_uri).unlink(missing_ok=True)
            logger.debug(f"Discarded result for cancelled photo {photo_id}")
            return

        self._store(task, asset, TaskState.RECTIFIED, result)

    def _store(
        self,
        task: ProcessingTask,
        asset: PhotoAsset,
        state: TaskState,
        result: RectificationResult,
    ) -> None:
        if task.state is not TaskState.RUNNING or self._tasks.get(task.photo_id) is not task:
            logger.debug(f"Dropping stale result for photo {task.photo_id}")
            return

        previous = self._results.get(task.photo_id)
        if (
            previous is not None
            and not previous.fallback
            and previous.image_uri != result.image_uri
        ):
            # Earlier rendering of this photo, owned by the cache
            Path(previous.image_uri).unlink(missing_ok=True)
            logger.debug(f"Deleted superseded rectified image {previous.image_uri}")

        self._results[task.photo_id] = result
        task.state = state
        task.completed_at = datetime.now()
        asset.state = PhotoState.RECTIFIED if state is TaskState.RECTIFIED else PhotoState.FAILED

        logger.info(f"Photo {task.photo_id}: {state.value} -> {result.image_uri}")

    def _fail(self, task: ProcessingTask, asset: PhotoAsset, error: Exception) -> None:
        if task.state is not TaskState.RUNNING:
            return

        task.state = TaskState.FAILED
        task.error = f"{type(error).__name__}: {error}"
        task.completed_at = datetime.now()
        asset.state = PhotoState.FAILED

        logger.error(f"Processing failed for photo {task.photo_id}: {task.error}")
