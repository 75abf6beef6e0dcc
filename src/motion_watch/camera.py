"""Camera source abstractions."""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

import cv2
import numpy as np

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from .recorder import MotionRecorder

logger = logging.getLogger(__name__)

# User visible identifiers for camera backends.
CAMERA_SOURCES: dict[str, str] = {
    "opencv": "OpenCV (USB webcam)",
    "synthetic": "Synthetic test pattern",
}

DEFAULT_CAMERA_CHOICE = "opencv:0"


class CameraError(RuntimeError):
    """Raised when the camera cannot be initialised or read."""


class BaseCamera(ABC):
    """Abstract camera capable of producing BGR frames."""

    @abstractmethod
    async def get_frame(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


class OpenCVCamera(BaseCamera):
    """Camera backed by OpenCV ``VideoCapture``."""

    def __init__(
        self,
        index: int = 0,
        resolution: tuple[int, int] | None = None,
        *,
        fps: float | None = None,
    ) -> None:
        self._index = int(index)
        self._capture = cv2.VideoCapture(self._index)
        if not self._capture.isOpened():
            raise CameraError(f"Failed to open camera index {index}")
        if resolution is not None:
            width, height = resolution
            self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
            self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if fps is not None and fps > 0:
            self._capture.set(cv2.CAP_PROP_FPS, float(fps))

    async def get_frame(self) -> np.ndarray:
        ret, frame = await asyncio.to_thread(self._capture.read)
        if not ret or frame is None:
            raise CameraError(f"Failed to read frame from camera index {self._index}")
        return frame

    async def close(self) -> None:
        await asyncio.to_thread(self._capture.release)


class SyntheticCamera(BaseCamera):
    """Generates a moving test pattern for development and testing.

    A bright square sweeps across a dark background so the motion detector
    has something to react to without real hardware.
    """

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        resolution: tuple[int, int] | None = None,
        fps: float | None = 25.0,
        square: int = 80,
    ) -> None:
        if resolution is not None:
            width, height = resolution
        self._width = int(width)
        self._height = int(height)
        self._interval = 1.0 / fps if fps else 0.0
        self._square = max(1, min(int(square), self._width, self._height))
        self._frame_index = 0

    async def get_frame(self) -> np.ndarray:
        if self._interval:
            await asyncio.sleep(self._interval)
        frame = np.full((self._height, self._width, 3), 16, dtype=np.uint8)
        travel = max(1, self._width - self._square)
        x = (self._frame_index * 8) % travel
        y = (self._height - self._square) // 2
        frame[y : y + self._square, x : x + self._square] = 235
        self._frame_index += 1
        return frame


def parse_source(source: str | None) -> tuple[str, int | None]:
    """Split ``"opencv:<index>"`` or ``"synthetic"`` into kind and index."""

    text = (source or DEFAULT_CAMERA_CHOICE).strip().lower()
    kind, _, argument = text.partition(":")
    if kind not in CAMERA_SOURCES:
        raise CameraError(f"Unknown camera choice: {source}")
    if kind == "synthetic":
        if argument:
            raise CameraError(f"Synthetic camera takes no index: {source}")
        return kind, None
    if not argument:
        return kind, 0
    try:
        index = int(argument)
    except ValueError as exc:
        raise CameraError(f"Invalid camera index in {source!r}") from exc
    if index < 0:
        raise CameraError(f"Invalid camera index in {source!r}")
    return kind, index


def create_camera(
    source: str | None = None,
    *,
    resolution: tuple[int, int] | None = None,
    fps: float | None = None,
) -> BaseCamera:
    """Create the camera described by *source*.

    Failures raise :class:`CameraError` so callers can surface a helpful
    message instead of silently recording nothing.
    """

    kind, index = parse_source(source)
    if kind == "synthetic":
        return SyntheticCamera(resolution=resolution, fps=fps or 25.0)
    return OpenCVCamera(index or 0, resolution=resolution, fps=fps)


CameraFactory = Callable[[str], BaseCamera]


class CameraSource:
    """Poll a camera on a task and push timestamped frames into a recorder."""

    def __init__(
        self,
        recorder: "MotionRecorder",
        *,
        source_id: str = DEFAULT_CAMERA_CHOICE,
        camera_factory: CameraFactory = create_camera,
        clock: Callable[[], float] = time.monotonic,
        max_consecutive_errors: int = 25,
    ) -> None:
        self._recorder = recorder
        self._factory = camera_factory
        self._clock = clock
        self._source_id = source_id
        self._camera: BaseCamera | None = None
        self._task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._max_errors = max(1, int(max_consecutive_errors))

    @property
    def source_id(self) -> str:
        return self._source_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Open the camera and start polling it."""

        if self.running:
            return
        async with self._lock:
            if self._camera is None:
                self._camera = self._factory(self._source_id)
                logger.info("Opened camera %s", self._source_id)
        self._task = asyncio.create_task(self._run(), name="camera-source")

    async def reconfigure(self, source_id: str) -> None:
        """Close the current camera and continue with *source_id*."""

        camera = self._factory(source_id)
        async with self._lock:
            self._recorder.reconfigure(source_id=source_id)
            previous, self._camera = self._camera, camera
            self._source_id = source_id
        if previous is not None:
            await self._close_camera(previous)
        logger.info("Switched camera to %s", source_id)

    async def wait(self) -> None:
        """Wait until polling ends, re-raising the error that ended it."""

        task = self._task
        if task is not None:
            await asyncio.shield(task)

    async def stop(self) -> None:
        """Stop polling and release the camera."""

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except CameraError as exc:
                logger.debug("Camera polling had already failed: %s", exc)
        async with self._lock:
            camera, self._camera = self._camera, None
        if camera is not None:
            await self._close_camera(camera)

    async def _run(self) -> None:
        errors = 0
        while True:
            async with self._lock:
                camera = self._camera
                if camera is None:
                    return
                try:
                    frame = await camera.get_frame()
                except CameraError as exc:
                    errors += 1
                    if errors >= self._max_errors:
                        logger.error("Giving up on camera %s: %s", self._source_id, exc)
                        raise
                    logger.warning("Camera read failed: %s", exc)
                    await asyncio.sleep(0.1)
                    continue
                errors = 0
                self._recorder.submit_video(frame, self._clock())

    async def _close_camera(self, camera: BaseCamera) -> None:
        try:
            await camera.close()
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to close camera")


__all__ = [
    "BaseCamera",
    "CAMERA_SOURCES",
    "CameraError",
    "CameraSource",
    "DEFAULT_CAMERA_CHOICE",
    "OpenCVCamera",
    "SyntheticCamera",
    "create_camera",
    "parse_source",
]
