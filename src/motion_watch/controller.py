"""Recording state machine driven by per-frame motion signals."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .sink import SegmentSink

logger = logging.getLogger(__name__)

DEFAULT_HYSTERESIS_WINDOW = 100


class RecordingState(str, Enum):
    """Whether a segment is currently open."""

    IDLE = "idle"
    RECORDING = "recording"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def segment_name(when: datetime) -> str:
    """Return a filesystem safe, timestamp based segment name."""

    stamp = when.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S.%fZ")
    return f"{stamp}.mp4"


@dataclass(slots=True)
class RecordingSession:
    """An open (or just closed) segment and its capture-clock bounds."""

    name: str
    path: Path
    started_at: float
    captured_at: datetime
    frame_size: tuple[int, int]
    handle: Any
    ended_at: float | None = None
    stop_reason: str | None = None

    @property
    def duration_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return max(0.0, self.ended_at - self.started_at)


@dataclass(frozen=True, slots=True)
class ControllerStep:
    """Outcome of feeding one frame to :class:`RecordingController`."""

    state: RecordingState
    frames_left: int
    started: RecordingSession | None = None
    stopped: RecordingSession | None = None
    open_error: BaseException | None = None

    @property
    def is_recording(self) -> bool:
        return self.state is RecordingState.RECORDING


StopCallback = Callable[[RecordingSession], None]


@dataclass
class RecordingController:
    """Open and close segments with a hysteresis countdown.

    Each video frame calls :meth:`update`. Motion while armed refills the
    countdown to ``hysteresis_window`` frames, any other frame decrements it.
    A segment is open exactly while the countdown is positive. Closed
    sessions are handed to ``on_stop`` and never touched again.
    """

    sink: SegmentSink
    directory: Path
    hysteresis_window: int = DEFAULT_HYSTERESIS_WINDOW
    on_stop: StopCallback | None = None
    clock: Callable[[], datetime] = _utcnow
    _state: RecordingState = field(init=False, default=RecordingState.IDLE)
    _frames_left: int = field(init=False, default=0)
    _session: RecordingSession | None = field(init=False, default=None)
    _sessions_opened: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        self.directory = Path(self.directory)
        self.hysteresis_window = int(self.hysteresis_window)
        if self.hysteresis_window < 1:
            raise ValueError("hysteresis_window must be at least 1")

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state is RecordingState.RECORDING

    @property
    def hysteresis_frames_left(self) -> int:
        return self._frames_left

    @property
    def session(self) -> RecordingSession | None:
        return self._session

    @property
    def sessions_opened(self) -> int:
        return self._sessions_opened

    def update(
        self,
        motion_detected: bool,
        armed: bool,
        timestamp: float,
        frame_size: tuple[int, int],
    ) -> ControllerStep:
        """Advance the countdown for one frame and open/close as required."""

        if motion_detected and armed:
            self._frames_left = self.hysteresis_window
        else:
            self._frames_left = max(0, self._frames_left - 1)

        should_record = self._frames_left > 0
        if should_record and self._state is RecordingState.IDLE:
            try:
                started = self._open_session(timestamp, frame_size)
            except Exception as exc:
                logger.error("Failed to start recording: %s", exc)
                return ControllerStep(self._state, self._frames_left, open_error=exc)
            return ControllerStep(self._state, self._frames_left, started=started)

        if not should_record and self._state is RecordingState.RECORDING:
            stopped = self.stop(timestamp, reason="hysteresis")
            return ControllerStep(self._state, self._frames_left, stopped=stopped)

        return ControllerStep(self._state, self._frames_left)

    def stop(self, timestamp: float, *, reason: str = "forced") -> RecordingSession | None:
        """Close the open session at *timestamp* and hand it to ``on_stop``."""

        session = self._session
        if reason != "hysteresis":
            self._frames_left = 0
        if session is None:
            self._state = RecordingState.IDLE
            return None
        session.ended_at = max(float(timestamp), session.started_at)
        session.stop_reason = reason
        self._session = None
        self._state = RecordingState.IDLE
        logger.info(
            "Recording finished at %s (%.2fs, %s)",
            session.path,
            session.duration_seconds,
            reason,
        )
        if self.on_stop is not None:
            self.on_stop(session)
        return session

    def _open_session(self, timestamp: float, frame_size: tuple[int, int]) -> RecordingSession:
        captured_at = self.clock()
        name = segment_name(captured_at)
        path = self.directory / name
        handle = self.sink.open(path, frame_size)
        session = RecordingSession(
            name=name,
            path=path,
            started_at=float(timestamp),
            captured_at=captured_at,
            frame_size=(int(frame_size[0]), int(frame_size[1])),
            handle=handle,
        )
        self._session = session
        self._state = RecordingState.RECORDING
        self._sessions_opened += 1
        logger.info("Starting recording %s", path)
        return session


__all__ = [
    "ControllerStep",
    "DEFAULT_HYSTERESIS_WINDOW",
    "RecordingController",
    "RecordingSession",
    "RecordingState",
    "segment_name",
]
