"""Runtime coordinating motion detection, recording and delivery."""
from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import numpy as np

from .config import Orientation, RecorderSettings
from .controller import RecordingController, RecordingSession, RecordingState
from .delivery import DeliveryDispatcher
from .detection import MotionRegion, MotionTracker
from .event_log import EventLog
from .overlay import create_motion_overlay
from .pipeline import FramePipeline
from .sink import SegmentSink

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class RecorderStatus:
    """State of the recorder after the most recent video frame."""

    state: RecordingState
    armed: bool
    frames_left: int
    regions: tuple[MotionRegion, ...]
    presentation_time: float | None
    session_name: str | None = None

    @property
    def is_recording(self) -> bool:
        return self.state is RecordingState.RECORDING

    @property
    def motion_detected(self) -> bool:
        return bool(self.regions)


FrameCallback = Callable[[np.ndarray, RecorderStatus], None]


@dataclass(frozen=True, slots=True)
class _QueueItem:
    kind: str
    payload: Any = None
    presentation_time: float | None = None


_STOP = _QueueItem("stop")


class MotionRecorder:
    """Process frames in arrival order and record segments while motion lasts.

    Producers push video frames and audio samples with :meth:`submit_video`
    and :meth:`submit_audio` from any thread. A single consumer task takes
    them off one queue, so the tracker, the controller and the open segment
    are only ever touched from that task. The ``process_*`` methods run the
    same steps synchronously for callers that own the frame loop themselves.
    """

    def __init__(
        self,
        sink: SegmentSink,
        dispatcher: DeliveryDispatcher,
        *,
        settings: RecorderSettings | None = None,
        orientation: Orientation | None = None,
        armed: bool = True,
        on_frame: FrameCallback | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings or RecorderSettings()
        self._sink = sink
        self._dispatcher = dispatcher
        self._event_log = event_log
        self._orientation = orientation or Orientation()
        self._armed = bool(armed)
        self._on_frame = on_frame
        detection = self._settings.detection
        self._tracker = MotionTracker(min_area=detection.min_area, max_age=detection.max_age)
        self._controller = RecordingController(
            sink=sink,
            directory=self._settings.directory,
            hysteresis_window=detection.hysteresis_window,
            on_stop=self._handle_stopped,
            clock=clock,
        )
        self._pipeline = FramePipeline(lambda: self._orientation)
        self._pipeline.add_overlay(
            create_motion_overlay(lambda: (self._controller.hysteresis_frames_left, self._regions))
        )
        self._regions: tuple[MotionRegion, ...] = ()
        self._last_pts: float | None = None
        self._frames_processed = 0
        self._frames_dropped = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[_QueueItem] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._closing = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def orientation(self) -> Orientation:
        return self._orientation

    @property
    def is_recording(self) -> bool:
        return self._controller.is_recording

    @property
    def hysteresis_frames_left(self) -> int:
        return self._controller.hysteresis_frames_left

    @property
    def tracker(self) -> MotionTracker:
        return self._tracker

    @property
    def controller(self) -> RecordingController:
        return self._controller

    def set_armed(self, armed: bool) -> None:
        """Allow (or stop allowing) detected motion to trigger recording."""

        self._armed = bool(armed)
        logger.info("Recording %s", "armed" if self._armed else "disarmed")

    def status(self) -> RecorderStatus:
        session = self._controller.session
        return RecorderStatus(
            state=self._controller.state,
            armed=self._armed,
            frames_left=self._controller.hysteresis_frames_left,
            regions=self._regions,
            presentation_time=self._last_pts,
            session_name=session.name if session is not None else None,
        )

    def snapshot(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the recorder state."""

        status = self.status()
        return {
            "state": status.state.value,
            "armed": status.armed,
            "frames_left": status.frames_left,
            "motion_regions": len(status.regions),
            "session": status.session_name,
            "orientation": self._orientation.name,
            "frames_processed": self._frames_processed,
            "frames_dropped": self._frames_dropped,
            "sessions_opened": self._controller.sessions_opened,
            "pending_deliveries": self._dispatcher.pending,
            "detector": self._tracker.snapshot(),
        }

    # ------------------------------------------------------------------
    # Synchronous frame path
    # ------------------------------------------------------------------
    def process_video(self, frame: Any, presentation_time: float) -> RecorderStatus | None:
        """Run one video frame through detection, recording and rendering."""

        pts = float(presentation_time)
        if self._last_pts is not None and pts <= self._last_pts:
            self._frames_dropped += 1
            logger.warning(
                "Dropping out-of-order frame at %.3f (last %.3f)", pts, self._last_pts
            )
            return None
        try:
            oriented = self._pipeline.orient(np.asarray(frame))
            regions = self._tracker.observe(oriented)
        except Exception:
            self._frames_dropped += 1
            logger.exception("Skipping malformed frame at %.3f", pts)
            return None

        self._last_pts = pts
        self._frames_processed += 1
        self._regions = tuple(regions)
        height, width = oriented.shape[:2]
        step = self._controller.update(bool(regions), self._armed, pts, (width, height))
        if step.started is not None:
            self._record(
                "segment_started",
                "Recording started",
                step.started,
            )

        session = self._controller.session
        if session is not None:
            try:
                self._sink.write_video_frame(session.handle, oriented, pts)
            except Exception:
                logger.exception("Failed to write frame at %.3f to %s", pts, session.name)

        status = self.status()
        if self._on_frame is not None:
            try:
                self._on_frame(self._pipeline.render(oriented), status)
            except Exception:
                logger.exception("Frame callback failed")
        return status

    def process_audio(self, samples: Any, presentation_time: float) -> bool:
        """Write audio to the open segment; returns ``False`` when dropped."""

        session = self._controller.session
        if session is None:
            return False
        try:
            self._sink.write_audio_sample(session.handle, samples, float(presentation_time))
        except Exception:
            logger.exception("Failed to write audio to %s", session.name)
            return False
        return True

    def apply_reconfigure(
        self,
        *,
        orientation: Orientation | None = None,
        source_id: str | None = None,
    ) -> RecordingSession | None:
        """Stop any open segment and reset detection for a new source/orientation."""

        stopped = self.force_stop(reason="reconfigure")
        if orientation is not None:
            self._orientation = orientation
        self._tracker.reset()
        self._regions = ()
        if self._event_log is not None:
            self._event_log.record(
                "recorder",
                "reconfigured",
                "Capture reconfigured",
                metadata={"orientation": self._orientation.name, "source": source_id},
            )
        logger.info(
            "Reconfigured capture (orientation=%s, source=%s)", self._orientation.name, source_id
        )
        return stopped

    def force_stop(self, *, reason: str = "forced") -> RecordingSession | None:
        """Close the open segment at the last processed frame's time."""

        if not self._controller.is_recording:
            return None
        session = self._controller.session
        timestamp = self._last_pts
        if timestamp is None and session is not None:  # pragma: no cover - a session implies a frame
            timestamp = session.started_at
        return self._controller.stop(float(timestamp or 0.0), reason=reason)

    # ------------------------------------------------------------------
    # Queue driven runtime
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the consumer task and the delivery workers."""

        if self._consumer is not None and not self._consumer.done():
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._settings.queue_size)
        self._closing = False
        self._dispatcher.start()
        self._consumer = asyncio.create_task(self._consume(), name="motion-recorder")

    def submit_video(self, frame: Any, presentation_time: float) -> bool:
        """Queue a video frame; safe to call from any thread."""

        # Queued frames are shared with the producer; keep them read-only here.
        array = np.asarray(frame).view()
        array.setflags(write=False)
        return self._enqueue(_QueueItem("video", array, float(presentation_time)))

    def submit_audio(self, samples: Any, presentation_time: float) -> bool:
        """Queue audio samples; safe to call from any thread."""

        return self._enqueue(_QueueItem("audio", samples, float(presentation_time)))

    def reconfigure(
        self,
        *,
        orientation: Orientation | None = None,
        source_id: str | None = None,
    ) -> bool:
        """Request a source/orientation change after the frames already queued."""

        return self._enqueue(
            _QueueItem("reconfigure", {"orientation": orientation, "source_id": source_id})
        )

    async def join(self) -> None:
        """Wait until every queued item has been processed."""

        if self._queue is not None:
            await self._queue.join()

    async def aclose(self, grace_period: float | None = None) -> None:
        """Drain queued frames, close any open segment and stop deliveries."""

        grace = self._settings.shutdown_grace if grace_period is None else float(grace_period)
        self._closing = True
        consumer, self._consumer = self._consumer, None
        if consumer is not None and self._queue is not None:
            if not consumer.done():
                await self._queue.put(_STOP)
            try:
                await consumer
            except asyncio.CancelledError:  # pragma: no cover - shutdown race
                pass
        self.force_stop(reason="shutdown")
        await self._dispatcher.aclose(grace)

    def _enqueue(self, item: _QueueItem) -> bool:
        loop = self._loop
        if loop is None or self._queue is None or self._closing:
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._put(item)
        else:
            loop.call_soon_threadsafe(self._put, item)
        return True

    def _put(self, item: _QueueItem) -> None:
        assert self._queue is not None
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._frames_dropped += 1
            logger.warning("Frame queue full; dropping %s item", item.kind)

    async def _consume(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            item = await queue.get()
            try:
                if item is _STOP:
                    return
                self._dispatch(item)
            except Exception:
                logger.exception("Failed to process %s item", item.kind)
            finally:
                queue.task_done()

    def _dispatch(self, item: _QueueItem) -> None:
        if item.kind == "video":
            self.process_video(item.payload, item.presentation_time)
        elif item.kind == "audio":
            self.process_audio(item.payload, item.presentation_time)
        elif item.kind == "reconfigure":
            self.apply_reconfigure(**item.payload)
        else:  # pragma: no cover - internal item kinds only
            logger.warning("Ignoring unknown queue item %r", item.kind)

    # ------------------------------------------------------------------
    # Segment hand-off
    # ------------------------------------------------------------------
    def _handle_stopped(self, session: RecordingSession) -> None:
        self._tracker.reset()
        self._regions = ()
        self._record("segment_stopped", "Recording finished", session)
        self._dispatcher.submit(
            session.path,
            session.duration_seconds,
            session.captured_at,
            flush=functools.partial(self._sink.close, session.handle),
        )

    def _record(self, event: str, message: str, session: RecordingSession) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            "recorder",
            event,
            message,
            metadata={
                "name": session.name,
                "started_at": session.started_at,
                "ended_at": session.ended_at,
                "reason": session.stop_reason,
            },
        )


__all__ = ["FrameCallback", "MotionRecorder", "RecorderStatus"]
