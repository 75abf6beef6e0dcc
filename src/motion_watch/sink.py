"""Segment sinks that persist recorded frames to video files."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Any

import av
import cv2
import numpy as np

logger = logging.getLogger(__name__)


class SegmentOpenError(RuntimeError):
    """Raised when a segment file cannot be created."""


class SegmentSink(ABC):
    """Destination for the frames and audio of an active recording."""

    @abstractmethod
    def open(self, path: Path, frame_size: tuple[int, int]) -> Any:  # pragma: no cover - interface only
        """Create the segment at *path* for frames of ``(width, height)``."""

    @abstractmethod
    def write_video_frame(
        self, handle: Any, frame: np.ndarray, presentation_time: float
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    def write_audio_sample(
        self, handle: Any, samples: Any, presentation_time: float
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    def close(self, handle: Any) -> None:  # pragma: no cover - interface only
        """Flush and close *handle*; may block until the file is complete."""


def _codec_candidates(encoding: str) -> list[str]:
    codec = encoding.lower()
    if codec in {"h264", "libx264"}:
        return ["libx264", "h264", "mpeg4"]
    if codec in {"hevc", "h265", "libx265"}:
        return ["libx265", "hevc", "libx264", "h264"]
    return [codec, "libx264", "h264", "mpeg4"]


def ensure_rgb_frame(frame: np.ndarray) -> np.ndarray:
    """Return a contiguous RGB copy of a BGR/BGRA/gray frame."""

    array = np.asarray(frame)
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    if array.ndim == 2:
        rgb = cv2.cvtColor(array, cv2.COLOR_GRAY2RGB)
    elif array.ndim == 3 and array.shape[2] == 4:
        rgb = cv2.cvtColor(array, cv2.COLOR_BGRA2RGB)
    elif array.ndim == 3 and array.shape[2] == 3:
        rgb = cv2.cvtColor(array, cv2.COLOR_BGR2RGB)
    else:
        raise ValueError(f"Unsupported frame shape for encoding: {array.shape}")
    return np.ascontiguousarray(rgb)


@dataclass(slots=True)
class VideoSegmentWriter:
    """Open MP4 container receiving frames for a single segment."""

    path: Path
    width: int
    height: int
    fps: float
    container: Any
    stream: Any
    audio_stream: Any | None = None
    sample_rate: int = 44100
    audio_layout: str = "stereo"
    video_frames: int = field(default=0)
    audio_samples: int = field(default=0)
    _origin: float | None = field(default=None)
    _last_pts: int = field(default=-1)
    _closed: bool = field(default=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def _pts_for(self, presentation_time: float) -> int:
        if self._origin is None:
            self._origin = float(presentation_time)
        elapsed = max(0.0, float(presentation_time) - self._origin)
        pts = int(round(elapsed * self.fps))
        if pts <= self._last_pts:
            pts = self._last_pts + 1
        self._last_pts = pts
        return pts

    def encode_video(self, frame: np.ndarray, presentation_time: float) -> None:
        if self._closed:
            raise RuntimeError("Segment writer has been closed")
        height, width = frame.shape[:2]
        if (width, height) != (self.width, self.height):
            logger.warning(
                "Dropping frame of size %sx%s for segment %s opened at %sx%s",
                width,
                height,
                self.path.name,
                self.width,
                self.height,
            )
            return
        rgb = ensure_rgb_frame(frame)
        if width % 2 or height % 2:
            rgb = np.ascontiguousarray(rgb[: height - height % 2, : width - width % 2])
        video_frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
        video_frame.pts = self._pts_for(presentation_time)
        for packet in self.stream.encode(video_frame):
            self.container.mux(packet)
        self.video_frames += 1

    def encode_audio(self, samples: Any, presentation_time: float) -> None:
        if self._closed:
            raise RuntimeError("Segment writer has been closed")
        if self.audio_stream is None:
            return
        array = np.asarray(samples)
        if array.dtype != np.int16:
            array = np.clip(array, -32768, 32767).astype(np.int16)
        # Packed s16 expects a single plane of interleaved samples.
        channels = 1 if self.audio_layout == "mono" else 2
        interleaved = np.ascontiguousarray(array.reshape(1, -1))
        frame = av.AudioFrame.from_ndarray(interleaved, format="s16", layout=self.audio_layout)
        frame.sample_rate = self.sample_rate
        frame.time_base = Fraction(1, self.sample_rate)
        frame.pts = self.audio_samples
        for packet in self.audio_stream.encode(frame):
            self.container.mux(packet)
        self.audio_samples += interleaved.shape[1] // channels

    def finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            for packet in self.stream.encode():
                self.container.mux(packet)
            if self.audio_stream is not None:
                for packet in self.audio_stream.encode():
                    self.container.mux(packet)
        finally:
            self.container.close()


class VideoSegmentSink(SegmentSink):
    """Encode segments into MP4 files with PyAV."""

    def __init__(
        self,
        *,
        fps: float = 25.0,
        encoding: str = "h264",
        bit_rate: int = 300 * 8 * 1000,
        audio_sample_rate: int | None = None,
        audio_layout: str = "stereo",
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        if audio_layout not in {"mono", "stereo"}:
            raise ValueError("audio_layout must be 'mono' or 'stereo'")
        self._fps = float(fps)
        self._encoding = encoding
        self._bit_rate = int(bit_rate)
        self._audio_sample_rate = int(audio_sample_rate) if audio_sample_rate else None
        self._audio_layout = audio_layout

    @property
    def fps(self) -> float:
        return self._fps

    def open(self, path: Path, frame_size: tuple[int, int]) -> VideoSegmentWriter:
        width, height = (int(frame_size[0]), int(frame_size[1]))
        if width < 2 or height < 2:
            raise SegmentOpenError(f"Invalid frame size {width}x{height}")
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            container = av.open(path.as_posix(), mode="w")
        except (OSError, av.FFmpegError) as exc:
            raise SegmentOpenError(f"Unable to create segment {path}: {exc}") from exc

        rate = Fraction(self._fps).limit_denominator(1000)
        stream = None
        for codec in _codec_candidates(self._encoding):
            try:
                stream = container.add_stream(codec, rate=rate)
            except (av.FFmpegError, ValueError):
                continue
            else:
                break
        if stream is None:
            container.close()
            raise SegmentOpenError(f"No compatible encoder available for {self._encoding!r}")
        # yuv420p needs even dimensions; odd frames lose their last row/column.
        stream.width = width - width % 2
        stream.height = height - height % 2
        stream.pix_fmt = "yuv420p"
        stream.bit_rate = self._bit_rate
        stream.time_base = 1 / rate

        audio_stream = None
        if self._audio_sample_rate:
            try:
                audio_stream = container.add_stream("aac", rate=self._audio_sample_rate)
                audio_stream.codec_context.layout = self._audio_layout
            except (av.FFmpegError, AttributeError, ValueError):
                logger.warning("AAC encoder unavailable; recording %s without audio", path.name)
                audio_stream = None

        logger.info(
            "Opened segment %s (%sx%s, codec %s)", path.name, width, height, stream.codec_context.name
        )
        return VideoSegmentWriter(
            path=path,
            width=width,
            height=height,
            fps=float(rate),
            container=container,
            stream=stream,
            audio_stream=audio_stream,
            sample_rate=self._audio_sample_rate or 44100,
            audio_layout=self._audio_layout,
        )

    def write_video_frame(
        self, handle: VideoSegmentWriter, frame: np.ndarray, presentation_time: float
    ) -> None:
        handle.encode_video(frame, presentation_time)

    def write_audio_sample(
        self, handle: VideoSegmentWriter, samples: Any, presentation_time: float
    ) -> None:
        handle.encode_audio(samples, presentation_time)

    def close(self, handle: VideoSegmentWriter) -> None:
        handle.finish()
        logger.info(
            "Closed segment %s (%d video frames)", handle.path.name, handle.video_frames
        )


__all__ = [
    "SegmentOpenError",
    "SegmentSink",
    "VideoSegmentSink",
    "VideoSegmentWriter",
    "ensure_rgb_frame",
]
