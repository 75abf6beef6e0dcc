"""Tests for camera selection and the polling camera source."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest

from motion_watch.camera import (
    BaseCamera,
    CameraError,
    CameraSource,
    SyntheticCamera,
    create_camera,
    parse_source,
)


@pytest.mark.parametrize(
    "source, expected",
    [
        ("synthetic", ("synthetic", None)),
        ("opencv:2", ("opencv", 2)),
        ("OpenCV", ("opencv", 0)),
        (None, ("opencv", 0)),
    ],
)
def test_parse_source(source, expected) -> None:
    assert parse_source(source) == expected


@pytest.mark.parametrize("source", ["picamera", "opencv:abc", "opencv:-1", "synthetic:1"])
def test_parse_source_rejects_unknown_values(source: str) -> None:
    with pytest.raises(CameraError):
        parse_source(source)


def test_create_camera_builds_synthetic_source() -> None:
    camera = create_camera("synthetic", resolution=(80, 60))
    assert isinstance(camera, SyntheticCamera)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_synthetic_camera_produces_moving_bgr_frames(anyio_backend) -> None:
    camera = SyntheticCamera(160, 120, fps=None, square=20)
    first = await camera.get_frame()
    second = await camera.get_frame()
    assert first.shape == (120, 160, 3)
    assert first.dtype == np.uint8
    assert not np.array_equal(first, second)


class _ScriptedCamera(BaseCamera):
    def __init__(self, name: str, *, failures: int = 0) -> None:
        self.name = name
        self.closed = False
        self._failures = failures

    async def get_frame(self) -> np.ndarray:
        await asyncio.sleep(0.001)
        if self._failures:
            self._failures -= 1
            raise CameraError("read failed")
        return np.zeros((8, 8, 3), dtype=np.uint8)

    async def close(self) -> None:
        self.closed = True


class _RecorderStub:
    def __init__(self) -> None:
        self.frames: list[float] = []
        self.reconfigured: list[str | None] = []

    def submit_video(self, frame, presentation_time: float) -> bool:
        self.frames.append(presentation_time)
        return True

    def reconfigure(self, *, orientation=None, source_id=None) -> bool:
        self.reconfigured.append(source_id)
        return True


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_camera_source_pushes_timestamped_frames(anyio_backend) -> None:
    recorder = _RecorderStub()
    cameras: list[_ScriptedCamera] = []
    ticks = iter(range(1, 10_000))

    def factory(source_id: str) -> _ScriptedCamera:
        camera = _ScriptedCamera(source_id)
        cameras.append(camera)
        return camera

    source = CameraSource(
        recorder, source_id="synthetic", camera_factory=factory, clock=lambda: float(next(ticks))
    )
    await source.start()
    while len(recorder.frames) < 3:
        await asyncio.sleep(0.005)

    await source.reconfigure("opencv:1")
    assert recorder.reconfigured == ["opencv:1"]
    assert source.source_id == "opencv:1"
    assert cameras[0].closed
    count = len(recorder.frames)
    while len(recorder.frames) < count + 2:
        await asyncio.sleep(0.005)

    await source.stop()
    assert cameras[1].closed
    assert not source.running
    assert recorder.frames == sorted(recorder.frames)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_camera_source_gives_up_after_repeated_failures(anyio_backend) -> None:
    recorder = _RecorderStub()
    source = CameraSource(
        recorder,
        camera_factory=lambda source_id: _ScriptedCamera(source_id, failures=100),
        max_consecutive_errors=3,
    )
    await source.start()
    with pytest.raises(CameraError):
        await asyncio.wait_for(source.wait(), timeout=5.0)
    await source.stop()
    assert recorder.frames == []
