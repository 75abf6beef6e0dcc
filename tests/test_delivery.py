from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from motion_watch.delivery import Delivery, DeliveryDispatcher
from motion_watch.event_log import EventLog
from motion_watch.uploader import UploadError

CAPTURED_AT = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


class _FakeUploader:
    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.calls: list[tuple[Path, str]] = []
        self._fail = fail
        self._delay = delay

    async def send(self, path: Path, caption: str):
        self.calls.append((path, caption))
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail:
            raise UploadError("Telegram returned HTTP 500")
        return {"message_id": 1}


def _segment(tmp_path: Path, name: str = "clip.mp4") -> Path:
    path = tmp_path / name
    path.write_bytes(b"\x00" * 32)
    return path


async def _until(condition) -> None:
    while not condition():
        await asyncio.sleep(0.01)


def test_delivery_caption_uses_capture_time(tmp_path: Path) -> None:
    delivery = Delivery(tmp_path / "a.mp4", 7.0, CAPTURED_AT)
    assert delivery.caption == "Motion detected at 2024-05-01T12:30:00+00:00"


def test_dispatcher_requires_a_worker() -> None:
    with pytest.raises(ValueError):
        DeliveryDispatcher(None, workers=0)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_short_segment_is_deleted_without_upload(tmp_path: Path, anyio_backend) -> None:
    uploader = _FakeUploader()
    log = EventLog()
    dispatcher = DeliveryDispatcher(uploader, event_log=log)
    dispatcher.start()
    path = _segment(tmp_path)

    dispatcher.submit(path, 4.0, CAPTURED_AT)
    await dispatcher.join()
    await dispatcher.aclose()

    assert uploader.calls == []
    assert not path.exists()
    assert log.events("delivery") == ["segment_discarded"]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_successful_upload_removes_file(tmp_path: Path, anyio_backend) -> None:
    uploader = _FakeUploader()
    log = EventLog()
    dispatcher = DeliveryDispatcher(uploader, event_log=log)
    path = _segment(tmp_path)

    dispatcher.submit(path, 6.0, CAPTURED_AT)
    await dispatcher.join()
    await dispatcher.aclose()

    assert uploader.calls == [(path, "Motion detected at 2024-05-01T12:30:00+00:00")]
    assert not path.exists()
    entry = log.tail(1)[0]
    assert entry.event == "segment_delivered"
    assert entry.metadata == {
        "path": str(path),
        "duration_seconds": 6.0,
        "captured_at": CAPTURED_AT.isoformat(),
    }


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_failed_upload_keeps_file(tmp_path: Path, anyio_backend) -> None:
    uploader = _FakeUploader(fail=True)
    log = EventLog()
    dispatcher = DeliveryDispatcher(uploader, event_log=log)
    path = _segment(tmp_path)

    dispatcher.submit(path, 12.0, CAPTURED_AT)
    await dispatcher.join()
    await dispatcher.aclose()

    assert len(uploader.calls) == 1
    assert path.exists()
    assert log.events("delivery") == ["delivery_failed"]
    assert "HTTP 500" in log.tail(1)[0].message


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_segments_are_kept_without_uploader(tmp_path: Path, anyio_backend) -> None:
    log = EventLog()
    dispatcher = DeliveryDispatcher(None, event_log=log)
    short = _segment(tmp_path, "short.mp4")
    long = _segment(tmp_path, "long.mp4")

    dispatcher.submit(short, 1.0, CAPTURED_AT)
    dispatcher.submit(long, 30.0, CAPTURED_AT)
    await dispatcher.join()
    await dispatcher.aclose()

    assert not short.exists()
    assert long.exists()
    assert sorted(log.events("delivery")) == ["segment_discarded", "segment_kept"]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_flush_runs_before_gate_and_failures_do_not_block(
    tmp_path: Path, anyio_backend
) -> None:
    uploader = _FakeUploader()
    dispatcher = DeliveryDispatcher(uploader)
    flushed: list[str] = []

    def _flush_ok() -> None:
        assert not uploader.calls
        flushed.append("ok")

    def _flush_broken() -> None:
        raise RuntimeError("encoder exploded")

    first = _segment(tmp_path, "first.mp4")
    second = _segment(tmp_path, "second.mp4")
    dispatcher.submit(first, 8.0, CAPTURED_AT, flush=_flush_ok)
    dispatcher.submit(second, 8.0, CAPTURED_AT, flush=_flush_broken)
    await dispatcher.join()
    await dispatcher.aclose()

    assert flushed == ["ok"]
    assert sorted(path.name for path, _ in uploader.calls) == ["first.mp4", "second.mp4"]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_submit_does_not_wait_for_upload(tmp_path: Path, anyio_backend) -> None:
    uploader = _FakeUploader(delay=0.2)
    dispatcher = DeliveryDispatcher(uploader, workers=1)
    dispatcher.submit(_segment(tmp_path, "a.mp4"), 8.0, CAPTURED_AT)
    dispatcher.submit(_segment(tmp_path, "b.mp4"), 8.0, CAPTURED_AT)

    assert dispatcher.pending == 2
    await dispatcher.join()
    assert dispatcher.pending == 0
    await dispatcher.aclose()


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_aclose_abandons_work_after_grace_period(tmp_path: Path, anyio_backend) -> None:
    uploader = _FakeUploader(delay=5.0)
    dispatcher = DeliveryDispatcher(uploader, workers=1)
    path = _segment(tmp_path)
    dispatcher.submit(path, 8.0, CAPTURED_AT)
    await asyncio.sleep(0.05)

    await asyncio.wait_for(dispatcher.aclose(grace_period=0.1), timeout=2.0)

    assert path.exists()
    with pytest.raises(RuntimeError):
        dispatcher.submit(path, 8.0, CAPTURED_AT)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_segments_are_finalised_even_when_uploads_hang(
    tmp_path: Path, anyio_backend
) -> None:
    uploader = _FakeUploader(delay=3600.0)
    dispatcher = DeliveryDispatcher(uploader, workers=1)
    flushed: list[str] = []

    def _flush(name: str, pause: float = 0.0):
        def _close() -> None:
            time.sleep(pause)
            flushed.append(name)

        return _close

    first = _segment(tmp_path, "first.mp4")
    dispatcher.submit(first, 8.0, CAPTURED_AT, flush=_flush("first"))
    await asyncio.wait_for(_until(lambda: uploader.calls), timeout=2.0)
    assert [path.name for path, _ in uploader.calls] == ["first.mp4"]

    # Queued behind the hung upload and still closing when the grace period ends.
    second = _segment(tmp_path, "second.mp4")
    dispatcher.submit(second, 8.0, CAPTURED_AT, flush=_flush("second", pause=0.3))

    await asyncio.wait_for(dispatcher.aclose(grace_period=0.1), timeout=5.0)

    assert flushed == ["first", "second"]
    assert first.exists()
    assert second.exists()
