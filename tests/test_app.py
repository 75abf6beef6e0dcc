from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from motion_watch import app
from motion_watch.config import Orientation, PreferenceStore, Preferences
from motion_watch.uploader import TelegramUploader


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID"):
        monkeypatch.delenv(name, raising=False)
    for name in ("DIRECTORY", "FPS", "MIN_DURATION", "HYSTERESIS_WINDOW", "SHUTDOWN_GRACE"):
        monkeypatch.delenv(f"MOTION_WATCH_{name}", raising=False)
    monkeypatch.chdir(tmp_path)


def _args(tmp_path: Path, *extra: str):
    return app.build_parser().parse_args(
        [
            "--directory",
            str(tmp_path / "segments"),
            "--preferences",
            str(tmp_path / "preferences.json"),
            "--env-file",
            str(tmp_path / "missing.env"),
            *extra,
        ]
    )


def test_parser_defaults() -> None:
    args = app.build_parser().parse_args([])
    assert args.source is None
    assert args.orientation is None
    assert args.disarmed is False
    assert args.env_file == Path(".env")
    assert args.log_level == "INFO"
    assert args.event_log is None


def test_cli_overrides_are_saved(tmp_path: Path) -> None:
    store = PreferenceStore(tmp_path / "preferences.json")
    store.save(Preferences(source="opencv:1", orientation=Orientation("Left")))

    args = _args(tmp_path, "--orientation", "Down")
    preferences = app.resolve_preferences(args, store)

    assert preferences.source == "opencv:1"
    assert preferences.orientation == Orientation("Down")
    saved = json.loads(store.path.read_text())
    assert saved == {"orientation": "Down", "source": "opencv:1"}


def test_corrupt_preferences_fall_back_to_defaults(tmp_path: Path) -> None:
    store = PreferenceStore(tmp_path / "preferences.json")
    store.path.write_text("not json")
    preferences = app.resolve_preferences(_args(tmp_path), store)
    assert preferences == Preferences()


def test_load_uploader_without_credentials(tmp_path: Path) -> None:
    assert app.load_uploader(tmp_path / "missing.env") is None


def test_load_uploader_from_env_file(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("TELEGRAM_BOT_TOKEN=123:abc\nTELEGRAM_CHAT_ID=99\n")
    assert isinstance(app.load_uploader(env_file), TelegramUploader)


def test_build_runtime_prepares_directory(tmp_path: Path) -> None:
    segments = tmp_path / "segments"
    segments.mkdir()
    (segments / "20240501T123000.250000Z.mp4").write_bytes(b"old")
    (segments / "keep.txt").write_text("mine")

    runtime = app.build_runtime(_args(tmp_path, "--source", "synthetic", "--disarmed"))

    assert [entry.name for entry in segments.iterdir()] == ["keep.txt"]
    assert runtime.settings.directory == segments
    assert runtime.uploader is None
    assert runtime.source.source_id == "synthetic"
    assert runtime.recorder.armed is False
    assert runtime.preferences.source == "synthetic"


def test_main_rejects_unknown_source(tmp_path: Path) -> None:
    argv = [
        "--source",
        "webcam",
        "--directory",
        str(tmp_path / "segments"),
        "--preferences",
        str(tmp_path / "preferences.json"),
    ]
    assert app.main(argv) == 2


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_serve_runs_until_stopped(tmp_path: Path, anyio_backend) -> None:
    runtime = app.build_runtime(_args(tmp_path, "--source", "synthetic"))
    stop_event = asyncio.Event()

    async def _stop_later() -> None:
        await asyncio.sleep(0.5)
        stop_event.set()

    stopper = asyncio.create_task(_stop_later())
    await asyncio.wait_for(app.serve(runtime, stop_event), timeout=20.0)
    await stopper

    snapshot = runtime.recorder.snapshot()
    assert snapshot["frames_processed"] > 0
    assert snapshot["state"] == "idle"
    assert not runtime.source.running
    # Segments shorter than the minimum duration never survive shutdown.
    assert list((tmp_path / "segments").glob("*.mp4")) == []


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"], indirect=True)
async def test_event_log_option_persists_events(tmp_path: Path, anyio_backend) -> None:
    log_path = tmp_path / "logs" / "events.jsonl"
    runtime = app.build_runtime(
        _args(tmp_path, "--source", "synthetic", "--event-log", str(log_path))
    )
    assert runtime.event_log.path == log_path

    runtime.recorder.start()
    runtime.recorder.reconfigure(orientation=Orientation("Left"))
    await runtime.recorder.join()
    await runtime.recorder.aclose(grace_period=0)

    events = [json.loads(line)["event"] for line in log_path.read_text().splitlines()]
    assert "reconfigured" in events
