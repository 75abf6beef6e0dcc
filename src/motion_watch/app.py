"""Command line entry point wiring the camera, recorder and uploader together."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .camera import CameraError, CameraSource, create_camera, parse_source
from .config import (
    ORIENTATIONS,
    ConfigError,
    Orientation,
    PreferenceStore,
    Preferences,
    RecorderSettings,
    TelegramConfig,
    prepare_segment_directory,
)
from .delivery import DeliveryDispatcher
from .event_log import EventLog
from .recorder import MotionRecorder
from .sink import VideoSegmentSink
from .uploader import TelegramUploader

logger = logging.getLogger(__name__)

DEFAULT_PREFERENCES_PATH = Path.home() / ".config" / "motion-watch" / "preferences.json"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the recorder CLI."""

    parser = argparse.ArgumentParser(
        prog="motion-watch",
        description="Record camera footage while motion is detected and deliver it to Telegram.",
    )
    parser.add_argument(
        "--source",
        help="Capture source: 'opencv:<index>' or 'synthetic' (default: saved preference or opencv:0).",
    )
    parser.add_argument(
        "--orientation",
        choices=sorted(ORIENTATIONS, key=ORIENTATIONS.__getitem__),
        help="Rotation applied to captured frames (default: saved preference or Up).",
    )
    parser.add_argument(
        "--disarmed",
        action="store_true",
        help="Detect motion without recording it.",
    )
    parser.add_argument(
        "--directory",
        type=Path,
        help="Directory for temporary segment files. Leftover segments are removed at startup.",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=Path(".env"),
        help="File holding TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID (default: .env).",
    )
    parser.add_argument(
        "--preferences",
        type=Path,
        default=DEFAULT_PREFERENCES_PATH,
        help="JSON file remembering the last source and orientation.",
    )
    parser.add_argument(
        "--event-log",
        type=Path,
        help="Append recorder and delivery events to this JSON lines file.",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="INFO",
        help="Logging verbosity.",
    )
    return parser


@dataclass(slots=True)
class Runtime:
    """Objects assembled from the command line for one run."""

    settings: RecorderSettings
    preferences: Preferences
    recorder: MotionRecorder
    dispatcher: DeliveryDispatcher
    source: CameraSource
    uploader: TelegramUploader | None
    event_log: EventLog


def resolve_preferences(args: argparse.Namespace, store: PreferenceStore) -> Preferences:
    """Merge saved preferences with CLI overrides, saving the overrides."""

    try:
        preferences = store.load()
    except ConfigError as exc:
        logger.warning("Ignoring unreadable preferences: %s", exc)
        preferences = Preferences()

    if args.source:
        parse_source(args.source)
    source = args.source if args.source else preferences.source
    orientation = (
        Orientation.from_name(args.orientation) if args.orientation else preferences.orientation
    )
    resolved = Preferences(source=source, orientation=orientation)
    if resolved != preferences:
        try:
            store.save(resolved)
        except OSError as exc:
            logger.warning("Unable to save preferences to %s: %s", store.path, exc)
    return resolved


def load_uploader(env_file: Path | None) -> TelegramUploader | None:
    """Return a Telegram uploader, or ``None`` when no credentials are set."""

    try:
        config = TelegramConfig.load(env_file)
    except ConfigError as exc:
        logger.warning("Telegram delivery disabled: %s", exc)
        return None
    return TelegramUploader(config)


def build_runtime(args: argparse.Namespace) -> Runtime:
    """Assemble the recorder stack described by *args*."""

    settings = RecorderSettings.from_env()
    if args.directory is not None:
        settings = dataclasses.replace(settings, directory=args.directory)

    preferences = resolve_preferences(args, PreferenceStore(args.preferences))
    source_id = preferences.source or "opencv:0"
    parse_source(source_id)

    directory = prepare_segment_directory(settings.directory)
    logger.info("Writing segments to %s", directory)

    event_log = EventLog(args.event_log)
    if event_log.path is not None:
        logger.info("Recording events to %s", event_log.path)
    uploader = load_uploader(args.env_file)
    dispatcher = DeliveryDispatcher(
        uploader,
        min_duration=settings.min_duration,
        workers=settings.delivery_workers,
        event_log=event_log,
    )
    recorder = MotionRecorder(
        VideoSegmentSink(fps=settings.fps),
        dispatcher,
        settings=settings,
        orientation=preferences.orientation,
        armed=not args.disarmed,
        event_log=event_log,
    )
    source = CameraSource(
        recorder,
        source_id=source_id,
        camera_factory=lambda choice: create_camera(choice, fps=settings.fps),
    )
    return Runtime(
        settings=settings,
        preferences=preferences,
        recorder=recorder,
        dispatcher=dispatcher,
        source=source,
        uploader=uploader,
        event_log=event_log,
    )


async def serve(runtime: Runtime, stop_event: asyncio.Event) -> None:
    """Run the capture loop until *stop_event* is set, then shut down."""

    runtime.recorder.start()
    try:
        await runtime.source.start()
        logger.info(
            "Watching %s (orientation %s, %s)",
            runtime.source.source_id,
            runtime.recorder.orientation.name,
            "armed" if runtime.recorder.armed else "disarmed",
        )
        stopper = asyncio.create_task(stop_event.wait())
        poller = asyncio.create_task(runtime.source.wait())
        done, pending = await asyncio.wait(
            {stopper, poller}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        if poller in done:
            # Polling only ends on its own when the camera gave up.
            poller.result()
    finally:
        await runtime.source.stop()
        await runtime.recorder.aclose(runtime.settings.shutdown_grace)
        if runtime.uploader is not None:
            await runtime.uploader.aclose()
        logger.info("Motion watch stopped")


async def _main_async(runtime: Runtime) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, stop_event.set)
    await serve(runtime, stop_event)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by ``python -m motion_watch``."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        runtime = build_runtime(args)
    except (ConfigError, CameraError, ValueError) as exc:
        logger.error("%s", exc)
        return 2
    try:
        asyncio.run(_main_async(runtime))
    except KeyboardInterrupt:  # pragma: no cover - signal handlers normally catch this
        pass
    except CameraError as exc:
        logger.error("Camera failure: %s", exc)
        return 1
    return 0


__all__ = [
    "Runtime",
    "build_parser",
    "build_runtime",
    "load_uploader",
    "main",
    "resolve_preferences",
    "serve",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
