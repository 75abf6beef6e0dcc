"""Configuration management for motion-watch."""
from __future__ import annotations

import json
import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

from dotenv import dotenv_values

DEFAULT_SEGMENT_DIRECTORY = Path(
    os.environ.get("MOTION_WATCH_DIRECTORY", Path.home() / ".cache" / "motion-watch")
)
DEFAULT_TELEGRAM_BASE_URL = "https://api.telegram.org"
# Names produced by ``controller.segment_name``.
SEGMENT_FILE_PATTERN = re.compile(r"\d{8}T\d{6}\.\d{6}Z\.mp4")


class ConfigError(ValueError):
    """Raised when required configuration is missing or malformed."""


# Clockwise rotation applied to incoming frames for each user facing name.
ORIENTATIONS: dict[str, int] = {
    "Up": 0,
    "Right": 90,
    "Down": 180,
    "Left": 270,
}


@dataclass(frozen=True, slots=True)
class Orientation:
    """Represents the rotation applied to captured frames."""

    name: str = "Up"

    def __post_init__(self) -> None:
        if self.name not in ORIENTATIONS:
            raise ValueError(
                f"Unknown orientation {self.name!r}; expected one of {', '.join(ORIENTATIONS)}"
            )

    @classmethod
    def from_name(cls, value: str | None) -> "Orientation":
        if value is None:
            return cls()
        text = str(value).strip().lower()
        for name in ORIENTATIONS:
            if name.lower() == text:
                return cls(name)
        raise ValueError(f"Unknown orientation {value!r}")

    @property
    def rotation(self) -> int:
        return ORIENTATIONS[self.name]

    @property
    def swaps_axes(self) -> bool:
        return self.rotation in (90, 270)


@dataclass(frozen=True, slots=True)
class DetectionSettings:
    """Tuning values for motion detection and the recording countdown."""

    min_area: float = 400.0
    max_age: int = 10
    hysteresis_window: int = 100

    def __post_init__(self) -> None:
        try:
            min_area = float(self.min_area)
        except (TypeError, ValueError) as exc:
            raise ValueError("Minimum contour area must be numeric") from exc
        if not math.isfinite(min_area) or min_area < 0:
            raise ValueError("Minimum contour area must be a non-negative finite value")
        if int(self.max_age) < 1:
            raise ValueError("Baseline max age must be at least one frame")
        if int(self.hysteresis_window) < 1:
            raise ValueError("Hysteresis window must be at least one frame")
        object.__setattr__(self, "min_area", min_area)
        object.__setattr__(self, "max_age", int(self.max_age))
        object.__setattr__(self, "hysteresis_window", int(self.hysteresis_window))

    def to_dict(self) -> dict[str, float | int]:
        return {
            "min_area": float(self.min_area),
            "max_age": int(self.max_age),
            "hysteresis_window": int(self.hysteresis_window),
        }


@dataclass(frozen=True, slots=True)
class RecorderSettings:
    """Runtime options for the recorder and its delivery pool."""

    directory: Path = DEFAULT_SEGMENT_DIRECTORY
    fps: float = 25.0
    min_duration: float = 6.0
    delivery_workers: int = 2
    queue_size: int = 64
    shutdown_grace: float = 10.0
    detection: DetectionSettings = field(default_factory=DetectionSettings)

    def __post_init__(self) -> None:
        object.__setattr__(self, "directory", Path(self.directory))
        if not (0 < float(self.fps) <= 120):
            raise ValueError("Recording fps must be between 0 and 120")
        if float(self.min_duration) < 0:
            raise ValueError("Minimum segment duration must not be negative")
        if int(self.delivery_workers) < 1:
            raise ValueError("At least one delivery worker is required")
        if int(self.queue_size) < 1:
            raise ValueError("Frame queue size must be positive")
        if float(self.shutdown_grace) < 0:
            raise ValueError("Shutdown grace period must not be negative")
        object.__setattr__(self, "fps", float(self.fps))
        object.__setattr__(self, "min_duration", float(self.min_duration))
        object.__setattr__(self, "delivery_workers", int(self.delivery_workers))
        object.__setattr__(self, "queue_size", int(self.queue_size))
        object.__setattr__(self, "shutdown_grace", float(self.shutdown_grace))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RecorderSettings":
        """Build settings from ``MOTION_WATCH_*`` environment variables."""

        env = os.environ if environ is None else environ

        def _get(name: str, default: Any, cast: Any) -> Any:
            raw = env.get(f"MOTION_WATCH_{name}")
            if raw is None or not str(raw).strip():
                return default
            try:
                return cast(raw)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid value for MOTION_WATCH_{name}: {raw!r}") from exc

        defaults = DetectionSettings()
        try:
            detection = DetectionSettings(
                min_area=_get("MIN_AREA", defaults.min_area, float),
                max_age=_get("MAX_AGE", defaults.max_age, int),
                hysteresis_window=_get("HYSTERESIS_WINDOW", defaults.hysteresis_window, int),
            )
            return cls(
                directory=_get("DIRECTORY", DEFAULT_SEGMENT_DIRECTORY, Path),
                fps=_get("FPS", 25.0, float),
                min_duration=_get("MIN_DURATION", 6.0, float),
                delivery_workers=_get("DELIVERY_WORKERS", 2, int),
                queue_size=_get("QUEUE_SIZE", 64, int),
                shutdown_grace=_get("SHUTDOWN_GRACE", 10.0, float),
                detection=detection,
            )
        except ValueError as exc:
            if isinstance(exc, ConfigError):
                raise
            raise ConfigError(str(exc)) from exc


@dataclass(frozen=True, slots=True)
class TelegramConfig:
    """Credentials for the Telegram bot used to deliver segments."""

    token: str
    chat_id: str
    base_url: str = DEFAULT_TELEGRAM_BASE_URL
    timeout: float = 60.0

    def __post_init__(self) -> None:
        if not str(self.token).strip():
            raise ConfigError("Telegram bot token must not be empty")
        if not str(self.chat_id).strip():
            raise ConfigError("Telegram chat id must not be empty")
        if float(self.timeout) <= 0:
            raise ConfigError("Telegram timeout must be positive")

    @property
    def api_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/bot{self.token}"

    @classmethod
    def load(
        cls,
        env_file: Path | str | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> "TelegramConfig":
        """Read credentials from the environment, then from *env_file*."""

        env = os.environ if environ is None else environ
        token = env.get("TELEGRAM_BOT_TOKEN")
        chat_id = env.get("TELEGRAM_CHAT_ID")
        if token and chat_id:
            return cls(token=token, chat_id=chat_id)

        path = Path(env_file) if env_file is not None else Path(".env")
        if not path.is_file():
            raise ConfigError(
                "TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID are not set and no .env file was found"
            )
        values = dotenv_values(path)
        token = token or values.get("TELEGRAM_BOT_TOKEN")
        chat_id = chat_id or values.get("TELEGRAM_CHAT_ID")
        if not token or not chat_id:
            raise ConfigError(f"Missing Telegram credentials in {path}")
        return cls(token=token.strip(), chat_id=chat_id.strip())


@dataclass(frozen=True, slots=True)
class Preferences:
    """Last selected capture source and orientation."""

    source: str | None = None
    orientation: Orientation = field(default_factory=Orientation)

    def to_dict(self) -> dict[str, str | None]:
        return {"source": self.source, "orientation": self.orientation.name}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Preferences":
        source = payload.get("source")
        orientation = payload.get("orientation")
        return cls(
            source=str(source) if source else None,
            orientation=Orientation.from_name(orientation) if orientation else Orientation(),
        )


class PreferenceStore:
    """Simple JSON backed persistence for :class:`Preferences`."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Preferences:
        with self._lock:
            if not self._path.exists():
                return Preferences()
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Invalid preferences JSON in {self._path}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Invalid preferences payload in {self._path}")
        try:
            return Preferences.from_dict(raw)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

    def save(self, preferences: Preferences) -> None:
        payload = json.dumps(preferences.to_dict(), indent=2, sort_keys=True)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(payload, encoding="utf-8")


def prepare_segment_directory(path: Path | str) -> Path:
    """Create the segment directory and remove segments left by an earlier run.

    Only files named like recorder segments are deleted; anything else in the
    directory is left alone.
    """

    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    for entry in directory.iterdir():
        if entry.is_file() and SEGMENT_FILE_PATTERN.fullmatch(entry.name):
            entry.unlink(missing_ok=True)
    return directory


__all__ = [
    "ConfigError",
    "DEFAULT_SEGMENT_DIRECTORY",
    "DetectionSettings",
    "ORIENTATIONS",
    "Orientation",
    "PreferenceStore",
    "Preferences",
    "RecorderSettings",
    "SEGMENT_FILE_PATTERN",
    "TelegramConfig",
    "prepare_segment_directory",
]
