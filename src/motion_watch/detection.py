"""Frame differencing motion detection."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Luminance delta (out of 255) for a pixel to count as changed.
DIFF_THRESHOLD = 25
DILATE_ITERATIONS = 2
BLUR_KERNEL: tuple[int, int] = (21, 21)
DEFAULT_MIN_AREA = 400.0
DEFAULT_MAX_AGE = 10


@dataclass(frozen=True, slots=True)
class MotionRegion:
    """Bounding box of a changed area together with its contour area."""

    x: int
    y: int
    width: int
    height: int
    area: float

    def as_rect(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)


def prepare_frame(frame: np.ndarray) -> np.ndarray:
    """Return a single channel, blurred copy of *frame* for differencing."""

    array = np.asarray(frame)
    if array.size == 0:
        raise ValueError("Cannot prepare an empty frame")
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    if array.ndim == 3:
        channels = array.shape[2]
        if channels == 4:
            gray = cv2.cvtColor(array, cv2.COLOR_BGRA2GRAY)
        elif channels == 3:
            gray = cv2.cvtColor(array, cv2.COLOR_BGR2GRAY)
        elif channels == 1:
            gray = array[:, :, 0]
        else:
            raise ValueError(f"Unsupported channel count for motion detection: {channels}")
    elif array.ndim == 2:
        gray = array
    else:
        raise ValueError(f"Unsupported frame shape for motion detection: {array.shape}")
    return cv2.GaussianBlur(gray, BLUR_KERNEL, 0)


def detect_motion(
    reference: np.ndarray,
    current: np.ndarray,
    min_area: float = DEFAULT_MIN_AREA,
) -> list[MotionRegion]:
    """Compare two prepared frames and return the regions that changed.

    Both frames must come from :func:`prepare_frame`. Only contours whose area
    is strictly greater than ``min_area`` are reported, in the order OpenCV
    extracted them.
    """

    if reference.shape != current.shape:
        raise ValueError(
            f"Reference frame shape {reference.shape} does not match current frame {current.shape}"
        )
    delta = cv2.absdiff(reference, current)
    _, mask = cv2.threshold(delta, DIFF_THRESHOLD, 255, cv2.THRESH_BINARY)
    mask = cv2.dilate(mask, None, iterations=DILATE_ITERATIONS)
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    regions: list[MotionRegion] = []
    for contour in contours:
        area = float(cv2.contourArea(contour))
        if area <= min_area:
            continue
        x, y, width, height = cv2.boundingRect(contour)
        regions.append(MotionRegion(int(x), int(y), int(width), int(height), area))
    return regions


@dataclass(slots=True)
class DetectionBaseline:
    """Reference frame used for comparisons and its age in frames."""

    frame: np.ndarray
    age: int = 0


@dataclass
class MotionTracker:
    """Track a rolling reference frame and report motion against it."""

    min_area: float = DEFAULT_MIN_AREA
    max_age: int = DEFAULT_MAX_AGE
    _baseline: DetectionBaseline | None = field(init=False, default=None)
    _rebaselines: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        self.min_area = float(self.min_area)
        self.max_age = int(self.max_age)
        if self.max_age < 1:
            raise ValueError("max_age must be at least 1")

    @property
    def has_baseline(self) -> bool:
        return self._baseline is not None

    @property
    def baseline_age(self) -> int:
        return self._baseline.age if self._baseline is not None else 0

    @property
    def rebaseline_count(self) -> int:
        return self._rebaselines

    def reset(self) -> None:
        """Forget the reference frame; the next observation seeds a new one."""

        self._baseline = None

    def observe(self, frame: np.ndarray) -> list[MotionRegion]:
        """Prepare *frame*, compare it with the baseline and age the baseline."""

        prepared = prepare_frame(frame)
        baseline = self._baseline
        if baseline is None or baseline.frame.shape != prepared.shape:
            if baseline is not None:
                logger.debug(
                    "Frame geometry changed from %s to %s; re-seeding baseline",
                    baseline.frame.shape,
                    prepared.shape,
                )
            self._baseline = DetectionBaseline(prepared)
            self._age(prepared)
            return []

        regions = detect_motion(baseline.frame, prepared, self.min_area)
        self._age(prepared)
        return regions

    def snapshot(self) -> dict[str, object]:
        return {
            "min_area": float(self.min_area),
            "max_age": int(self.max_age),
            "has_baseline": self.has_baseline,
            "baseline_age": self.baseline_age,
            "rebaselines": int(self._rebaselines),
        }

    def _age(self, prepared: np.ndarray) -> None:
        baseline = self._baseline
        if baseline is None:  # pragma: no cover - observe always seeds first
            return
        baseline.age += 1
        if baseline.age > self.max_age:
            self._baseline = DetectionBaseline(prepared)
            self._rebaselines += 1


__all__ = [
    "DetectionBaseline",
    "MotionRegion",
    "MotionTracker",
    "detect_motion",
    "prepare_frame",
]
