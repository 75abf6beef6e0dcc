"""Overlay helpers for the recording countdown and motion regions."""

from __future__ import annotations

from typing import Callable, Sequence

import cv2
import numpy as np

from .detection import MotionRegion
from .pipeline import OverlayFn

TEXT_ORIGIN = (10, 35)
TEXT_SCALE = 0.75
TEXT_COLOUR = (255, 255, 255)
REGION_COLOUR = (0, 255, 0)
REGION_THICKNESS = 2


def _colour_for(frame: np.ndarray, bgr: tuple[int, int, int]) -> tuple[int, ...]:
    if frame.ndim == 2:
        return (int(sum(bgr) / 3),)
    if frame.shape[2] == 4:
        return (*bgr, 255)
    return bgr


def draw_motion_state(
    frame: np.ndarray,
    frames_left: int,
    regions: Sequence[MotionRegion],
) -> np.ndarray:
    """Draw the countdown text and region boxes onto *frame* in place."""

    if frames_left > 0:
        cv2.putText(
            frame,
            f"Recording: {frames_left}",
            TEXT_ORIGIN,
            cv2.FONT_HERSHEY_SIMPLEX,
            TEXT_SCALE,
            _colour_for(frame, TEXT_COLOUR),
        )
    colour = _colour_for(frame, REGION_COLOUR)
    for region in regions:
        cv2.rectangle(
            frame,
            (region.x, region.y),
            (region.x + region.width, region.y + region.height),
            colour,
            REGION_THICKNESS,
        )
    return frame


def create_motion_overlay(
    state_provider: Callable[[], tuple[int, Sequence[MotionRegion]]],
) -> OverlayFn:
    """Return an overlay that renders the latest recorder state."""

    def _overlay(frame: np.ndarray) -> np.ndarray:
        if not frame.flags.writeable:
            frame = np.array(frame, copy=True)
        frames_left, regions = state_provider()
        return draw_motion_state(frame, frames_left, regions)

    return _overlay


__all__ = ["create_motion_overlay", "draw_motion_state"]
