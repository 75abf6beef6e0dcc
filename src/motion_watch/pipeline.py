"""Frame orientation and overlay pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List

import numpy as np

from .config import Orientation

OverlayFn = Callable[[np.ndarray], np.ndarray]


def rotate_frame(frame: np.ndarray, orientation: Orientation) -> np.ndarray:
    """Rotate *frame* clockwise by the orientation's angle."""

    k = (orientation.rotation // 90) % 4
    if not k:
        return frame
    # np.rot90 turns counter-clockwise for positive k.
    return np.ascontiguousarray(np.rot90(frame, -k))


@dataclass
class FramePipeline:
    """Applies orientation before detection and overlays before display."""

    orientation_provider: Callable[[], Orientation]
    overlays: List[OverlayFn] = field(default_factory=list)

    def add_overlay(self, overlay: OverlayFn) -> None:
        self.overlays.append(overlay)

    def orient(self, frame: np.ndarray) -> np.ndarray:
        """Return *frame* rotated for the currently selected orientation."""

        return rotate_frame(frame, self.orientation_provider())

    def render(self, frame: np.ndarray) -> np.ndarray:
        """Draw overlays on a copy of *frame*; the input is never modified."""

        if not self.overlays:
            return frame
        result = np.array(frame, copy=True)
        for overlay in self.overlays:
            result = overlay(result)
        return result


__all__ = ["FramePipeline", "OverlayFn", "rotate_frame"]
