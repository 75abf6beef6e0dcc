"""motion-watch records camera footage while motion is visible."""

from .config import DetectionSettings, Orientation, RecorderSettings, TelegramConfig
from .controller import RecordingController, RecordingSession, RecordingState
from .delivery import DeliveryDispatcher
from .detection import MotionRegion, MotionTracker, detect_motion
from .recorder import MotionRecorder, RecorderStatus
from .sink import SegmentSink, VideoSegmentSink
from .uploader import TelegramUploader, Uploader
from .version import APP_VERSION

__all__ = [
    "APP_VERSION",
    "DeliveryDispatcher",
    "DetectionSettings",
    "MotionRecorder",
    "MotionRegion",
    "MotionTracker",
    "Orientation",
    "RecorderSettings",
    "RecorderStatus",
    "RecordingController",
    "RecordingSession",
    "RecordingState",
    "SegmentSink",
    "TelegramConfig",
    "TelegramUploader",
    "Uploader",
    "VideoSegmentSink",
    "detect_motion",
]
