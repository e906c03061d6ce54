"""
Lookout live perception package.

Building blocks to:
  - read frames from a camera, video file or synthetic source,
  - run several detectors, each at its own cadence, off the render path,
  - serve the latest (possibly stale) result per detector on every tick.

The CLI entrypoint lives in lookout.live.cli.
"""

from __future__ import annotations

from .cache import CachedResult, ResultCache
from .config import DetectorConfig, load_config
from .decode import decode_boxes, iou, non_max_suppression
from .detectors import (
    BarcodeScanner,
    DepthEstimator,
    DetectorAdapter,
    FaceDetector,
    ObjectDetector,
    PoseDetector,
    TextRecognizer,
    build_detector,
)
from .errors import InferenceError, LookoutError, ModelLoadError
from .frames import Frame, FrameSource, SyntheticFrameSource, VideoCaptureSource, open_source
from .gate import FeatureGate, FeatureGateState
from .guard import BufferPool, ResourceGuard
from .results import (
    Box,
    BoxesResult,
    Capability,
    DepthResult,
    DetectionResult,
    Keypoint,
    KeypointsResult,
    TextResult,
    TextSpan,
)
from .runtime import InferenceRuntime, OrtRuntime
from .scheduler import DetectorDescriptor, DetectorStats, Scheduler, TickSnapshot

__all__ = [
    "BarcodeScanner",
    "Box",
    "BoxesResult",
    "BufferPool",
    "CachedResult",
    "Capability",
    "DepthEstimator",
    "DepthResult",
    "DetectionResult",
    "DetectorAdapter",
    "DetectorConfig",
    "DetectorDescriptor",
    "DetectorStats",
    "FaceDetector",
    "FeatureGate",
    "FeatureGateState",
    "Frame",
    "FrameSource",
    "InferenceError",
    "InferenceRuntime",
    "Keypoint",
    "KeypointsResult",
    "LookoutError",
    "ModelLoadError",
    "ObjectDetector",
    "OrtRuntime",
    "PoseDetector",
    "ResourceGuard",
    "ResultCache",
    "Scheduler",
    "SyntheticFrameSource",
    "TextRecognizer",
    "TextResult",
    "TextSpan",
    "TickSnapshot",
    "VideoCaptureSource",
    "build_detector",
    "decode_boxes",
    "iou",
    "load_config",
    "non_max_suppression",
    "open_source",
]
