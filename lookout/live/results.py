"""
Detection results produced by the live detectors.

``DetectionResult`` is a closed union: one frozen dataclass per detector
capability. Consumers dispatch on the concrete type::

    if isinstance(result, BoxesResult):
        draw_boxes(result.boxes)
    elif isinstance(result, DepthResult):
        draw_depth(result.grid)

Every result remembers the timestamp of the frame it was computed from
(``source_timestamp_ms``) and when the computation finished (``completed_at``,
wall-clock seconds). Results are immutable; a newer result for the same
detector replaces the older one wholesale.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple, Union

import numpy as np

from ._types import NDArrayF32, Quad


class Capability(str, Enum):
    BOXES = "boxes"
    KEYPOINTS = "keypoints"
    DEPTH_MAP = "depth-map"
    TEXT = "text"


@dataclass(frozen=True)
class Box:
    """Axis-aligned detection in original-frame pixel coordinates."""

    label: str
    confidence: int  # percent, 0-100
    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    def xyxy(self) -> Tuple[float, float, float, float]:
        return (self.x1, self.y1, self.x2, self.y2)


@dataclass(frozen=True)
class Keypoint:
    name: str
    x: float
    y: float
    confidence: float


@dataclass(frozen=True)
class TextSpan:
    text: str
    confidence: float
    quad: Quad
    kind: str = "word"  # "word" for OCR, symbology such as "QR_CODE" for barcodes


def _now() -> float:
    return time.time()


@dataclass(frozen=True)
class BoxesResult:
    source_timestamp_ms: float
    boxes: Tuple[Box, ...] = ()
    completed_at: float = field(default_factory=_now)

    capability = Capability.BOXES


@dataclass(frozen=True)
class KeypointsResult:
    source_timestamp_ms: float
    keypoints: Tuple[Keypoint, ...] = ()
    completed_at: float = field(default_factory=_now)

    capability = Capability.KEYPOINTS


@dataclass(frozen=True)
class DepthResult:
    source_timestamp_ms: float
    grid: NDArrayF32 = field(compare=False, repr=False, default_factory=lambda: np.zeros((0, 0), dtype=np.float32))
    min_depth: float = 0.0
    max_depth: float = 0.0
    avg_depth: float = 0.0
    completed_at: float = field(default_factory=_now)

    capability = Capability.DEPTH_MAP

    def __post_init__(self) -> None:
        grid = np.asarray(self.grid, dtype=np.float32)
        if grid.flags.writeable:
            grid = grid.copy()
            grid.setflags(write=False)
        object.__setattr__(self, "grid", grid)

    @property
    def shape(self) -> Tuple[int, int]:
        return (int(self.grid.shape[0]), int(self.grid.shape[1])) if self.grid.ndim == 2 else (0, 0)


@dataclass(frozen=True)
class TextResult:
    source_timestamp_ms: float
    spans: Tuple[TextSpan, ...] = ()
    text: str = ""
    completed_at: float = field(default_factory=_now)

    capability = Capability.TEXT


DetectionResult = Union[BoxesResult, KeypointsResult, DepthResult, TextResult]


def describe(result: DetectionResult) -> str:
    """Short human label for HUD lines and CLI summaries."""
    if isinstance(result, BoxesResult):
        return f"{len(result.boxes)} boxes"
    if isinstance(result, KeypointsResult):
        return f"{len(result.keypoints)} keypoints"
    if isinstance(result, DepthResult):
        h, w = result.shape
        return f"depth {w}x{h} avg={result.avg_depth:.1f}"
    if isinstance(result, TextResult):
        text = result.text
        preview = text if len(text) <= 24 else text[:21] + "..."
        return f"{len(result.spans)} words '{preview}'"
    raise TypeError(f"not a detection result: {type(result).__name__}")
