# lookout/live/frames.py
"""
Frames and frame sources for live mode.

A ``Frame`` is the read-only handle every detector borrows for one inference
call. Sources hand out the most recent frame on demand (``current_frame``)
instead of queueing them: the scheduler drops frames rather than falling
behind.

Two sources ship here:

* ``VideoCaptureSource`` wraps ``cv2.VideoCapture`` (camera index or file).
* ``SyntheticFrameSource`` draws a deterministic moving pattern; it needs no
  device, which makes it the default for CI and headless runs.
"""

from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Tuple, Union

import numpy as np

os.environ.setdefault("OPENCV_VIDEOIO_ENABLE_OBSENSOR", "0")

import cv2  # noqa: E402

from lookout.logging_config import log_event  # noqa: E402

from ._types import NDArrayU8  # noqa: E402

try:
    cv2_logging = getattr(getattr(cv2, "utils", None), "logging", None)
    if cv2_logging is not None and hasattr(cv2_logging, "LOG_LEVEL_ERROR"):
        cv2_logging.setLogLevel(cv2_logging.LOG_LEVEL_ERROR)
except Exception:  # pragma: no cover
    pass

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())
LOGGER.setLevel(logging.ERROR)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class Frame:
    """Immutable BGR frame plus capture metadata."""

    pixels: NDArrayU8 = field(repr=False, compare=False)
    timestamp_ms: float
    index: int

    def __post_init__(self) -> None:
        arr = np.asarray(self.pixels)
        if arr.ndim != 3 or arr.shape[2] != 3:
            raise ValueError(f"expected HxWx3 pixels, got shape {arr.shape}")
        if arr.dtype != np.uint8:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
        if arr.flags.writeable:
            arr = arr.copy()
            arr.setflags(write=False)
        object.__setattr__(self, "pixels", arr)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)


class FrameSource(Protocol):
    def current_frame(self) -> Optional[Frame]: ...
    def release(self) -> None: ...


class SyntheticFrameSource:
    """Deterministic gradient with moving colour bands; the n-th frame is always the same."""

    def __init__(
        self,
        size: Tuple[int, int] = (640, 480),
        fps: int = 30,
        *,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.w, self.h = int(size[0]), int(size[1])
        if self.w <= 0 or self.h <= 0:
            raise ValueError(f"invalid synthetic size {size}")
        self.fps = max(1, int(fps))
        self._clock = clock
        self._n = 0
        y = np.linspace(0, 255, self.h, dtype=np.float32)[:, None]
        x = np.linspace(0, 255, self.w, dtype=np.float32)[None, :]
        self._base = ((y + x) / 2.0).astype(np.int16)

    def render(self, index: int) -> NDArrayU8:
        phase = index / float(self.fps)
        base = self._base
        b = base.astype(np.uint8)
        g = ((base + int((math.sin(phase) + 1) * 64)) % 256).astype(np.uint8)
        r = ((base + int((math.cos(phase * 0.7) + 1) * 64)) % 256).astype(np.uint8)
        return np.dstack([b, g, r])

    def current_frame(self) -> Optional[Frame]:
        frame = Frame(self.render(self._n), timestamp_ms=float(self._clock()), index=self._n)
        self._n += 1
        return frame

    def release(self) -> None:
        return


class VideoCaptureSource:
    """OpenCV capture for a camera index or a video file/URL."""

    def __init__(
        self,
        source: Union[str, int],
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.source = source
        self._clock = clock
        self._n = 0
        self._cap = cv2.VideoCapture(source)
        if not self._cap.isOpened():
            self._cap.release()
            log_event(LOGGER, "frames.open.error", source=str(source))
            raise RuntimeError(f"could not open video source {source!r}")
        if width:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(width))
        if height:
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(height))

    def current_frame(self) -> Optional[Frame]:
        if self._cap is None:
            return None
        ok, pixels = self._cap.read()
        if not ok or pixels is None:
            return None
        if pixels.ndim == 2:
            pixels = cv2.cvtColor(pixels, cv2.COLOR_GRAY2BGR)
        elif pixels.shape[2] == 4:
            pixels = cv2.cvtColor(pixels, cv2.COLOR_BGRA2BGR)
        frame = Frame(pixels, timestamp_ms=float(self._clock()), index=self._n)
        self._n += 1
        return frame

    def release(self) -> None:
        cap, self._cap = self._cap, None
        if cap is None:
            return
        try:
            cap.release()
        except Exception as exc:  # pragma: no cover - driver specific
            log_event(LOGGER, "frames.release.error", source=str(self.source), error=type(exc).__name__)


def _parse_synthetic(source: str) -> Tuple[int, int]:
    _, _, dims = source.partition(":")
    if not dims:
        return (640, 480)
    w, sep, h = dims.lower().partition("x")
    if not sep or not w.strip().isdigit() or not h.strip().isdigit():
        raise ValueError(f"bad synthetic size {dims!r}; expected WxH")
    return (int(w), int(h))


def open_source(source: Union[str, int, None] = "synthetic", **kwargs: object) -> FrameSource:
    """
    Open a frame source from a CLI-style string.

    ``synthetic`` / ``synthetic:WxH`` -> ``SyntheticFrameSource``; an integer
    (or digit string) -> camera index; anything else -> file path or URL.
    """
    if source is None:
        source = "synthetic"
    if isinstance(source, int):
        return VideoCaptureSource(source, **kwargs)  # type: ignore[arg-type]
    text = str(source).strip()
    if text.lower().startswith("synthetic"):
        return SyntheticFrameSource(_parse_synthetic(text))
    if text.isdigit():
        return VideoCaptureSource(int(text), **kwargs)  # type: ignore[arg-type]
    return VideoCaptureSource(text, **kwargs)  # type: ignore[arg-type]
