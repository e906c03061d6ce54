"""
Frame preprocessing into pooled model-input buffers.

Colour conversion, resize and normalisation happen in one pass straight into
a scratch buffer borrowed from the adapter's ``BufferPool``; the buffer goes
back to the pool when the inference's ``ResourceGuard`` closes, so steady
state does not allocate per frame.

Two geometries are supported:

* letterbox: isotropic resize by ``input_size / max(w, h)`` anchored at the
  top-left corner, remainder padded with grey (114). Decoding undoes it by
  dividing by the same scale, with no offset.
* stretch: plain resize to ``input_size`` x ``input_size``; normalised model
  outputs map back by multiplying with the frame width/height.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np

from ._types import NDArrayF32, NDArrayU8
from .decode import letterbox_scale
from .frames import Frame
from .guard import BufferPool, ResourceGuard

PAD_VALUE = 114


@dataclass
class _PreprocessConfig:
    input_size: int
    letterbox: bool = True
    normalize: bool = True
    rgb: bool = True
    layout: str = "nchw"  # or "nhwc"


class Preprocessor:
    """
    Parameters
    ----------
    input_size:
        Square model input edge in pixels.
    letterbox:
        Keep aspect ratio (top-left anchored pad) instead of stretching.
    normalize:
        Divide pixel values by 255 when True.
    rgb:
        Convert BGR->RGB before filling the buffer.
    layout:
        ``"nchw"`` (default) or ``"nhwc"``; both carry a leading batch axis of 1.
    """

    def __init__(
        self,
        input_size: int,
        *,
        letterbox: bool = True,
        normalize: bool = True,
        rgb: bool = True,
        layout: str = "nchw",
    ) -> None:
        if int(input_size) <= 0:
            raise ValueError(f"input_size must be positive, got {input_size}")
        layout = layout.lower()
        if layout not in ("nchw", "nhwc"):
            raise ValueError(f"unsupported layout {layout!r}")
        self.cfg = _PreprocessConfig(
            input_size=int(input_size),
            letterbox=letterbox,
            normalize=normalize,
            rgb=rgb,
            layout=layout,
        )
        self._scale = 1.0 / 255.0 if normalize else 1.0

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        s = self.cfg.input_size
        return (1, 3, s, s) if self.cfg.layout == "nchw" else (1, s, s, 3)

    def _resized(self, pixels: NDArrayU8) -> NDArrayU8:
        s = self.cfg.input_size
        h, w = pixels.shape[:2]
        if not self.cfg.letterbox:
            return cv2.resize(pixels, (s, s), interpolation=cv2.INTER_LINEAR)
        scale = letterbox_scale(s, (w, h))
        new_w = min(s, max(1, int(round(w * scale))))
        new_h = min(s, max(1, int(round(h * scale))))
        canvas = np.full((s, s, 3), PAD_VALUE, dtype=np.uint8)
        canvas[:new_h, :new_w] = cv2.resize(pixels, (new_w, new_h), interpolation=cv2.INTER_LINEAR)
        return canvas

    def fill(self, dest: NDArrayF32, pixels: NDArrayU8) -> NDArrayF32:
        """Write ``pixels`` (HxWx3 BGR) into ``dest`` shaped like ``input_shape``."""
        image = self._resized(pixels)
        if self.cfg.rgb:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        if self.cfg.layout == "nchw":
            dest[0] = image.transpose(2, 0, 1)
        else:
            dest[0] = image
        if self._scale != 1.0:
            dest *= self._scale
        return dest

    def process(self, frame: Frame, pool: BufferPool, guard: ResourceGuard) -> NDArrayF32:
        """Borrow a buffer tied to ``guard`` and fill it from ``frame``; the frame is not touched."""
        dest = pool.checkout(guard, self.input_shape, np.float32)
        return self.fill(dest, frame.pixels)

    def scale_for(self, frame: Frame) -> float:
        if not self.cfg.letterbox:
            return 1.0
        return letterbox_scale(self.cfg.input_size, frame.size)
