from __future__ import annotations
from typing import TYPE_CHECKING, Any, Tuple

"""
lookout.live._types

Centralized type aliases for live mode so pyright/mypy have precise array
shapes while runtime code keeps cheap aliases.
"""

if TYPE_CHECKING:
    import numpy as np
    import numpy.typing as npt

    NDArrayU8 = npt.NDArray[np.uint8]
    NDArrayF32 = npt.NDArray[np.float32]
else:
    NDArrayU8 = Any   # type: ignore[misc,assignment]
    NDArrayF32 = Any  # type: ignore[misc,assignment]

# (x1, y1, x2, y2) in pixel coordinates
XYXY = Tuple[float, float, float, float]
# four (x, y) corners, clockwise from top-left
Quad = Tuple[Tuple[float, float], Tuple[float, float], Tuple[float, float], Tuple[float, float]]
