"""
Box decoding and greedy Non-Max-Suppression for YOLO-style detector output.

The object detector's raw output is a grid shaped ``(attributes, predictions)``
(an optional leading batch axis of size 1 is accepted). Attributes 0-3 hold the
box centre x/y and width/height in model-input pixels; every remaining
attribute is one class score.

Pipeline::

    raw grid --decode_predictions--> candidates (frame coords, natural order)
             --non_max_suppression--> kept indices (confidence order)
             --decode_boxes--> tuple[Box, ...]

Everything here is pure and deterministic: identical input produces the same
boxes in the same order. Equal confidences keep the grid's natural order
because the confidence sort is stable.
"""

from __future__ import annotations

import math
from typing import Any, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from ._types import NDArrayF32, XYXY
from .results import Box

COCO_CLASSES: Tuple[str, ...] = (
    "person", "bicycle", "car", "motorcycle", "airplane", "bus", "train", "truck", "boat",
    "traffic light", "fire hydrant", "stop sign", "parking meter", "bench", "bird", "cat",
    "dog", "horse", "sheep", "cow", "elephant", "bear", "zebra", "giraffe", "backpack",
    "umbrella", "handbag", "tie", "suitcase", "frisbee", "skis", "snowboard", "sports ball",
    "kite", "baseball bat", "baseball glove", "skateboard", "surfboard", "tennis racket",
    "bottle", "wine glass", "cup", "fork", "knife", "spoon", "bowl", "banana", "apple",
    "sandwich", "orange", "broccoli", "carrot", "hot dog", "pizza", "donut", "cake", "chair",
    "couch", "potted plant", "bed", "dining table", "toilet", "tv", "laptop", "mouse",
    "remote", "keyboard", "cell phone", "microwave", "oven", "toaster", "sink", "refrigerator",
    "book", "clock", "vase", "scissors", "teddy bear", "hair drier", "toothbrush",
)


class Candidates(NamedTuple):
    """Predictions that passed the confidence filter, in grid order."""

    boxes: NDArrayF32      # (N, 4) x1, y1, x2, y2 in original-frame pixels
    scores: NDArrayF32     # (N,) best class score, 0-1
    class_ids: Any         # (N,) int64

    @property
    def count(self) -> int:
        return int(self.scores.shape[0])


def _empty_candidates() -> Candidates:
    return Candidates(
        np.zeros((0, 4), dtype=np.float32),
        np.zeros((0,), dtype=np.float32),
        np.zeros((0,), dtype=np.int64),
    )


def iou(a: XYXY, b: XYXY) -> float:
    """Intersection-over-Union of two corner-format boxes (0 when union is empty)."""
    ix1 = max(a[0], b[0])
    iy1 = max(a[1], b[1])
    ix2 = min(a[2], b[2])
    iy2 = min(a[3], b[3])
    inter = max(0.0, ix2 - ix1) * max(0.0, iy2 - iy1)
    area_a = max(0.0, a[2] - a[0]) * max(0.0, a[3] - a[1])
    area_b = max(0.0, b[2] - b[0]) * max(0.0, b[3] - b[1])
    union = area_a + area_b - inter
    if union <= 0.0:
        return 0.0
    return float(inter / union)


def _iou_one_to_many(box: NDArrayF32, others: NDArrayF32) -> NDArrayF32:
    ix1 = np.maximum(box[0], others[:, 0])
    iy1 = np.maximum(box[1], others[:, 1])
    ix2 = np.minimum(box[2], others[:, 2])
    iy2 = np.minimum(box[3], others[:, 3])
    inter = np.clip(ix2 - ix1, 0.0, None) * np.clip(iy2 - iy1, 0.0, None)
    area_box = max(0.0, float(box[2] - box[0])) * max(0.0, float(box[3] - box[1]))
    area_others = np.clip(others[:, 2] - others[:, 0], 0.0, None) * np.clip(others[:, 3] - others[:, 1], 0.0, None)
    union = area_box + area_others - inter
    out = np.zeros_like(inter, dtype=np.float64)
    np.divide(inter, union, out=out, where=union > 0.0)
    return out.astype(np.float32, copy=False)


def _as_grid(raw: Any) -> NDArrayF32:
    grid = np.asarray(raw, dtype=np.float32)
    if grid.ndim == 3:
        if grid.shape[0] != 1:
            raise ValueError(f"expected a single-batch output, got shape {grid.shape}")
        grid = grid[0]
    if grid.ndim != 2:
        raise ValueError(f"expected (attributes, predictions) output, got shape {grid.shape}")
    if grid.shape[0] < 5:
        raise ValueError(f"need 4 box attributes plus at least one class score, got {grid.shape[0]}")
    return grid


def letterbox_scale(input_size: int, original_size: Tuple[int, int]) -> float:
    """Isotropic factor used by preprocessing: ``input_size / max(width, height)``."""
    width, height = original_size
    longest = max(int(width), int(height))
    if longest <= 0:
        raise ValueError(f"invalid original size {original_size}")
    return float(input_size) / float(longest)


def decode_predictions(
    raw: Any,
    *,
    input_size: int,
    original_size: Tuple[int, int],
    conf_threshold: float,
) -> Candidates:
    """
    Filter predictions by best class score and map their boxes to frame space.

    ``original_size`` is ``(width, height)`` of the captured frame. Boxes are
    clamped to ``[0, width]`` x ``[0, height]``.
    """
    grid = _as_grid(raw)
    class_scores = grid[4:, :]
    # argmax returns the first maximum, so ties go to the lower class index.
    class_ids = np.argmax(class_scores, axis=0).astype(np.int64)
    scores = class_scores[class_ids, np.arange(grid.shape[1])]
    keep = scores >= float(conf_threshold)
    if not bool(np.any(keep)):
        return _empty_candidates()

    cx, cy, w, h = (grid[i, keep] for i in range(4))
    scale = letterbox_scale(input_size, original_size)
    width, height = original_size
    x1 = np.clip((cx - w / 2.0) / scale, 0.0, float(width))
    y1 = np.clip((cy - h / 2.0) / scale, 0.0, float(height))
    x2 = np.clip((cx + w / 2.0) / scale, 0.0, float(width))
    y2 = np.clip((cy + h / 2.0) / scale, 0.0, float(height))
    boxes = np.stack([x1, y1, x2, y2], axis=1).astype(np.float32, copy=False)
    return Candidates(boxes, scores[keep].astype(np.float32, copy=False), class_ids[keep])


def non_max_suppression(candidates: Candidates, iou_threshold: float) -> List[int]:
    """
    Greedy same-class NMS.

    Returns indices into ``candidates`` ordered by confidence (descending,
    stable). A candidate is suppressed when an earlier kept candidate of the
    same class overlaps it with IoU strictly above ``iou_threshold``.
    """
    n = candidates.count
    if n == 0:
        return []
    boxes, scores, class_ids = candidates
    order = np.argsort(-scores, kind="stable")
    suppressed = np.zeros((n,), dtype=bool)
    keep: List[int] = []
    for pos, idx in enumerate(order.tolist()):
        if suppressed[idx]:
            continue
        keep.append(int(idx))
        rest = order[pos + 1:]
        if rest.size == 0:
            break
        rest = rest[(~suppressed[rest]) & (class_ids[rest] == class_ids[idx])]
        if rest.size == 0:
            continue
        overlaps = _iou_one_to_many(boxes[idx], boxes[rest])
        suppressed[rest[overlaps > float(iou_threshold)]] = True
    return keep


def confidence_percent(score: float) -> int:
    """Round a 0-1 score to an integer percentage (half rounds up)."""
    return int(math.floor(float(score) * 100.0 + 0.5))


def _label_for(class_id: int, names: Sequence[str]) -> str:
    if 0 <= class_id < len(names):
        return names[class_id]
    return str(class_id)


def decode_boxes(
    raw: Any,
    *,
    input_size: int,
    original_size: Tuple[int, int],
    conf_threshold: float = 0.3,
    iou_threshold: float = 0.45,
    names: Sequence[str] = COCO_CLASSES,
    max_results: Optional[int] = None,
) -> Tuple[Box, ...]:
    """Full decode: confidence filter, frame mapping, NMS, label lookup."""
    candidates = decode_predictions(
        raw,
        input_size=input_size,
        original_size=original_size,
        conf_threshold=conf_threshold,
    )
    kept = non_max_suppression(candidates, iou_threshold)
    if max_results is not None and max_results > 0:
        kept = kept[:max_results]
    out: List[Box] = []
    for idx in kept:
        x1, y1, x2, y2 = (float(v) for v in candidates.boxes[idx])
        out.append(
            Box(
                label=_label_for(int(candidates.class_ids[idx]), names),
                confidence=confidence_percent(float(candidates.scores[idx])),
                x1=x1,
                y1=y1,
                x2=x2,
                y2=y2,
            )
        )
    return tuple(out)
