"""
Detector adapters.

Each adapter owns one model, one ``FeatureGate`` and one ``BufferPool`` and
turns a borrowed ``Frame`` into one ``DetectionResult`` variant:

    ObjectDetector   -> BoxesResult      (YOLO grid, letterboxed input)
    PoseDetector     -> KeypointsResult  (MoveNet single pose)
    FaceDetector     -> BoxesResult      (normalised face rows, label "face")
    DepthEstimator   -> DepthResult      (0-255, near = bright)
    TextRecognizer   -> TextResult       (word records from the runtime)
    BarcodeScanner   -> TextResult       (QR and linear codes decoded by OpenCV)

Adapters with a ``history_size`` keep their most recent non-empty results
(``recent`` / ``export_recent``), newest last.

Loading is asynchronous: ``initialize`` submits the load to the adapter's
loader executor and the gate moves Enabling -> Enabled (or Error) from inside
that job, so once the returned future resolves the gate already reflects the
outcome. The scheduler guarantees ``infer`` is never re-entered; the adapter
still refuses a second concurrent call instead of corrupting its buffers.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from lookout.logging_config import log_event

from ._types import Quad
from .config import DetectorConfig, load_config
from .decode import COCO_CLASSES, Candidates, confidence_percent, decode_boxes, non_max_suppression
from .errors import InferenceError, LookoutError, ModelLoadError
from .frames import Frame
from .gate import FeatureGate, FeatureGateState
from .guard import BufferPool, ResourceGuard
from .preprocess import Preprocessor
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
    describe,
)
from .runtime import InferenceRuntime

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())
LOGGER.setLevel(logging.ERROR)

COCO_KEYPOINTS: Tuple[str, ...] = (
    "nose", "left_eye", "right_eye", "left_ear", "right_ear",
    "left_shoulder", "right_shoulder", "left_elbow", "right_elbow",
    "left_wrist", "right_wrist", "left_hip", "right_hip",
    "left_knee", "right_knee", "left_ankle", "right_ankle",
)

_S = FeatureGateState


def _track_output(guard: ResourceGuard, raw: Any) -> Any:
    """Runtime outputs that own native memory (``release``/``dispose``/``close``) are tied to ``guard``."""
    if any(callable(getattr(raw, attr, None)) for attr in ("release", "dispose", "close")):
        guard.acquire(raw)
    return raw


def _resolved(value: bool) -> "Future[bool]":
    fut: "Future[bool]" = Future()
    fut.set_result(value)
    return fut


class DetectorAdapter:
    """Shared lifecycle for all detectors; subclasses implement ``_infer``."""

    capability: Capability = Capability.BOXES

    def __init__(
        self,
        config: DetectorConfig,
        runtime: Optional[InferenceRuntime] = None,
        *,
        loader: Optional[Executor] = None,
        gate: Optional[FeatureGate] = None,
    ) -> None:
        self.config = config
        self.name = config.name
        self.runtime = runtime
        self.gate = gate or FeatureGate(self.name)
        self.pool = BufferPool(self.name)
        self._loader = loader
        self._owns_loader = loader is None
        self._lock = threading.RLock()
        self._model: Any = None
        self._loading: Optional["Future[bool]"] = None
        self._generation = 0
        self._busy = False
        self.last_load_error: Optional[str] = None
        self._inferences = 0
        self._failures = 0
        self._total_ms = 0.0
        self._recent: Deque[DetectionResult] = deque(maxlen=max(1, config.history_size))

    # ------------------------------------------------------------------ lifecycle
    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    @property
    def busy(self) -> bool:
        return self._busy

    def _loader_executor(self) -> Executor:
        if self._loader is None:
            self._loader = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"lookout-load-{self.name}")
            self._owns_loader = True
        return self._loader

    def initialize(self) -> "Future[bool]":
        """Load the model once; concurrent callers share the outstanding future."""
        with self._lock:
            if self._model is not None:
                return _resolved(True)
            if self._loading is not None and not self._loading.done():
                return self._loading
            generation = self._generation
            self._loading = self._loader_executor().submit(self._load, generation)
            return self._loading

    def _load(self, generation: int) -> bool:
        try:
            model = self._load_model()
        except Exception as exc:
            cause = exc.cause if isinstance(exc, ModelLoadError) else f"{type(exc).__name__}: {exc}"
            self.last_load_error = cause
            log_event(LOGGER, "detector.load.error", detector=self.name, error=type(exc).__name__, message=cause)
            self._finish_loading(generation)
            self._settle(_S.ERROR, cause)
            return False
        with self._lock:
            stale = generation != self._generation
            if not stale:
                self._model = model
                self.last_load_error = None
                self._loading = None
        if stale:
            self._release_model(model)
            self._settle(_S.ERROR, "disposed while loading")
            return False
        self._settle(_S.ENABLED, "model loaded")
        return True

    def _finish_loading(self, generation: int) -> None:
        # listeners reacting to the settle must be able to start a fresh load
        with self._lock:
            if generation == self._generation:
                self._loading = None

    def _settle(self, target: FeatureGateState, reason: str) -> None:
        # initialize() without a pending enable leaves the gate alone.
        if self.gate.state is _S.ENABLING:
            self.gate.transition(target, reason, expect=_S.ENABLING)

    def _load_model(self) -> Any:
        if self.runtime is None:
            raise ModelLoadError(self.name, "no inference runtime configured")
        path = self.config.model_path()
        if path is None:
            raise ModelLoadError(self.name, "no model configured")
        try:
            return self.runtime.load(path)
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(self.name, f"{type(exc).__name__}: {exc}") from exc

    def set_enabled(self, flag: bool) -> bool:
        """Request Enabled/Disabled; False when the gate cannot take that transition now."""
        state = self.gate.state
        if flag:
            if state in (_S.ENABLED, _S.ENABLING):
                return True
            reason = "retry after error" if state is _S.ERROR else "enable requested"
            if not self.gate.transition(_S.ENABLING, reason, expect=state):
                return False
            if not self.is_loaded:
                self.initialize()
            if self.is_loaded:
                # covers a load that finished before the gate reached Enabling
                self._settle(_S.ENABLED, "model ready")
            return True
        if state is _S.DISABLED:
            return True
        if not self.gate.transition(_S.DISABLING, "disable requested", expect=_S.ENABLED):
            return False
        self.gate.transition(_S.DISABLED, "disabled", expect=_S.DISABLING)
        return True

    def _release_model(self, model: Any) -> None:
        if model is None or self.runtime is None:
            return
        release = getattr(self.runtime, "release", None)
        if release is None:
            return
        try:
            release(model)
        except Exception as exc:
            log_event(LOGGER, "detector.dispose.error", detector=self.name, error=type(exc).__name__, message=str(exc))

    def dispose(self) -> None:
        """Drop the model and pooled buffers; the adapter needs ``initialize`` again afterwards."""
        if self.gate.state is _S.ENABLED:
            if self.gate.transition(_S.DISABLING, "disposed", expect=_S.ENABLED):
                self.gate.transition(_S.DISABLED, "disposed", expect=_S.DISABLING)
        with self._lock:
            model, self._model = self._model, None
            self._loading = None
            self._generation += 1
            self._recent.clear()
            loader, owns = self._loader, self._owns_loader
            if owns:
                self._loader = None
        self._release_model(model)
        self.pool.clear()
        if owns and loader is not None:
            loader.shutdown(wait=False)

    # ------------------------------------------------------------------ inference
    def infer(self, frame: Frame) -> DetectionResult:
        model = self._model
        if model is None:
            raise InferenceError(self.name, "model not loaded")
        with self._lock:
            if self._busy:
                raise InferenceError(self.name, "inference already in flight")
            self._busy = True
        started = time.perf_counter()
        ok = False
        try:
            with ResourceGuard(self.name) as guard:
                try:
                    result = self._infer(frame, model, guard)
                except LookoutError:
                    raise
                except Exception as exc:
                    raise InferenceError(self.name, f"{type(exc).__name__}: {exc}", exc) from exc
            ok = True
            if self.config.history_size > 0 and self._keep(result):
                with self._lock:
                    self._recent.append(result)
            return result
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            with self._lock:
                self._busy = False
                if ok:
                    self._inferences += 1
                    self._total_ms += elapsed_ms
                else:
                    self._failures += 1

    def _infer(self, frame: Frame, model: Any, guard: ResourceGuard) -> DetectionResult:
        raise NotImplementedError

    def _keep(self, result: DetectionResult) -> bool:
        return True

    def recent(self, limit: Optional[int] = None) -> List[DetectionResult]:
        """Most recent kept results, oldest first; empty when ``history_size`` is 0."""
        if self.config.history_size <= 0:
            return []
        with self._lock:
            items = list(self._recent)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def clear_recent(self) -> None:
        with self._lock:
            self._recent.clear()

    def export_recent(self) -> str:
        entries: List[Dict[str, object]] = []
        for result in self.recent():
            entry: Dict[str, object] = {
                "source_timestamp_ms": result.source_timestamp_ms,
                "completed_at": result.completed_at,
                "summary": describe(result),
            }
            if isinstance(result, TextResult):
                entry["text"] = result.text
                entry["kinds"] = sorted({span.kind for span in result.spans})
            entries.append(entry)
        return json.dumps({"detector": self.name, "results": entries}, indent=2)

    def _run(self, model: Any, inputs: Any, guard: ResourceGuard) -> Any:
        if self.runtime is None:
            raise InferenceError(self.name, "no inference runtime configured")
        return _track_output(guard, self.runtime.run(model, inputs))

    def metrics(self) -> Dict[str, object]:
        with self._lock:
            count = self._inferences
            total = self._total_ms
            failures = self._failures
        return {
            "detector": self.name,
            "state": self.gate.state.value,
            "loaded": self.is_loaded,
            "busy": self._busy,
            "inferences": count,
            "failures": failures,
            "total_ms": round(total, 3),
            "avg_ms": round(total / count, 3) if count else 0.0,
            "pooled_outstanding": self.pool.outstanding,
        }


class ObjectDetector(DetectorAdapter):
    capability = Capability.BOXES

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        runtime: Optional[InferenceRuntime] = None,
        *,
        names: Sequence[str] = COCO_CLASSES,
        **kwargs: Any,
    ) -> None:
        super().__init__(config or load_config("detect"), runtime, **kwargs)
        self.names = tuple(names)
        self._pre = Preprocessor(self.config.input_size, letterbox=True)

    def _infer(self, frame: Frame, model: Any, guard: ResourceGuard) -> BoxesResult:
        inputs = self._pre.process(frame, self.pool, guard)
        raw = self._run(model, inputs, guard)
        boxes = decode_boxes(
            raw,
            input_size=self.config.input_size,
            original_size=frame.size,
            conf_threshold=self.config.conf_threshold,
            iou_threshold=self.config.iou_threshold,
            names=self.names,
            max_results=self.config.max_results,
        )
        return BoxesResult(frame.timestamp_ms, boxes)


class PoseDetector(DetectorAdapter):
    """Single-pose MoveNet: output ``(..., K, 3)`` of normalised ``(y, x, score)``."""

    capability = Capability.KEYPOINTS

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        runtime: Optional[InferenceRuntime] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config or load_config("pose"), runtime, **kwargs)
        self._pre = Preprocessor(self.config.input_size, letterbox=False, normalize=False, layout="nhwc")

    def _infer(self, frame: Frame, model: Any, guard: ResourceGuard) -> KeypointsResult:
        inputs = self._pre.process(frame, self.pool, guard)
        raw = np.asarray(self._run(model, inputs, guard), dtype=np.float32)
        if raw.ndim < 2 or raw.shape[-1] != 3:
            raise InferenceError(self.name, f"expected (..., K, 3) keypoints, got shape {raw.shape}")
        points = raw.reshape(-1, raw.shape[-2], 3)[0]
        keypoints: List[Keypoint] = []
        for idx, (y, x, score) in enumerate(points.tolist()):
            if score < self.config.conf_threshold:
                continue
            name = COCO_KEYPOINTS[idx] if idx < len(COCO_KEYPOINTS) else str(idx)
            keypoints.append(Keypoint(name, float(x) * frame.width, float(y) * frame.height, float(score)))
        return KeypointsResult(frame.timestamp_ms, tuple(keypoints))


class FaceDetector(DetectorAdapter):
    """Rows ``[x1, y1, x2, y2, score, ...]`` in normalised coordinates."""

    capability = Capability.BOXES

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        runtime: Optional[InferenceRuntime] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config or load_config("face"), runtime, **kwargs)
        self._pre = Preprocessor(self.config.input_size, letterbox=False)

    def _infer(self, frame: Frame, model: Any, guard: ResourceGuard) -> BoxesResult:
        inputs = self._pre.process(frame, self.pool, guard)
        raw = np.asarray(self._run(model, inputs, guard), dtype=np.float32)
        if raw.size == 0:
            return BoxesResult(frame.timestamp_ms, ())
        if raw.shape[-1] < 5:
            raise InferenceError(self.name, f"expected rows of at least 5 values, got shape {raw.shape}")
        rows = raw.reshape(-1, raw.shape[-1])
        rows = rows[rows[:, 4] >= self.config.conf_threshold]
        if rows.shape[0] == 0:
            return BoxesResult(frame.timestamp_ms, ())
        w, h = float(frame.width), float(frame.height)
        xs = np.clip(rows[:, [0, 2]] * w, 0.0, w)
        ys = np.clip(rows[:, [1, 3]] * h, 0.0, h)
        boxes = np.stack([xs.min(axis=1), ys.min(axis=1), xs.max(axis=1), ys.max(axis=1)], axis=1)
        candidates = Candidates(
            boxes.astype(np.float32), rows[:, 4].astype(np.float32), np.zeros((rows.shape[0],), dtype=np.int64)
        )
        kept = non_max_suppression(candidates, self.config.iou_threshold)
        if self.config.max_results:
            kept = kept[: self.config.max_results]
        faces = tuple(
            Box("face", confidence_percent(float(candidates.scores[i])), *(float(v) for v in candidates.boxes[i]))
            for i in kept
        )
        return BoxesResult(frame.timestamp_ms, faces)


class DepthEstimator(DetectorAdapter):
    """Relative depth ``(..., H, W)`` normalised to 0-255 and inverted so near is bright."""

    capability = Capability.DEPTH_MAP

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        runtime: Optional[InferenceRuntime] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config or load_config("depth"), runtime, **kwargs)
        self._pre = Preprocessor(self.config.input_size, letterbox=False)

    def _infer(self, frame: Frame, model: Any, guard: ResourceGuard) -> DepthResult:
        inputs = self._pre.process(frame, self.pool, guard)
        raw = np.asarray(self._run(model, inputs, guard), dtype=np.float32)
        if raw.ndim < 2:
            raise InferenceError(self.name, f"expected a 2D depth map, got shape {raw.shape}")
        depth = raw.reshape(raw.shape[-2:])
        grid = self.pool.checkout(guard, depth.shape, np.float32)
        lo = float(np.min(depth))
        hi = float(np.max(depth))
        span = hi - lo
        if span <= 0.0 or not np.isfinite(span):
            grid.fill(0.0)
        else:
            np.subtract(depth, lo, out=grid)
            grid *= -255.0 / span
            grid += 255.0
        return DepthResult(
            frame.timestamp_ms,
            grid,  # copied into a read-only array by DepthResult
            min_depth=float(grid.min()),
            max_depth=float(grid.max()),
            avg_depth=float(grid.mean()),
        )


class TextRecognizer(DetectorAdapter):
    """
    OCR through a runtime whose ``run`` yields word records.

    A record is ``(text, confidence, (x0, y0, x1, y1))`` with confidence in
    percent, or a mapping with ``text``/``confidence``/``bbox`` keys.
    """

    capability = Capability.TEXT

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        runtime: Optional[InferenceRuntime] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config or load_config("text"), runtime, **kwargs)

    def _load_model(self) -> Any:
        if self.runtime is None:
            raise ModelLoadError(self.name, "no text recognition runtime configured")
        try:
            return self.runtime.load(self.config.model or "default")
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(self.name, f"{type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _record(item: Any) -> Tuple[str, float, Tuple[float, float, float, float]]:
        if isinstance(item, dict):
            text, conf, bbox = item["text"], item["confidence"], item["bbox"]
        else:
            text, conf, bbox = item
        if isinstance(bbox, dict):
            bbox = (bbox["x0"], bbox["y0"], bbox["x1"], bbox["y1"])
        x0, y0, x1, y1 = (float(v) for v in bbox)
        return str(text), float(conf), (x0, y0, x1, y1)

    def _infer(self, frame: Frame, model: Any, guard: ResourceGuard) -> TextResult:
        words: Iterable[Any] = self._run(model, frame.pixels, guard) or ()
        spans: List[TextSpan] = []
        for item in words:
            text, conf, (x0, y0, x1, y1) = self._record(item)
            if conf < self.config.conf_threshold or not text.strip():
                continue
            quad = ((x0, y0), (x1, y0), (x1, y1), (x0, y1))
            spans.append(TextSpan(text, conf, quad))
        return TextResult(frame.timestamp_ms, tuple(spans), " ".join(s.text for s in spans))

    def _keep(self, result: DetectionResult) -> bool:
        return isinstance(result, TextResult) and bool(result.spans)


CodeRecord = Tuple[str, str, Any]
Decoder = Callable[[Any], Iterable[CodeRecord]]


def _quad(points: Any) -> Quad:
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    if pts.shape[0] != 4:
        x0, y0 = pts.min(axis=0)
        x1, y1 = pts.max(axis=0)
        pts = np.array([[x0, y0], [x1, y0], [x1, y1], [x0, y1]], dtype=np.float32)
    a, b, c, d = ((float(x), float(y)) for x, y in pts)
    return (a, b, c, d)


def _qr_decoder() -> Decoder:
    detector = cv2.QRCodeDetector()

    def decode(pixels: Any) -> List[CodeRecord]:
        ok, texts, points, _ = detector.detectAndDecodeMulti(pixels)
        if not ok or points is None:
            return []
        return [(str(t), "QR_CODE", p) for t, p in zip(texts, points) if t]

    return decode


def _linear_decoder() -> Optional[Decoder]:
    module = getattr(cv2, "barcode", None)
    if module is None:
        return None
    detector = module.BarcodeDetector()

    def decode(pixels: Any) -> List[CodeRecord]:
        ok, texts, kinds, points = detector.detectAndDecodeWithType(pixels)
        if not ok or points is None:
            return []
        return [(str(t), str(k) or "BARCODE", p) for t, k, p in zip(texts, kinds, points) if t]

    return decode


def opencv_decoders() -> Tuple[Decoder, ...]:
    """QR plus, where this OpenCV build ships ``cv2.barcode``, EAN/UPC/Code128 decoders."""
    linear = _linear_decoder()
    return (_qr_decoder(),) if linear is None else (_qr_decoder(), linear)


class BarcodeScanner(DetectorAdapter):
    """
    QR and linear barcodes through OpenCV's built-in decoders.

    Needs no model file; ``initialize`` just builds the decoders. Each decoded
    code becomes a ``TextSpan`` whose ``kind`` is the symbology and whose
    confidence is 100 (a code either decodes or it does not). Duplicates of
    the same payload within one frame are reported once.
    """

    capability = Capability.TEXT

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        runtime: Optional[InferenceRuntime] = None,
        *,
        decoders: Optional[Sequence[Decoder]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config or load_config("barcode"), runtime, **kwargs)
        self._decoders = tuple(decoders) if decoders is not None else None

    def _load_model(self) -> Any:
        if self._decoders is not None:
            return self._decoders
        try:
            return opencv_decoders()
        except Exception as exc:
            raise ModelLoadError(self.name, f"{type(exc).__name__}: {exc}") from exc

    def _infer(self, frame: Frame, model: Any, guard: ResourceGuard) -> TextResult:
        spans: List[TextSpan] = []
        seen = set()
        pixels = np.array(frame.pixels, copy=True)  # decoders need a writable buffer
        for decode in model:
            for text, kind, points in decode(pixels):
                if not text or (kind, text) in seen:
                    continue
                seen.add((kind, text))
                spans.append(TextSpan(text, 100.0, _quad(points), kind))
        return TextResult(frame.timestamp_ms, tuple(spans), " ".join(s.text for s in spans))

    def _keep(self, result: DetectionResult) -> bool:
        return isinstance(result, TextResult) and bool(result.spans)


DETECTOR_TYPES = {
    "detect": ObjectDetector,
    "pose": PoseDetector,
    "face": FaceDetector,
    "depth": DepthEstimator,
    "text": TextRecognizer,
    "barcode": BarcodeScanner,
}


def build_detector(
    name: str,
    runtime: Optional[InferenceRuntime] = None,
    *,
    config: Optional[DetectorConfig] = None,
    **kwargs: Any,
) -> DetectorAdapter:
    """Factory used by the CLI: default config for ``name`` plus env overrides."""
    try:
        cls = DETECTOR_TYPES[name]
    except KeyError:
        raise KeyError(f"unknown detector {name!r}; expected one of {', '.join(DETECTOR_TYPES)}") from None
    return cls(config or load_config(name), runtime, **kwargs)
