"""
Per-detector configuration for live mode.

Defaults mirror the cadences the detectors can sustain on a laptop-class CPU
(object/pose/face at 30 Hz, depth at 10 Hz, barcodes at 5 Hz, text at 1 Hz).
Each field can be overridden from the environment::

    LOOKOUT_<NAME>_RATE      target rate in Hz (> 0)
    LOOKOUT_<NAME>_CONF      confidence threshold (clamped to [0, 1]; text uses 0-100)
    LOOKOUT_<NAME>_IOU       NMS IoU threshold (clamped to [0, 1])
    LOOKOUT_<NAME>_MAX       max results (0 = unlimited)
    LOOKOUT_<NAME>_MODEL     model path
    LOOKOUT_<NAME>_PROVIDER  onnxruntime provider (auto, cpu or cuda)

Relative model paths resolve against ``LOOKOUT_MODEL_DIR`` (default ``models``).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from .results import Capability

DETECTOR_NAMES: Tuple[str, ...] = ("detect", "pose", "face", "depth", "text", "barcode")
PROVIDER_CHOICES: Tuple[str, ...] = ("auto", "cpu", "cuda")


@dataclass(frozen=True)
class DetectorConfig:
    name: str
    capability: Capability
    rate_hz: float
    conf_threshold: float
    iou_threshold: float = 0.45
    max_results: Optional[int] = None
    input_size: int = 640
    model: Optional[str] = None
    provider: str = "auto"
    history_size: int = 0

    @property
    def interval_ms(self) -> float:
        return 1000.0 / self.rate_hz

    def model_path(self) -> Optional[Path]:
        if not self.model:
            return None
        path = Path(self.model).expanduser()
        if path.is_absolute():
            return path
        return Path(os.getenv("LOOKOUT_MODEL_DIR", "models")) / path


DEFAULTS: Dict[str, DetectorConfig] = {
    "detect": DetectorConfig(
        "detect", Capability.BOXES, rate_hz=30.0, conf_threshold=0.3, iou_threshold=0.45,
        input_size=640, model="yolov8n.onnx",
    ),
    "pose": DetectorConfig(
        "pose", Capability.KEYPOINTS, rate_hz=30.0, conf_threshold=0.3,
        input_size=192, model="movenet_lightning.onnx",
    ),
    "face": DetectorConfig(
        "face", Capability.BOXES, rate_hz=30.0, conf_threshold=0.75, iou_threshold=0.3,
        max_results=10, input_size=128, model="blazeface.onnx",
    ),
    "depth": DetectorConfig(
        "depth", Capability.DEPTH_MAP, rate_hz=10.0, conf_threshold=0.0,
        input_size=256, model="depth_small.onnx",
    ),
    "text": DetectorConfig(
        "text", Capability.TEXT, rate_hz=1.0, conf_threshold=60.0, history_size=10,
    ),
    "barcode": DetectorConfig(
        "barcode", Capability.TEXT, rate_hz=5.0, conf_threshold=0.0, history_size=20,
    ),
}


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def validate(cfg: DetectorConfig) -> DetectorConfig:
    """Raise ``ValueError`` for unusable values; clamp thresholds into range."""
    if not cfg.rate_hz > 0:
        raise ValueError(f"{cfg.name}: rate must be > 0 Hz, got {cfg.rate_hz}")
    if cfg.input_size <= 0:
        raise ValueError(f"{cfg.name}: input size must be positive, got {cfg.input_size}")
    provider = (cfg.provider or "auto").strip().lower()
    if provider not in PROVIDER_CHOICES:
        raise ValueError(f"{cfg.name}: provider must be one of {', '.join(PROVIDER_CHOICES)}, got {cfg.provider!r}")
    if cfg.history_size < 0:
        raise ValueError(f"{cfg.name}: history size must be >= 0, got {cfg.history_size}")
    conf_hi = 100.0 if cfg.capability is Capability.TEXT else 1.0
    max_results = cfg.max_results
    if max_results is not None and max_results <= 0:
        max_results = None
    return replace(
        cfg,
        conf_threshold=_clamp(float(cfg.conf_threshold), 0.0, conf_hi),
        iou_threshold=_clamp(float(cfg.iou_threshold), 0.0, 1.0),
        max_results=max_results,
        provider=provider,
    )


def _env_float(env: Mapping[str, str], key: str) -> Optional[float]:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{key}={raw!r} is not a number") from exc


def load_config(name: str, env: Optional[Mapping[str, str]] = None, **overrides: object) -> DetectorConfig:
    """Defaults for ``name`` with environment then keyword overrides applied."""
    if name not in DEFAULTS:
        raise KeyError(f"unknown detector {name!r}; expected one of {', '.join(DETECTOR_NAMES)}")
    env = os.environ if env is None else env
    cfg = DEFAULTS[name]
    prefix = f"LOOKOUT_{name.upper()}_"
    changes: Dict[str, object] = {}

    rate = _env_float(env, prefix + "RATE")
    if rate is not None:
        changes["rate_hz"] = rate
    conf = _env_float(env, prefix + "CONF")
    if conf is not None:
        changes["conf_threshold"] = conf
    iou = _env_float(env, prefix + "IOU")
    if iou is not None:
        changes["iou_threshold"] = iou
    max_results = _env_float(env, prefix + "MAX")
    if max_results is not None:
        changes["max_results"] = int(max_results)
    model = env.get(prefix + "MODEL")
    if model:
        changes["model"] = model.strip()
    provider = env.get(prefix + "PROVIDER")
    if provider and provider.strip():
        changes["provider"] = provider

    changes.update({k: v for k, v in overrides.items() if v is not None})
    return validate(replace(cfg, **changes))  # type: ignore[arg-type]


def load_all(env: Optional[Mapping[str, str]] = None) -> Dict[str, DetectorConfig]:
    return {name: load_config(name, env) for name in DETECTOR_NAMES}
