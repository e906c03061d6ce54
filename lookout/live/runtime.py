"""
Inference runtime boundary.

Detectors never touch a backend directly; they go through an object that
satisfies ``InferenceRuntime``. The default ``OrtRuntime`` wraps
``onnxruntime.InferenceSession`` with CUDA-then-CPU provider selection and a
CPU retry when an accelerated provider fails to initialise.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence, Union

import onnxruntime as ort  # type: ignore

from lookout.logging_config import log_event

from .config import PROVIDER_CHOICES
from .errors import ModelLoadError

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())
LOGGER.setLevel(logging.ERROR)

ModelRef = Union[str, Path]


class InferenceRuntime(Protocol):
    def load(self, model_ref: ModelRef) -> Any: ...
    def run(self, model: Any, inputs: Any) -> Any: ...
    def release(self, model: Any) -> None: ...


def _filter_providers(providers: Sequence[str]) -> List[str]:
    if os.getenv("LOOKOUT_ENABLE_TENSORRT", "").strip().lower() not in {"1", "true", "yes", "on"}:
        return [p for p in providers if "tensorrt" not in p.lower()]
    return list(providers)


def choose_providers(prefer: str = "auto") -> List[str]:
    """Ordered provider list for ``prefer`` restricted to what this build offers."""
    prefer = (prefer or "auto").strip().lower()
    if prefer not in PROVIDER_CHOICES:
        raise ValueError(f"unknown provider {prefer!r}; expected one of {', '.join(PROVIDER_CHOICES)}")
    try:
        available = _filter_providers([str(p) for p in ort.get_available_providers()])
    except Exception:
        available = []
    by_lower = {p.lower(): p for p in available}
    cpu = by_lower.get("cpuexecutionprovider", "CPUExecutionProvider")
    if prefer == "cpu":
        return [cpu]
    if "cudaexecutionprovider" in by_lower:
        return [by_lower["cudaexecutionprovider"], cpu]
    return [cpu]


@dataclass
class OrtModel:
    path: str
    session: Any = field(repr=False)
    input_name: str
    providers: List[str]


class OrtRuntime:
    """ONNX Runtime backed ``InferenceRuntime``; one session per loaded model."""

    def __init__(self, provider: str = "auto", *, threads: Optional[int] = None) -> None:
        self.provider = (provider or "auto").strip().lower()
        if self.provider not in PROVIDER_CHOICES:
            raise ValueError(f"unknown provider {provider!r}")
        self.threads = max(1, int(threads)) if threads else None
        self.provider_warning = ""

    def _session_options(self) -> Any:
        options = ort.SessionOptions()
        options.log_severity_level = 3
        if self.threads is not None:
            options.intra_op_num_threads = self.threads
            options.inter_op_num_threads = 1
        return options

    def load(self, model_ref: ModelRef) -> OrtModel:
        path = str(Path(model_ref).expanduser())
        if not Path(path).is_file():
            raise ModelLoadError(Path(path).stem, f"model file not found: {path}")
        providers = choose_providers(self.provider)
        try:
            session = ort.InferenceSession(path, sess_options=self._session_options(), providers=providers)
        except Exception as exc:
            if providers == ["CPUExecutionProvider"]:
                raise ModelLoadError(Path(path).stem, f"{type(exc).__name__}: {exc}") from exc
            self.provider_warning = f"providers={providers!r} failed ({exc}); retrying on CPU"
            log_event(LOGGER, "runtime.provider.fallback", model=path, error=type(exc).__name__, message=str(exc))
            try:
                session = ort.InferenceSession(
                    path, sess_options=self._session_options(), providers=["CPUExecutionProvider"]
                )
            except Exception as cpu_exc:
                raise ModelLoadError(Path(path).stem, f"{type(cpu_exc).__name__}: {cpu_exc}") from cpu_exc
        return OrtModel(
            path=path,
            session=session,
            input_name=str(session.get_inputs()[0].name),
            providers=list(session.get_providers()),
        )

    def run(self, model: OrtModel, inputs: Any) -> Any:
        outputs = model.session.run(None, {model.input_name: inputs})
        if not outputs:
            raise RuntimeError(f"onnxruntime returned no outputs for {model.path}")
        return outputs[0]

    def release(self, model: Any) -> None:
        # InferenceSession has no close(); dropping the last reference frees it.
        if isinstance(model, OrtModel):
            model.session = None
