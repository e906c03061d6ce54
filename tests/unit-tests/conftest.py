# tests/unit-tests/conftest.py
from __future__ import annotations

import os
import tempfile
from concurrent.futures import Executor, Future
from pathlib import Path
from typing import Any, Callable, List, Optional

import numpy as np
import pytest

from lookout.live.frames import Frame


def pytest_configure(config: Any) -> None:
    """Keep log output out of the user's data dir; runs before test modules import the CLI."""
    log_dir = Path(tempfile.gettempdir()) / "lookout-tests"
    log_dir.mkdir(parents=True, exist_ok=True)
    os.environ.setdefault("LOOKOUT_LOG_FILE", str(log_dir / "lookout.log"))
    os.environ.setdefault("LOOKOUT_MODEL_DIR", str(log_dir / "models"))


@pytest.fixture(autouse=True)
def _clean_detector_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Host overrides like LOOKOUT_DETECT_RATE must not leak into defaults."""
    for key in list(os.environ):
        if key.startswith("LOOKOUT_") and key.endswith(("_RATE", "_CONF", "_IOU", "_MAX", "_MODEL", "_PROVIDER")):
            monkeypatch.delenv(key, raising=False)


class InlineExecutor(Executor):
    """Runs submitted work on the caller's thread; the returned future is already done."""

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> "Future[Any]":
        self.submitted += 1
        fut: "Future[Any]" = Future()
        try:
            fut.set_result(fn(*args, **kwargs))
        except Exception as exc:
            fut.set_exception(exc)
        return fut


class FakeRuntime:
    """``InferenceRuntime`` double: canned output (or a callable of the input), optional failures."""

    def __init__(
        self,
        output: Any = None,
        *,
        fail_load: Optional[BaseException] = None,
        fail_run: Optional[BaseException] = None,
    ) -> None:
        self.output = output
        self.fail_load = fail_load
        self.fail_run = fail_run
        self.loaded: List[Any] = []
        self.released: List[Any] = []
        self.input_shapes: List[tuple] = []

    def load(self, model_ref: Any) -> Any:
        self.loaded.append(model_ref)
        if self.fail_load is not None:
            raise self.fail_load
        return {"model": str(model_ref)}

    def run(self, model: Any, inputs: Any) -> Any:
        self.input_shapes.append(tuple(np.shape(inputs)))
        if self.fail_run is not None:
            raise self.fail_run
        if callable(self.output):
            return self.output(inputs)
        return self.output

    def release(self, model: Any) -> None:
        self.released.append(model)


@pytest.fixture
def inline_executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def fake_runtime() -> Callable[..., FakeRuntime]:
    return FakeRuntime


@pytest.fixture
def make_frame() -> Callable[..., Frame]:
    def _make(width: int = 64, height: int = 48, timestamp_ms: float = 0.0, index: int = 0, value: int = 0) -> Frame:
        pixels = np.full((height, width, 3), value, dtype=np.uint8)
        return Frame(pixels, timestamp_ms=timestamp_ms, index=index)

    return _make
