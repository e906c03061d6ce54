from pathlib import Path
from types import SimpleNamespace
from typing import Any, List

import numpy as np
import pytest

import lookout.live.runtime as rt
from lookout.live.errors import ModelLoadError

ALL_PROVIDERS = ["TensorrtExecutionProvider", "CUDAExecutionProvider", "CPUExecutionProvider"]


def _write_model(path: Path) -> Path:
    path.write_bytes(b"stub")
    return path


class _Session:
    """Stands in for ``ort.InferenceSession``; CUDA sessions fail to start."""

    created: List[List[str]] = []

    def __init__(self, path: str, sess_options: Any = None, providers: Any = None) -> None:
        _Session.created.append(list(providers))
        if "CUDAExecutionProvider" in providers:
            raise RuntimeError("CUDA driver version is insufficient")
        self.providers = list(providers)

    def get_inputs(self) -> List[Any]:
        return [SimpleNamespace(name="images")]

    def get_providers(self) -> List[str]:
        return self.providers

    def run(self, names: Any, feeds: Any) -> List[Any]:
        return [feeds["images"] * 2]


@pytest.fixture(autouse=True)
def _no_tensorrt_opt_in(monkeypatch):
    monkeypatch.delenv("LOOKOUT_ENABLE_TENSORRT", raising=False)
    _Session.created = []


def test_tensorrt_filtered_unless_opted_in(monkeypatch):
    assert rt._filter_providers(ALL_PROVIDERS) == ["CUDAExecutionProvider", "CPUExecutionProvider"]
    monkeypatch.setenv("LOOKOUT_ENABLE_TENSORRT", "1")
    assert rt._filter_providers(ALL_PROVIDERS) == ALL_PROVIDERS


def test_choose_providers(monkeypatch):
    monkeypatch.setattr(rt.ort, "get_available_providers", lambda: list(ALL_PROVIDERS))
    assert rt.choose_providers("cpu") == ["CPUExecutionProvider"]
    assert rt.choose_providers("auto") == ["CUDAExecutionProvider", "CPUExecutionProvider"]
    assert rt.choose_providers("CUDA") == ["CUDAExecutionProvider", "CPUExecutionProvider"]

    monkeypatch.setattr(rt.ort, "get_available_providers", lambda: ["CPUExecutionProvider"])
    assert rt.choose_providers("auto") == ["CPUExecutionProvider"]
    assert rt.choose_providers("cuda") == ["CPUExecutionProvider"]

    with pytest.raises(ValueError):
        rt.choose_providers("tpu")


def test_missing_model_fails_before_onnxruntime(monkeypatch, tmp_path):
    def _explode(*args, **kwargs):
        raise AssertionError("InferenceSession must not be created")

    monkeypatch.setattr(rt.ort, "InferenceSession", _explode)
    with pytest.raises(ModelLoadError) as info:
        rt.OrtRuntime("cpu").load(tmp_path / "nope.onnx")
    assert "model file not found" in info.value.cause


def test_cuda_failure_retries_on_cpu(monkeypatch, tmp_path, caplog):
    model_path = _write_model(tmp_path / "detector.onnx")
    monkeypatch.setattr(rt.ort, "get_available_providers", lambda: list(ALL_PROVIDERS))
    monkeypatch.setattr(rt.ort, "InferenceSession", _Session)

    runtime = rt.OrtRuntime("auto", threads=2)
    with caplog.at_level("ERROR", logger="lookout.live.runtime"):
        model = runtime.load(model_path)

    assert _Session.created == [["CUDAExecutionProvider", "CPUExecutionProvider"], ["CPUExecutionProvider"]]
    assert model.providers == ["CPUExecutionProvider"]
    assert model.input_name == "images"
    assert "retrying on CPU" in runtime.provider_warning
    assert any("runtime.provider.fallback" in r.getMessage() for r in caplog.records)

    out = runtime.run(model, np.ones((1, 3), dtype=np.float32))
    np.testing.assert_array_equal(out, np.full((1, 3), 2.0, dtype=np.float32))
    runtime.release(model)
    assert model.session is None


def test_cpu_only_failure_is_a_load_error(monkeypatch, tmp_path):
    model_path = _write_model(tmp_path / "depth.onnx")
    monkeypatch.setattr(rt.ort, "get_available_providers", lambda: ["CPUExecutionProvider"])

    def _corrupt(*args, **kwargs):
        raise RuntimeError("INVALID_PROTOBUF")

    monkeypatch.setattr(rt.ort, "InferenceSession", _corrupt)
    with pytest.raises(ModelLoadError) as info:
        rt.OrtRuntime("cpu").load(model_path)
    assert info.value.cause == "RuntimeError: INVALID_PROTOBUF"


def test_unknown_provider_rejected():
    with pytest.raises(ValueError):
        rt.OrtRuntime("tpu")
