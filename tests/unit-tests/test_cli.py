from __future__ import annotations

import pytest
import typer
from typer.testing import CliRunner

from lookout.live import cli
from lookout.live.config import DETECTOR_NAMES

runner = CliRunner()


def test_parse_size() -> None:
    assert cli.parse_size("1280x720") == (1280, 720)
    assert cli.parse_size(" 64X48 ") == (64, 48)
    assert cli.parse_size(None) is None
    assert cli.parse_size("") is None
    for bad in ("1280", "axb", "0x10", "-5x5"):
        with pytest.raises(typer.BadParameter):
            cli.parse_size(bad)


def test_parse_assignments() -> None:
    assert cli.parse_assignments("detect=a.onnx, depth=b.onnx") == {"detect": "a.onnx", "depth": "b.onnx"}
    assert cli.parse_assignments(["pose=5", "face=2,"]) == {"pose": "5", "face": "2"}
    assert cli.parse_assignments(None) == {}
    for bad in ("detect", "=x", "detect="):
        with pytest.raises(typer.BadParameter):
            cli.parse_assignments(bad)


def test_detectors_lists_every_detector() -> None:
    result = runner.invoke(cli.app, ["detectors"])
    assert result.exit_code == 0
    lines = result.output.strip().splitlines()
    assert [line.split()[0] for line in lines] == list(DETECTOR_NAMES)
    assert "max=10" in lines[DETECTOR_NAMES.index("face")]


def test_run_reports_missing_models_as_errors() -> None:
    result = runner.invoke(
        cli.app,
        ["run", "synthetic:64x48", "--enable", "depth,text", "--ticks", "3", "--duration", "5", "--fps", "1000"],
    )
    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert lines[0] == "frames=3"
    depth = next(line for line in lines if line.startswith("depth"))
    text = next(line for line in lines if line.startswith("text"))
    assert "state=error" in depth and "dispatches=0" in depth
    assert "state=error" in text and "error=" in text


@pytest.mark.parametrize(
    "args",
    [
        ["run", "--enable", "sonar", "--ticks", "1"],
        ["run", "--rate", "detect=fast", "--ticks", "1"],
        ["run", "--rate", "detect=0", "--ticks", "1"],
        ["run", "--model", "sonar=x.onnx", "--ticks", "1"],
        ["run", "--provider", "tpu", "--ticks", "1"],
        ["run", "synthetic:wide", "--ticks", "1"],
    ],
)
def test_run_rejects_bad_arguments(args: list) -> None:
    result = runner.invoke(cli.app, args)
    assert result.exit_code != 0


def test_detector_provider_comes_from_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOOKOUT_DEPTH_PROVIDER", "cpu")
    result = runner.invoke(cli.app, ["detectors"])
    assert result.exit_code == 0
    depth = next(line for line in result.output.splitlines() if line.startswith("depth"))
    assert "provider=cpu" in depth

    monkeypatch.setenv("LOOKOUT_DEPTH_PROVIDER", "tpu")
    bad = runner.invoke(cli.app, ["run", "synthetic:64x48", "--enable", "depth", "--ticks", "1"])
    assert bad.exit_code != 0


def test_run_barcode_needs_no_model() -> None:
    result = runner.invoke(
        cli.app,
        ["run", "synthetic:64x48", "--enable", "barcode", "--ticks", "3", "--duration", "5", "--fps", "1000"],
    )
    assert result.exit_code == 0, result.output
    barcode = next(line for line in result.output.splitlines() if line.startswith("barcode"))
    assert "state=enabled" in barcode
