# lookout.live.cli : live entrypoint ("lookout run", "lookout detectors")
from __future__ import annotations

import logging
import os
import sys
import time
from typing import Dict, List, Optional, Sequence, Tuple, Union

import typer

from lookout.logging_config import log_event, setup_logging

setup_logging()
LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())
LOGGER.setLevel(logging.ERROR)

from .config import DETECTOR_NAMES, PROVIDER_CHOICES, load_config  # noqa: E402
from .detectors import build_detector  # noqa: E402
from .frames import FrameSource, open_source  # noqa: E402
from .results import Capability, describe  # noqa: E402
from .runtime import OrtRuntime  # noqa: E402
from .scheduler import Scheduler  # noqa: E402

os.environ.setdefault("OPENCV_VIDEOIO_ENABLE_OBSENSOR", "0")

app = typer.Typer(add_completion=False, help="Multi-cadence live perception.")

_COMMANDS = {"run", "detectors"}


def parse_size(text: Optional[str]) -> Optional[Tuple[int, int]]:
    """``"1280x720"`` -> ``(1280, 720)``; ``None``/empty -> ``None``."""
    if text is None or not text.strip():
        return None
    w, sep, h = text.strip().lower().partition("x")
    if not sep:
        raise typer.BadParameter(f"Size {text!r} must look like WIDTHxHEIGHT.")
    try:
        width, height = int(w), int(h)
    except ValueError:
        raise typer.BadParameter(f"Size {text!r} must look like WIDTHxHEIGHT.") from None
    if width <= 0 or height <= 0:
        raise typer.BadParameter(f"Size {text!r} must be positive.")
    return (width, height)


def parse_assignments(values: Union[str, Sequence[str], None]) -> Dict[str, str]:
    """``"a=1,b=2"`` (or repeated options) -> ``{"a": "1", "b": "2"}``."""
    if values is None:
        return {}
    tokens: List[str] = [values] if isinstance(values, str) else list(values)
    out: Dict[str, str] = {}
    for token in tokens:
        for part in token.split(","):
            part = part.strip()
            if not part:
                continue
            key, sep, value = part.partition("=")
            key, value = key.strip(), value.strip()
            if not sep or not key or not value:
                raise typer.BadParameter(f"Expected NAME=VALUE, got {part!r}.")
            out[key] = value
    return out


def _parse_names(text: str) -> List[str]:
    names = [t.strip().lower() for t in text.split(",") if t.strip()]
    unknown = [n for n in names if n not in DETECTOR_NAMES]
    if unknown:
        raise typer.BadParameter(
            f"Unknown detector(s) {', '.join(unknown)}; choose from {', '.join(DETECTOR_NAMES)}."
        )
    return names


def _check_names(mapping: Dict[str, str], option: str) -> None:
    unknown = [n for n in mapping if n not in DETECTOR_NAMES]
    if unknown:
        raise typer.BadParameter(f"{option}: unknown detector(s) {', '.join(unknown)}.")


def _parse_rates(mapping: Dict[str, str]) -> Dict[str, float]:
    rates: Dict[str, float] = {}
    for name, raw in mapping.items():
        try:
            rate = float(raw)
        except ValueError:
            raise typer.BadParameter(f"--rate {name}={raw!r} is not a number.") from None
        if rate <= 0:
            raise typer.BadParameter(f"--rate {name} must be > 0 Hz.")
        rates[name] = rate
    return rates


def _summary_line(scheduler: Scheduler, name: str) -> str:
    adapter = next(a for a in scheduler.adapters() if a.name == name)
    stats = scheduler.stats(name)
    mean = stats.mean_latency_ms
    cached = scheduler.cache.get(name)
    parts = [
        f"{name:<6}",
        f"state={adapter.gate.state.value}",
        f"dispatches={stats.dispatches}",
        f"failures={stats.failures}",
        f"mean_ms={mean:.1f}" if mean is not None else "mean_ms=-",
        f"result={describe(cached.result) if cached else '-'}",
    ]
    if adapter.gate.last_error:
        parts.append(f"error={adapter.gate.last_error}")
    return " ".join(parts)


@app.command()
def run(
    source: str = typer.Argument("synthetic", help="synthetic[:WxH], camera index, or video path."),
    enable: str = typer.Option("detect", "--enable", "-e", help="Comma-separated detectors to enable."),
    duration: float = typer.Option(2.0, "--duration", help="Seconds to run."),
    ticks: Optional[int] = typer.Option(None, "--ticks", help="Stop after this many frames."),
    fps: int = typer.Option(30, "--fps", help="Render tick rate."),
    model: List[str] = typer.Option([], "--model", help="NAME=PATH model override (repeatable)."),
    rate: List[str] = typer.Option([], "--rate", help="NAME=HZ cadence override (repeatable)."),
    provider: Optional[str] = typer.Option(
        None, "--provider", help="onnxruntime provider for every detector: auto/cpu/cuda (default: per-detector config)."
    ),
    display: Optional[str] = typer.Option(None, "--display", help="Render surface WxH for overlay scale."),
    load_timeout: float = typer.Option(30.0, "--load-timeout", help="Seconds to wait for models to load."),
) -> None:
    """Run the scheduler against a frame source and print a per-detector summary."""
    names = _parse_names(enable)
    models = parse_assignments(model)
    _check_names(models, "--model")
    rate_raw = parse_assignments(rate)
    _check_names(rate_raw, "--rate")
    rates = _parse_rates(rate_raw)
    display_size = parse_size(display)
    provider_norm = provider.strip().lower() if provider else None
    if provider_norm is not None and provider_norm not in PROVIDER_CHOICES:
        raise typer.BadParameter(f"--provider must be one of {'/'.join(PROVIDER_CHOICES)}")
    if fps <= 0:
        raise typer.BadParameter("--fps must be > 0")

    try:
        frames: FrameSource = open_source(source)
    except (RuntimeError, ValueError) as exc:
        raise typer.BadParameter(str(exc)) from None

    runtimes: Dict[str, OrtRuntime] = {}
    scheduler = Scheduler(display_size=display_size)
    try:
        for name in DETECTOR_NAMES:
            try:
                cfg = load_config(name, model=models.get(name), rate_hz=rates.get(name), provider=provider_norm)
            except ValueError as exc:
                raise typer.BadParameter(str(exc)) from None
            runtime: Optional[OrtRuntime] = None
            # text and barcode detectors do not run through an ONNX session
            if cfg.capability is not Capability.TEXT:
                if cfg.provider not in runtimes:
                    runtimes[cfg.provider] = OrtRuntime(cfg.provider)
                runtime = runtimes[cfg.provider]
            scheduler.register(build_detector(name, runtime, config=cfg))
        pending = []
        for name in names:
            scheduler.set_enabled(name, True)
            pending.append(next(a for a in scheduler.adapters() if a.name == name).initialize())
        for fut in pending:
            try:
                fut.result(timeout=load_timeout)
            except Exception as exc:
                log_event(LOGGER, "cli.load.error", error=type(exc).__name__, message=str(exc))

        period = 1.0 / fps
        deadline = time.monotonic() + max(0.0, duration)
        count = 0
        while time.monotonic() < deadline and (ticks is None or count < ticks):
            started = time.monotonic()
            frame = frames.current_frame()
            if frame is None:
                break
            scheduler.tick(frame)
            count += 1
            delay = period - (time.monotonic() - started)
            if delay > 0:
                time.sleep(delay)
        scheduler.drain(timeout=load_timeout)

        typer.echo(f"frames={count}")
        for adapter in scheduler.adapters():
            if adapter.name in names:
                typer.echo(_summary_line(scheduler, adapter.name))
    finally:
        scheduler.shutdown()
        frames.release()


@app.command()
def detectors() -> None:
    """List detectors with their effective configuration."""
    for name in DETECTOR_NAMES:
        try:
            cfg = load_config(name)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from None
        max_results = cfg.max_results if cfg.max_results is not None else "-"
        typer.echo(
            f"{name:<6} {cfg.capability.value:<10} rate={cfg.rate_hz:g}Hz conf={cfg.conf_threshold:g} "
            f"iou={cfg.iou_threshold:g} max={max_results} input={cfg.input_size} model={cfg.model or '-'} "
            f"provider={cfg.provider} history={cfg.history_size}"
        )


def _prepend_argv(token: str) -> None:
    # "lookout synthetic -e depth" means "lookout run synthetic -e depth".
    for a in sys.argv[1:]:
        if a.startswith("-"):
            continue
        if a not in _COMMANDS:
            sys.argv = sys.argv[:1] + [token] + sys.argv[1:]
        return


def main() -> None:  # pragma: no cover
    try:
        argv = sys.argv[1:]
        if argv and not any(a in {"-h", "--help"} for a in argv):
            _prepend_argv("run")
        app()
    except KeyboardInterrupt:
        raise SystemExit(0)


if __name__ == "__main__":  # pragma: no cover
    main()
