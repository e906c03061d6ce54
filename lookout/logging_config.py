"""Logging for lookout.

Every module owns ``logging.getLogger(__name__)`` with a ``NullHandler`` and
reports problems through :func:`log_event`. The CLI calls
:func:`setup_logging` once, which sends ERROR records to a single file so the
terminal stays reserved for the run summary.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, cast

os.environ.setdefault("ORT_LOGGING_LEVEL", "3")
import onnxruntime as _ort  # type: ignore  # noqa: E402

if hasattr(_ort, "set_default_logger_severity"):
    cast(Any, _ort).set_default_logger_severity(3)

__all__ = ["log_event", "setup_logging"]

_LOG_NAME = "lookout.log"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_EVENT_MARKERS = ("error", "fail", "exception", "warning", "rejected")
_DETAIL_KEYS = ("error", "reason")
_HARMLESS = {"", "ok", "success"}

_installed: Optional[Path] = None


def _user_log_dir() -> Path:
    if os.name == "nt":
        root = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
        base = Path(root) if root else Path.home() / "AppData" / "Local"
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.getenv("XDG_DATA_HOME") or Path.home() / ".local" / "share")
    return base / "lookout" / "logs"


def _open_handler(file_env: str) -> Tuple[logging.Handler, Path]:
    explicit = os.getenv(file_env)
    target = Path(explicit).expanduser() if explicit else _user_log_dir() / _LOG_NAME
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(target, encoding="utf-8"), target
    except OSError:
        target = Path(tempfile.gettempdir()) / _LOG_NAME
        return logging.FileHandler(target, encoding="utf-8"), target


def setup_logging(
    *,
    level_env: str = "LOOKOUT_LOG_LEVEL",
    file_env: str = "LOOKOUT_LOG_FILE",
) -> Path:
    """
    Route the root logger to one file and return its path.

    ``LOOKOUT_LOG_FILE`` overrides the per-user location. ``LOOKOUT_LOG_LEVEL``
    may raise the threshold (``CRITICAL``) but never lowers it below ERROR.
    Later calls are no-ops.
    """
    global _installed
    if _installed is not None:
        return _installed

    handler, path = _open_handler(file_env)
    requested = logging.getLevelName(os.getenv(level_env, "ERROR").strip().upper())
    level = max(requested, logging.ERROR) if isinstance(requested, int) else logging.ERROR
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FORMAT))

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(level)

    ort_logger = logging.getLogger("onnxruntime")
    ort_logger.handlers.clear()
    ort_logger.setLevel(logging.ERROR)
    ort_logger.propagate = False

    _installed = path
    return path


def _is_problem(event: str, info: Dict[str, object]) -> bool:
    name = event.lower()
    if any(marker in name for marker in _EVENT_MARKERS):
        return True
    for key in _DETAIL_KEYS:
        value = info.get(key)
        if isinstance(value, str):
            if value.strip().lower() not in _HARMLESS:
                return True
        elif value not in (None, 0, False):
            return True
    return False


def log_event(logger: logging.Logger, event: str, **info: object) -> bool:
    """
    Log ``event`` (a dotted name like ``scheduler.infer.error``) at ERROR.

    Routine events are dropped. An event is written when its name carries an
    error marker or when an ``error``/``reason`` field holds something other
    than ``ok``. Returns whether a record was emitted.
    """
    if not _is_problem(event, info):
        return False
    fields = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
    if fields:
        logger.error("%s %s", event, fields)
    else:
        logger.error("%s", event)
    return True
