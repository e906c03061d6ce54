# lookout/__init__.py
"""
Lightweight package init.

Avoid importing heavy deps (OpenCV, onnxruntime) at import time; the live
subpackage and the CLI import what they need.

Exports:
    __version__ : best-effort package version (falls back to "0+unknown")
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as _pkg_version

__all__ = ["__version__"]


def _detect_version() -> str:
    try:
        return _pkg_version("lookout")
    except PackageNotFoundError:
        return "0+unknown"


__version__ = _detect_version()
