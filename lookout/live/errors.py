"""Exception types raised by live detectors and runtimes."""

from __future__ import annotations

from typing import Optional


class LookoutError(Exception):
    """Base class for every error raised by the live package."""


class ModelLoadError(LookoutError):
    """The inference runtime could not load a detector's model."""

    def __init__(self, detector: str, cause: str) -> None:
        super().__init__(f"{detector}: {cause}")
        self.detector = detector
        self.cause = cause


class InferenceError(LookoutError):
    """A single inference call failed (runtime, shape, or decode problem)."""

    def __init__(self, detector: str, message: str, original: Optional[BaseException] = None) -> None:
        super().__init__(f"{detector}: {message}")
        self.detector = detector
        self.original = original
