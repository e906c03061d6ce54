"""Latest-result cache shared between the scheduler and renderers."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from .results import DetectionResult


@dataclass(frozen=True)
class CachedResult:
    result: DetectionResult
    fresh: bool  # computed from the frame the tick is rendering


class ResultCache:
    """
    Per-detector latest result.

    Writers replace the whole mapping under a lock; readers grab the current
    mapping reference without locking, so a reader never observes a torn
    update and always sees either the old or the new result.
    """

    def __init__(self) -> None:
        self._entries: Mapping[str, DetectionResult] = MappingProxyType({})
        self._lock = threading.Lock()

    def put(self, name: str, result: DetectionResult) -> None:
        with self._lock:
            updated: Dict[str, DetectionResult] = dict(self._entries)
            updated[name] = result
            self._entries = MappingProxyType(updated)

    def get(self, name: str, frame_ts: Optional[float] = None) -> Optional[CachedResult]:
        result = self._entries.get(name)
        if result is None:
            return None
        fresh = frame_ts is not None and result.source_timestamp_ms == frame_ts
        return CachedResult(result, fresh)

    def clear(self, name: Optional[str] = None) -> None:
        with self._lock:
            if name is None:
                self._entries = MappingProxyType({})
                return
            if name not in self._entries:
                return
            updated = dict(self._entries)
            updated.pop(name, None)
            self._entries = MappingProxyType(updated)

    def snapshot(self) -> Mapping[str, DetectionResult]:
        return self._entries

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)
