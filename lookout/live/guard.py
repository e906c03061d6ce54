"""
Scoped ownership of per-inference transient resources.

Every ``infer`` call runs inside a ``ResourceGuard``. Preprocessing, the
runtime call and decoding register whatever they allocate (pooled scratch
buffers, runtime output handles) through ``acquire``; leaving the ``with``
block releases all of them, newest first, no matter how the block exits.
A release that raises is logged and skipped so one bad handle can never
take the scheduler down or leak the remaining resources.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from types import TracebackType
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import numpy as np

from lookout.logging_config import log_event

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())
LOGGER.setLevel(logging.ERROR)

T = TypeVar("T")
Release = Callable[[Any], None]


def _release_attr(resource: Any) -> None:
    """Default release: call ``release()``/``dispose()``/``close()`` when present."""
    for attr in ("release", "dispose", "close"):
        fn = getattr(resource, attr, None)
        if callable(fn):
            fn()
            return


class ResourceGuard:
    """
    Context manager that releases acquired resources in LIFO order exactly once.

    >>> with ResourceGuard("detect") as guard:
    ...     buf = guard.acquire(pool.take(shape), pool.give_back)
    ...     run(buf)
    """

    def __init__(self, owner: str = "") -> None:
        self.owner = owner
        self._stack: List[Tuple[Any, Release]] = []
        self._seen: set[int] = set()
        self._closed = False
        self.failures = 0

    def __enter__(self) -> "ResourceGuard":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> bool:
        self.release_all()
        return False

    def acquire(self, resource: T, release: Optional[Release] = None) -> T:
        """Register ``resource`` for release when the guard closes and return it."""
        if self._closed:
            raise RuntimeError(f"guard for {self.owner or 'inference'} is already closed")
        key = id(resource)
        if key in self._seen:
            return resource
        self._seen.add(key)
        self._stack.append((resource, release or _release_attr))
        return resource

    @property
    def held(self) -> int:
        return len(self._stack)

    def release_all(self) -> None:
        """Release everything still held. Safe to call more than once."""
        self._closed = True
        while self._stack:
            resource, release = self._stack.pop()
            try:
                release(resource)
            except Exception as exc:
                self.failures += 1
                log_event(
                    LOGGER,
                    "guard.release.error",
                    owner=self.owner or None,
                    resource=type(resource).__name__,
                    error=type(exc).__name__,
                    message=str(exc),
                )


class BufferPool:
    """
    Reusable numpy scratch buffers keyed by ``(shape, dtype)``.

    Buffers are checked out for the lifetime of one guard and returned when
    the guard closes, so steady-state inference does not allocate per frame.
    """

    def __init__(self, name: str = "", max_per_key: int = 2) -> None:
        self.name = name
        self.max_per_key = max(1, int(max_per_key))
        self._free: Dict[Tuple[Tuple[int, ...], str], List[Any]] = defaultdict(list)
        self._out: Dict[int, Tuple[Tuple[int, ...], str]] = {}
        self._lock = threading.Lock()
        self.allocations = 0

    @staticmethod
    def _key(shape: Tuple[int, ...], dtype: Any) -> Tuple[Tuple[int, ...], str]:
        return (tuple(int(d) for d in shape), np.dtype(dtype).str)

    def take(self, shape: Tuple[int, ...], dtype: Any = np.float32) -> Any:
        key = self._key(shape, dtype)
        with self._lock:
            free = self._free[key]
            if free:
                buf = free.pop()
            else:
                buf = np.empty(key[0], dtype=np.dtype(dtype))
                self.allocations += 1
            self._out[id(buf)] = key
        return buf

    def give_back(self, buf: Any) -> None:
        with self._lock:
            key = self._out.pop(id(buf), None)
            if key is None:
                raise ValueError(f"buffer not checked out from pool {self.name or '<anon>'}")
            free = self._free[key]
            if len(free) < self.max_per_key:
                free.append(buf)

    def checkout(self, guard: ResourceGuard, shape: Tuple[int, ...], dtype: Any = np.float32) -> Any:
        """Borrow a buffer whose return is tied to ``guard``."""
        return guard.acquire(self.take(shape, dtype), self.give_back)

    @property
    def outstanding(self) -> int:
        with self._lock:
            return len(self._out)

    def clear(self) -> None:
        with self._lock:
            self._free.clear()
            self._out.clear()
