"""
Multi-cadence scheduler.

``Scheduler.tick(frame)`` is called once per rendered frame. For every
registered detector it decides, under a short lock, whether to dispatch:

    gate not Enabled            -> skip, no result in the snapshot
    previous inference running  -> serve the cached result (frame dropped)
    interval not yet elapsed    -> serve the cached result
    otherwise                   -> mark busy, submit ``infer(frame)``

Inference runs on an executor. Completions are queued by the worker and only
committed by the scheduler itself at the next collection point (before and
after each dispatch round, or in ``drain``), so cache writes and busy flags
are never touched from worker threads. A completion is discarded when its
detector was disabled (or disabled and re-enabled) while it ran; a failure
is logged and leaves the cache as it was.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import CancelledError, Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from functools import partial
from queue import Empty, Queue
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from lookout.logging_config import log_event

from .cache import CachedResult, ResultCache
from .detectors import DetectorAdapter
from .frames import Frame
from .gate import FeatureGateState
from .results import Capability, DetectionResult

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())
LOGGER.setLevel(logging.ERROR)


@dataclass
class DetectorDescriptor:
    name: str
    interval_ms: float
    capability: Capability
    enabled: bool = False
    busy: bool = False
    last_dispatch_ms: Optional[float] = None
    epoch: int = 0  # gate epoch the cadence was last reset for


@dataclass
class DetectorStats:
    dispatches: int = 0
    completions: int = 0
    failures: int = 0
    discarded: int = 0
    skipped_busy: int = 0
    skipped_interval: int = 0
    last_latency_ms: Optional[float] = None
    total_latency_ms: float = 0.0

    @property
    def mean_latency_ms(self) -> Optional[float]:
        finished = self.completions + self.failures
        if not finished:
            return None
        return self.total_latency_ms / finished


@dataclass(frozen=True)
class TickSnapshot:
    frame_timestamp_ms: float
    scale: float
    results: Mapping[str, CachedResult]


@dataclass(frozen=True)
class _Completion:
    name: str
    epoch: int
    frame_timestamp_ms: float
    result: Optional[DetectionResult]
    error: Optional[BaseException]
    latency_ms: float


class Scheduler:
    """
    Parameters
    ----------
    executor:
        Where ``infer`` runs. Defaults to a private ``ThreadPoolExecutor``
        that ``shutdown`` stops; a caller-supplied executor is left running.
    display_size:
        ``(width, height)`` of the render surface, used for the snapshot scale.
    clock:
        Monotonic seconds; only consulted when ``tick`` gets no ``now_ms``.
    """

    def __init__(
        self,
        executor: Optional[Executor] = None,
        display_size: Optional[Tuple[int, int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._executor = executor
        self._owns_executor = executor is None
        self.display_size = display_size
        self._clock = clock
        self.cache = ResultCache()
        self._adapters: Dict[str, DetectorAdapter] = {}
        self._descriptors: Dict[str, DetectorDescriptor] = {}
        self._stats: Dict[str, DetectorStats] = {}
        self._inflight: Dict[str, "Future[DetectionResult]"] = {}
        self._completions: "Queue[_Completion]" = Queue()
        self._lock = threading.RLock()
        self._closed = False

    # ------------------------------------------------------------------ registry
    def register(self, adapter: DetectorAdapter) -> DetectorDescriptor:
        name = adapter.name
        with self._lock:
            if name in self._adapters:
                raise ValueError(f"detector {name!r} is already registered")
            desc = DetectorDescriptor(
                name=name,
                interval_ms=adapter.config.interval_ms,
                capability=adapter.capability,
                enabled=adapter.gate.is_enabled(),
                epoch=adapter.gate.epoch,
            )
            self._adapters[name] = adapter
            self._descriptors[name] = desc
            self._stats[name] = DetectorStats()
        adapter.gate.subscribe(self._on_gate)
        return replace(desc)

    def unregister(self, name: str) -> DetectorAdapter:
        with self._lock:
            adapter = self._adapters.pop(name)
            self._descriptors.pop(name, None)
            self._stats.pop(name, None)
        adapter.gate.unsubscribe(self._on_gate)
        self.cache.clear(name)
        return adapter

    def adapters(self) -> Tuple[DetectorAdapter, ...]:
        with self._lock:
            return tuple(self._adapters.values())

    def descriptor(self, name: str) -> DetectorDescriptor:
        with self._lock:
            return replace(self._descriptors[name])

    def stats(self, name: str) -> DetectorStats:
        with self._lock:
            return replace(self._stats[name])

    def set_enabled(self, name: str, flag: bool) -> bool:
        with self._lock:
            adapter = self._adapters[name]
        return adapter.set_enabled(flag)

    def _on_gate(self, name: str, old: FeatureGateState, new: FeatureGateState, reason: str) -> None:
        with self._lock:
            desc = self._descriptors.get(name)
            if desc is None:
                return
            desc.enabled = new is FeatureGateState.ENABLED
            if new is FeatureGateState.DISABLING:
                self.cache.clear(name)

    # ------------------------------------------------------------------ ticking
    def _now_ms(self) -> float:
        return float(self._clock()) * 1000.0

    def _scale(self, frame: Frame) -> float:
        if not self.display_size or frame.width <= 0 or frame.height <= 0:
            return 1.0
        dw, dh = self.display_size
        return min(float(dw) / frame.width, float(dh) / frame.height)

    def _executor_for_dispatch(self) -> Executor:
        if self._executor is None:
            workers = max(4, len(self._adapters))
            self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lookout-infer")
            self._owns_executor = True
        return self._executor

    def tick(self, frame: Frame, now_ms: Optional[float] = None) -> TickSnapshot:
        now = self._now_ms() if now_ms is None else float(now_ms)
        self._collect()

        dispatch: List[Tuple[DetectorAdapter, int]] = []
        visible: List[str] = []
        executor: Optional[Executor] = None
        with self._lock:
            if not self._closed:
                for name, desc in self._descriptors.items():
                    adapter = self._adapters[name]
                    epoch = adapter.gate.enabled_epoch()
                    desc.enabled = epoch is not None
                    if epoch is None:
                        continue
                    if epoch != desc.epoch:
                        # re-enabled since the last look: restart the cadence
                        desc.epoch = epoch
                        desc.last_dispatch_ms = None
                    visible.append(name)
                    stats = self._stats[name]
                    if desc.busy:
                        stats.skipped_busy += 1
                        continue
                    if desc.last_dispatch_ms is not None and now - desc.last_dispatch_ms < desc.interval_ms:
                        stats.skipped_interval += 1
                        continue
                    desc.busy = True
                    desc.last_dispatch_ms = now
                    stats.dispatches += 1
                    dispatch.append((adapter, desc.epoch))
                if dispatch:
                    executor = self._executor_for_dispatch()

        if executor is not None:
            for adapter, epoch in dispatch:
                self._submit(executor, adapter, epoch, frame)

        self._collect()
        results: Dict[str, CachedResult] = {}
        for name in visible:
            cached = self.cache.get(name, frame.timestamp_ms)
            if cached is not None:
                results[name] = cached
        return TickSnapshot(frame.timestamp_ms, self._scale(frame), MappingProxyType(results))

    def _submit(self, executor: Executor, adapter: DetectorAdapter, epoch: int, frame: Frame) -> None:
        started = time.perf_counter()
        try:
            future = executor.submit(adapter.infer, frame)
        except Exception as exc:
            self._completions.put(_Completion(adapter.name, epoch, frame.timestamp_ms, None, exc, 0.0))
            return
        with self._lock:
            if not future.done():
                self._inflight[adapter.name] = future
        future.add_done_callback(partial(self._on_done, adapter.name, epoch, frame.timestamp_ms, started))

    def _on_done(
        self,
        name: str,
        epoch: int,
        frame_ts: float,
        started: float,
        future: "Future[DetectionResult]",
    ) -> None:
        latency_ms = (time.perf_counter() - started) * 1000.0
        result: Optional[DetectionResult] = None
        error: Optional[BaseException] = None
        if future.cancelled():
            error = CancelledError()
        else:
            error = future.exception()
            if error is None:
                result = future.result()
        self._completions.put(_Completion(name, epoch, frame_ts, result, error, latency_ms))

    def _collect(self) -> int:
        committed = 0
        while True:
            try:
                completion = self._completions.get_nowait()
            except Empty:
                return committed
            self._commit(completion)
            committed += 1

    def _commit(self, c: _Completion) -> None:
        with self._lock:
            self._inflight.pop(c.name, None)
            desc = self._descriptors.get(c.name)
            adapter = self._adapters.get(c.name)
            if desc is None or adapter is None:
                return
            desc.busy = False
            stats = self._stats[c.name]
            stats.last_latency_ms = c.latency_ms
            stats.total_latency_ms += c.latency_ms
            if c.error is None:
                stats.completions += 1
                if c.result is None or adapter.gate.enabled_epoch() != c.epoch:
                    stats.discarded += 1
                    return
                self.cache.put(c.name, c.result)
                if adapter.gate.enabled_epoch() != c.epoch:
                    # disabled from inside the write
                    self.cache.clear(c.name)
                    stats.discarded += 1
                return
            stats.failures += 1
        log_event(
            LOGGER,
            "scheduler.infer.error",
            detector=c.name,
            frame_ts=c.frame_timestamp_ms,
            error=type(c.error).__name__,
            message=str(c.error),
        )

    # ------------------------------------------------------------------ teardown
    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight inferences and commit them; False on timeout."""
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        while True:
            self._collect()
            with self._lock:
                pending = [name for name, d in self._descriptors.items() if d.busy]
                futures = [self._inflight[n] for n in pending if n in self._inflight]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            step = 0.05 if remaining is None else min(0.05, remaining)
            if futures:
                _, not_done = wait(futures, timeout=step)
                if not not_done:
                    # done callbacks run just after waiters wake up
                    time.sleep(0.001)
            else:
                time.sleep(min(step, 0.001))

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if not self.drain(timeout):
            log_event(LOGGER, "scheduler.drain.timeout", error="inference still running", timeout=timeout)
        for adapter in self.adapters():
            try:
                adapter.dispose()
            except Exception as exc:
                log_event(
                    LOGGER,
                    "scheduler.dispose.error",
                    detector=adapter.name,
                    error=type(exc).__name__,
                    message=str(exc),
                )
            adapter.gate.unsubscribe(self._on_gate)
        executor, self._executor = self._executor, None
        if self._owns_executor and executor is not None:
            executor.shutdown(wait=False)
