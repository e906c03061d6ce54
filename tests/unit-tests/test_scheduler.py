from __future__ import annotations

import math
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, List, Optional

import pytest

from lookout.live.cache import ResultCache
from lookout.live.config import DetectorConfig
from lookout.live.detectors import DetectorAdapter
from lookout.live.frames import Frame
from lookout.live.gate import FeatureGateState as S
from lookout.live.guard import ResourceGuard
from lookout.live.results import Box, BoxesResult, Capability, DetectionResult
from lookout.live.scheduler import Scheduler


class _NullRuntime:
    def __init__(self) -> None:
        self.fail_load: Optional[BaseException] = None

    def load(self, model_ref: Any) -> Any:
        if self.fail_load is not None:
            raise self.fail_load
        return object()

    def run(self, model: Any, inputs: Any) -> Any:
        return None

    def release(self, model: Any) -> None:
        return None


class _StubDetector(DetectorAdapter):
    capability = Capability.BOXES

    def __init__(self, loader: Executor, name: str = "stub", rate_hz: float = 10.0) -> None:
        cfg = DetectorConfig(name, Capability.BOXES, rate_hz=rate_hz, conf_threshold=0.3, model="stub.onnx")
        super().__init__(cfg, _NullRuntime(), loader=loader)
        self.calls: List[float] = []
        self.hold: Optional[threading.Event] = None
        self.fail = False
        self.active = 0
        self.max_active = 0
        self._count_lock = threading.Lock()

    def _infer(self, frame: Frame, model: Any, guard: ResourceGuard) -> BoxesResult:
        with self._count_lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append(frame.timestamp_ms)
        try:
            if self.hold is not None:
                self.hold.wait(5.0)
            if self.fail:
                raise RuntimeError("bad frame")
            return BoxesResult(frame.timestamp_ms, (Box("thing", 90, 0.0, 0.0, 4.0, 4.0),))
        finally:
            with self._count_lock:
                self.active -= 1


@pytest.fixture
def threaded() -> Any:
    pool = ThreadPoolExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=True)


def _enabled(scheduler: Scheduler, stub: _StubDetector) -> _StubDetector:
    scheduler.register(stub)
    assert scheduler.set_enabled(stub.name, True)
    assert stub.gate.state is S.ENABLED
    return stub


def test_cadence_at_10hz_with_16ms_ticks(inline_executor: Any, make_frame: Callable[..., Frame]) -> None:
    scheduler = Scheduler(executor=inline_executor)
    stub = _enabled(scheduler, _StubDetector(inline_executor, rate_hz=10.0))

    ticks = [i * 16.0 for i in range(70)]
    for i, t in enumerate(ticks):
        snap = scheduler.tick(make_frame(timestamp_ms=t, index=i), now_ms=t)
        cached = snap.results["stub"]
        if stub.calls[-1] == t:
            assert cached.fresh
        else:
            assert not cached.fresh
            assert cached.result.source_timestamp_ms == stub.calls[-1]
            assert t - stub.calls[-1] < 100.0

    assert stub.calls == [112.0 * k for k in range(10)]
    stats = scheduler.stats("stub")
    assert stats.dispatches == 10
    assert stats.skipped_interval == 60
    assert scheduler.descriptor("stub").interval_ms == pytest.approx(100.0)


def test_dispatch_count_bounded_per_window(inline_executor: Any, make_frame: Callable[..., Frame]) -> None:
    scheduler = Scheduler(executor=inline_executor)
    stub = _enabled(scheduler, _StubDetector(inline_executor, rate_hz=30.0))
    interval = 1000.0 / 30.0
    t = 0.0
    for i in range(400):
        t += 3.0 + (i * 7) % 11  # uneven tick spacing
        scheduler.tick(make_frame(timestamp_ms=t, index=i), now_ms=t)

    dispatches = stub.calls
    for window in (50.0, 100.0, 333.0, 1000.0):
        bound = math.ceil(window / interval) + 1
        for start in dispatches:
            inside = [d for d in dispatches if start <= d <= start + window]
            assert len(inside) <= bound


def test_disabled_detector_emits_nothing(inline_executor: Any, make_frame: Callable[..., Frame]) -> None:
    scheduler = Scheduler(executor=inline_executor)
    stub = _StubDetector(inline_executor)
    scheduler.register(stub)
    snap = scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)
    assert dict(snap.results) == {}
    assert stub.calls == []


def test_failure_keeps_previous_result_and_clears_busy(
    inline_executor: Any, make_frame: Callable[..., Frame]
) -> None:
    scheduler = Scheduler(executor=inline_executor)
    stub = _enabled(scheduler, _StubDetector(inline_executor))
    scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)

    stub.fail = True
    snap = scheduler.tick(make_frame(timestamp_ms=100.0), now_ms=100.0)
    assert snap.results["stub"].result.source_timestamp_ms == 0.0
    assert not snap.results["stub"].fresh
    assert not scheduler.descriptor("stub").busy
    assert scheduler.stats("stub").failures == 1

    stub.fail = False
    snap = scheduler.tick(make_frame(timestamp_ms=200.0), now_ms=200.0)
    assert snap.results["stub"].fresh
    assert stub.metrics()["failures"] == 1
    assert stub.metrics()["inferences"] == 2


def test_busy_detector_is_not_redispatched(threaded: Any, inline_executor: Any, make_frame: Callable[..., Frame]) -> None:
    scheduler = Scheduler(executor=threaded)
    stub = _enabled(scheduler, _StubDetector(inline_executor))
    stub.hold = threading.Event()

    scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)
    snap = scheduler.tick(make_frame(timestamp_ms=500.0), now_ms=500.0)
    assert "stub" not in snap.results
    assert scheduler.descriptor("stub").busy
    assert scheduler.stats("stub").skipped_busy == 1

    stub.hold.set()
    assert scheduler.drain(timeout=5.0)
    assert stub.calls == [0.0]
    cached = scheduler.cache.get("stub", 500.0)
    assert cached is not None and not cached.fresh


def test_concurrent_ticks_never_overlap_inference(
    threaded: Any, inline_executor: Any, make_frame: Callable[..., Frame]
) -> None:
    scheduler = Scheduler(executor=threaded)
    stub = _enabled(scheduler, _StubDetector(inline_executor, rate_hz=1000.0))
    frame = make_frame()

    def hammer() -> None:
        for _ in range(200):
            scheduler.tick(frame)

    workers = [threading.Thread(target=hammer) for _ in range(8)]
    for w in workers:
        w.start()
    for w in workers:
        w.join()
    assert scheduler.drain(timeout=5.0)

    stats = scheduler.stats("stub")
    assert stub.max_active == 1
    assert stats.failures == 0
    assert stats.dispatches == stats.completions == len(stub.calls)


def test_result_discarded_when_disabled_mid_flight(
    threaded: Any, inline_executor: Any, make_frame: Callable[..., Frame]
) -> None:
    scheduler = Scheduler(executor=threaded)
    stub = _enabled(scheduler, _StubDetector(inline_executor))
    stub.hold = threading.Event()

    scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)
    assert scheduler.set_enabled("stub", False)
    stub.hold.set()
    assert scheduler.drain(timeout=5.0)

    assert scheduler.cache.get("stub") is None
    assert scheduler.stats("stub").discarded == 1
    assert stub.gate.state is S.DISABLED


def test_enable_disable_enable_resets_cache(inline_executor: Any, make_frame: Callable[..., Frame]) -> None:
    scheduler = Scheduler(executor=inline_executor)
    stub = _enabled(scheduler, _StubDetector(inline_executor))
    scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)
    assert scheduler.cache.get("stub") is not None

    assert scheduler.set_enabled("stub", False)
    assert scheduler.cache.get("stub") is None
    assert scheduler.set_enabled("stub", True)
    assert scheduler.cache.get("stub") is None

    snap = scheduler.tick(make_frame(timestamp_ms=20.0), now_ms=20.0)
    assert snap.results["stub"].fresh
    assert stub.calls == [0.0, 20.0]


def test_initialize_failing_twice_records_both_causes(inline_executor: Any) -> None:
    scheduler = Scheduler(executor=inline_executor)
    stub = _StubDetector(inline_executor)
    runtime = stub.runtime
    assert isinstance(runtime, _NullRuntime)
    scheduler.register(stub)

    runtime.fail_load = OSError("disk gone")
    assert scheduler.set_enabled("stub", True)
    assert stub.gate.state is S.ERROR
    runtime.fail_load = MemoryError("out of memory")
    assert scheduler.set_enabled("stub", True)
    assert stub.gate.state is S.ERROR

    history = [(t.source, t.target, t.reason) for t in stub.gate.history()]
    assert history == [
        (S.DISABLED, S.ENABLING, "enable requested"),
        (S.ENABLING, S.ERROR, "OSError: disk gone"),
        (S.ERROR, S.ENABLING, "retry after error"),
        (S.ENABLING, S.ERROR, "MemoryError: out of memory"),
    ]


def test_errored_detector_gets_no_dispatch(inline_executor: Any, make_frame: Callable[..., Frame]) -> None:
    scheduler = Scheduler(executor=inline_executor)
    stub = _StubDetector(inline_executor)
    stub.runtime.fail_load = RuntimeError("no model")  # type: ignore[union-attr]
    scheduler.register(stub)
    scheduler.set_enabled("stub", True)
    snap = scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)
    assert dict(snap.results) == {}
    assert stub.calls == []
    assert scheduler.set_enabled("stub", False) is False


def test_snapshot_scale_follows_display(inline_executor: Any, make_frame: Callable[..., Frame]) -> None:
    frame = make_frame(width=640, height=480)
    assert Scheduler(executor=inline_executor).tick(frame).scale == 1.0
    scaled = Scheduler(executor=inline_executor, display_size=(1280, 720))
    assert scaled.tick(frame).scale == pytest.approx(1.5)


def test_tick_uses_injected_clock(inline_executor: Any, make_frame: Callable[..., Frame]) -> None:
    now = [1.0]
    scheduler = Scheduler(executor=inline_executor, clock=lambda: now[0])
    stub = _enabled(scheduler, _StubDetector(inline_executor))
    scheduler.tick(make_frame(timestamp_ms=1.0))
    now[0] = 1.05
    scheduler.tick(make_frame(timestamp_ms=2.0))
    now[0] = 1.2
    scheduler.tick(make_frame(timestamp_ms=3.0))
    assert stub.calls == [1.0, 3.0]


def test_register_unregister_and_shutdown(inline_executor: Any, make_frame: Callable[..., Frame]) -> None:
    scheduler = Scheduler(executor=inline_executor)
    stub = _enabled(scheduler, _StubDetector(inline_executor))
    with pytest.raises(ValueError):
        scheduler.register(_StubDetector(inline_executor))
    scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)

    other = _enabled(scheduler, _StubDetector(inline_executor, name="other"))
    assert {a.name for a in scheduler.adapters()} == {"stub", "other"}
    assert scheduler.unregister("other") is other
    assert {a.name for a in scheduler.adapters()} == {"stub"}

    scheduler.shutdown()
    assert stub.gate.state is S.DISABLED
    assert not stub.is_loaded
    snap = scheduler.tick(make_frame(timestamp_ms=500.0), now_ms=500.0)
    assert dict(snap.results) == {}
    assert len(stub.calls) == 1


def test_disable_and_reenable_while_inference_runs(
    threaded: Any, inline_executor: Any, make_frame: Callable[..., Frame]
) -> None:
    scheduler = Scheduler(executor=threaded)
    stub = _enabled(scheduler, _StubDetector(inline_executor))
    stub.hold = threading.Event()

    scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)
    assert scheduler.set_enabled("stub", False)
    assert scheduler.set_enabled("stub", True)
    assert stub.gate.state is S.ENABLED

    snap = scheduler.tick(make_frame(timestamp_ms=10.0), now_ms=10.0)
    assert "stub" not in snap.results
    assert scheduler.descriptor("stub").busy
    assert scheduler.stats("stub").skipped_busy == 1

    stub.hold.set()
    assert scheduler.drain(timeout=5.0)
    assert scheduler.stats("stub").discarded == 1
    assert scheduler.cache.get("stub") is None

    scheduler.tick(make_frame(timestamp_ms=20.0), now_ms=20.0)
    assert scheduler.drain(timeout=5.0)
    cached = scheduler.cache.get("stub", 20.0)
    assert cached is not None and cached.fresh
    assert stub.calls == [0.0, 20.0]
    assert stub.max_active == 1


class _DisableOnWrite(ResultCache):
    """Cache whose write races with a disable coming from another caller."""

    def __init__(self) -> None:
        super().__init__()
        self.scheduler: Optional[Scheduler] = None

    def put(self, name: str, result: DetectionResult) -> None:
        if self.scheduler is not None:
            self.scheduler.set_enabled(name, False)
        super().put(name, result)


def test_disable_during_cache_write_leaves_no_entry(
    inline_executor: Any, make_frame: Callable[..., Frame]
) -> None:
    scheduler = Scheduler(executor=inline_executor)
    cache = _DisableOnWrite()
    scheduler.cache = cache
    stub = _enabled(scheduler, _StubDetector(inline_executor))
    cache.scheduler = scheduler

    snap = scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)
    assert stub.gate.state is S.DISABLED
    assert scheduler.cache.get("stub") is None
    assert "stub" not in snap.results
    assert scheduler.stats("stub").discarded == 1

    cache.scheduler = None
    assert scheduler.set_enabled("stub", True)
    snap = scheduler.tick(make_frame(timestamp_ms=10.0), now_ms=10.0)
    assert snap.results["stub"].fresh


def test_late_gate_notification_keeps_first_result(
    threaded: Any, inline_executor: Any, make_frame: Callable[..., Frame]
) -> None:
    scheduler = Scheduler(executor=threaded)
    stub = _enabled(scheduler, _StubDetector(inline_executor))
    stub.hold = threading.Event()

    scheduler.tick(make_frame(timestamp_ms=0.0), now_ms=0.0)
    # the Enabled notification reaches the scheduler only after the dispatch
    scheduler._on_gate("stub", S.ENABLING, S.ENABLED, "model loaded")
    stub.hold.set()
    assert scheduler.drain(timeout=5.0)

    assert scheduler.stats("stub").discarded == 0
    cached = scheduler.cache.get("stub", 0.0)
    assert cached is not None and cached.fresh
    assert scheduler.descriptor("stub").epoch == stub.gate.epoch == 1
