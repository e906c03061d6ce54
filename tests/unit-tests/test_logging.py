from __future__ import annotations

import logging

import pytest

from lookout.logging_config import log_event

LOGGER = logging.getLogger("lookout.test")


def test_routine_events_are_dropped(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR, logger="lookout.test"):
        assert log_event(LOGGER, "scheduler.tick", detector="detect") is False
        assert log_event(LOGGER, "detector.loaded", reason="ok") is False
    assert caplog.records == []


def test_problem_events_are_written_with_sorted_fields(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR, logger="lookout.test"):
        assert log_event(LOGGER, "gate.transition.rejected", target="enabled", detector="depth")
        assert log_event(LOGGER, "runtime.provider.fallback", error="OSError", extra=None)
    messages = [r.getMessage() for r in caplog.records]
    assert messages == [
        "gate.transition.rejected detector=depth target=enabled",
        "runtime.provider.fallback error=OSError",
    ]
