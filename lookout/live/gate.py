"""
Per-detector feature gate.

One small state machine decides whether the scheduler may dispatch a
detector::

    Disabled -> Enabling -> Enabled -> Disabling -> Disabled
    Enabling | Enabled -> Error          (load or runtime failure)
    Error -> Enabling                    (explicit retry)

Any other request (including "move to the state you are already in") is
rejected: ``transition`` returns False and the attempt is logged. Accepted
transitions land in a 50-entry ring buffer and are pushed to subscribers
after the gate's lock is released, so a slow or failing listener cannot
stall the caller.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, FrozenSet, List, Optional

from lookout.logging_config import log_event

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())
LOGGER.setLevel(logging.ERROR)

HISTORY_SIZE = 50


class FeatureGateState(str, Enum):
    DISABLED = "disabled"
    ENABLING = "enabling"
    ENABLED = "enabled"
    DISABLING = "disabling"
    ERROR = "error"


_VALID_TRANSITIONS: Dict[FeatureGateState, FrozenSet[FeatureGateState]] = {
    FeatureGateState.DISABLED: frozenset({FeatureGateState.ENABLING}),
    FeatureGateState.ENABLING: frozenset({FeatureGateState.ENABLED, FeatureGateState.ERROR}),
    FeatureGateState.ENABLED: frozenset({FeatureGateState.DISABLING, FeatureGateState.ERROR}),
    FeatureGateState.DISABLING: frozenset({FeatureGateState.DISABLED}),
    FeatureGateState.ERROR: frozenset({FeatureGateState.ENABLING}),
}


@dataclass(frozen=True)
class Transition:
    source: FeatureGateState
    target: FeatureGateState
    reason: str
    timestamp: float


GateListener = Callable[[str, FeatureGateState, FeatureGateState, str], None]


def is_valid_transition(source: FeatureGateState, target: FeatureGateState) -> bool:
    return target in _VALID_TRANSITIONS.get(source, frozenset())


class FeatureGate:
    """Thread-safe enable/disable state machine for one detector."""

    def __init__(self, name: str, *, history_size: int = HISTORY_SIZE) -> None:
        self.name = name
        self._state = FeatureGateState.DISABLED
        self._history: Deque[Transition] = deque(maxlen=max(1, int(history_size)))
        self._listeners: List[GateListener] = []
        self._lock = threading.Lock()
        self.last_error: Optional[str] = None
        self._epoch = 0

    @property
    def state(self) -> FeatureGateState:
        return self._state

    def is_enabled(self) -> bool:
        return self._state is FeatureGateState.ENABLED

    def is_changing(self) -> bool:
        return self._state in (FeatureGateState.ENABLING, FeatureGateState.DISABLING)

    @property
    def epoch(self) -> int:
        """Number of times the gate has entered Enabled."""
        return self._epoch

    def enabled_epoch(self) -> Optional[int]:
        """Current epoch while Enabled, else None; read atomically with the state."""
        with self._lock:
            return self._epoch if self._state is FeatureGateState.ENABLED else None

    def transition(
        self,
        target: FeatureGateState,
        reason: str = "",
        *,
        expect: Optional[FeatureGateState] = None,
    ) -> bool:
        """
        Move to ``target`` if the state machine allows it.

        ``expect`` makes the move conditional on the current state (a
        compare-and-set), which callers use when racing against other
        transitions, e.g. a load finishing after the user already gave up.
        """
        reason = reason or "no reason provided"
        with self._lock:
            source = self._state
            if expect is not None and source is not expect:
                accepted = False
            else:
                accepted = is_valid_transition(source, target)
            if accepted:
                self._state = target
                entry = Transition(source, target, reason, time.time())
                self._history.append(entry)
                if target is FeatureGateState.ERROR:
                    self.last_error = reason
                elif target is FeatureGateState.ENABLED:
                    self.last_error = None
                    self._epoch += 1
                listeners = list(self._listeners)
        if not accepted:
            log_event(
                LOGGER,
                "gate.transition.rejected",
                detector=self.name,
                source=source.value,
                target=target.value,
                reason=reason,
            )
            return False
        self._notify(listeners, source, target, reason)
        return True

    def _notify(
        self,
        listeners: List[GateListener],
        source: FeatureGateState,
        target: FeatureGateState,
        reason: str,
    ) -> None:
        for callback in listeners:
            try:
                callback(self.name, source, target, reason)
            except Exception as exc:
                log_event(
                    LOGGER,
                    "gate.listener.error",
                    detector=self.name,
                    error=type(exc).__name__,
                    message=str(exc),
                )

    def subscribe(self, callback: GateListener) -> None:
        with self._lock:
            if callback not in self._listeners:
                self._listeners.append(callback)

    def unsubscribe(self, callback: GateListener) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def history(self, limit: Optional[int] = None) -> List[Transition]:
        with self._lock:
            entries = list(self._history)
        if limit is not None:
            return entries[-max(0, int(limit)):] if limit > 0 else []
        return entries

    def summary(self, limit: int = 5) -> Dict[str, object]:
        return {
            "detector": self.name,
            "state": self._state.value,
            "last_error": self.last_error,
            "recent": [
                {
                    "from": t.source.value,
                    "to": t.target.value,
                    "reason": t.reason,
                    "timestamp": t.timestamp,
                }
                for t in self.history(limit)
            ],
        }

    def export(self) -> str:
        return json.dumps(self.summary(limit=HISTORY_SIZE), indent=2)
