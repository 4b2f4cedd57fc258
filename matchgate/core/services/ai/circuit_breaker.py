"""Circuit breaker for provider resilience."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitStatus(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class Decision(str, Enum):
    PROCEED = "PROCEED"
    PROCEED_AS_PROBE = "PROCEED_AS_PROBE"
    REJECT = "REJECT"


@dataclass
class CircuitState:
    status: CircuitStatus = CircuitStatus.CLOSED
    failure_events: Deque[float] = field(default_factory=deque)
    opened_at: Optional[float] = None
    half_open_probes_in_flight: int = 0
    last_reason: str = ""


class CircuitBreaker:
    """Thread-safe circuit breaker keyed by provider endpoint.

    OPEN -> HALF_OPEN happens lazily inside ``allow`` once ``open_seconds``
    have elapsed; there is no background timer.
    """

    def __init__(
        self,
        *,
        failures_threshold: int = 5,
        window_seconds: float = 60.0,
        open_seconds: float = 30.0,
        half_open_max_probes: int = 1,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failures_threshold = max(1, int(failures_threshold))
        self._window_seconds = max(0.001, float(window_seconds))
        self._open_seconds = max(0.0, float(open_seconds))
        self._half_open_max_probes = max(1, int(half_open_max_probes))
        self._time_fn = time_fn
        self._lock = threading.RLock()
        self._states: Dict[str, CircuitState] = {}

    def _state(self, endpoint: str) -> CircuitState:
        return self._states.setdefault(str(endpoint), CircuitState())

    def _trim_failures(self, state: CircuitState, now: float) -> None:
        cutoff = now - self._window_seconds
        while state.failure_events and state.failure_events[0] < cutoff:
            state.failure_events.popleft()

    def _open(self, endpoint: str, state: CircuitState, now: float) -> None:
        state.status = CircuitStatus.OPEN
        state.opened_at = now
        logger.error(
            "circuit OPEN for %s (recent_failures=%d reason=%s)",
            endpoint,
            len(state.failure_events),
            state.last_reason or "-",
        )

    def allow(self, endpoint: str) -> Decision:
        """Decide whether a call to ``endpoint`` may go out."""
        now = self._time_fn()
        with self._lock:
            state = self._state(endpoint)
            self._trim_failures(state, now)

            if state.status == CircuitStatus.CLOSED:
                return Decision.PROCEED

            if state.status == CircuitStatus.OPEN:
                opened_at = state.opened_at if state.opened_at is not None else now
                if now - opened_at < self._open_seconds:
                    return Decision.REJECT
                if state.half_open_probes_in_flight >= self._half_open_max_probes:
                    return Decision.REJECT
                state.status = CircuitStatus.HALF_OPEN
                state.half_open_probes_in_flight += 1
                logger.warning("circuit HALF_OPEN for %s, sending probe", endpoint)
                return Decision.PROCEED_AS_PROBE

            if state.half_open_probes_in_flight < self._half_open_max_probes:
                state.half_open_probes_in_flight += 1
                return Decision.PROCEED_AS_PROBE
            return Decision.REJECT

    def record_success(self, endpoint: str, *, probe: Optional[bool] = None) -> None:
        now = self._time_fn()
        with self._lock:
            state = self._state(endpoint)
            is_probe = state.status == CircuitStatus.HALF_OPEN if probe is None else bool(probe)
            if is_probe and state.status == CircuitStatus.HALF_OPEN:
                state.status = CircuitStatus.CLOSED
                state.failure_events.clear()
                state.opened_at = None
                state.half_open_probes_in_flight = max(0, state.half_open_probes_in_flight - 1)
                state.last_reason = ""
                logger.info("circuit CLOSED for %s (recovered)", endpoint)
                return
            if is_probe:
                state.half_open_probes_in_flight = max(0, state.half_open_probes_in_flight - 1)
            self._trim_failures(state, now)

    def record_failure(self, endpoint: str, *, probe: Optional[bool] = None, reason: str = "") -> None:
        now = self._time_fn()
        with self._lock:
            state = self._state(endpoint)
            state.last_reason = str(reason or "")[:160]
            is_probe = state.status == CircuitStatus.HALF_OPEN if probe is None else bool(probe)

            state.failure_events.append(now)
            self._trim_failures(state, now)

            if is_probe:
                state.half_open_probes_in_flight = max(0, state.half_open_probes_in_flight - 1)
                if state.status == CircuitStatus.HALF_OPEN:
                    self._open(endpoint, state, now)
                return

            if state.status == CircuitStatus.CLOSED and len(state.failure_events) >= self._failures_threshold:
                self._open(endpoint, state, now)

    def status(self, endpoint: str) -> CircuitStatus:
        with self._lock:
            return self._state(endpoint).status

    def seconds_until_probe(self, endpoint: str) -> float:
        now = self._time_fn()
        with self._lock:
            state = self._state(endpoint)
            if state.status != CircuitStatus.OPEN or state.opened_at is None:
                return 0.0
            return max(0.0, self._open_seconds - (now - state.opened_at))

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        now = self._time_fn()
        with self._lock:
            payload: Dict[str, Dict[str, object]] = {}
            for endpoint, state in sorted(self._states.items()):
                self._trim_failures(state, now)
                payload[endpoint] = {
                    "status": state.status.value,
                    "recent_failures": len(state.failure_events),
                    "opened_seconds_ago": None if state.opened_at is None else round(now - state.opened_at, 3),
                    "seconds_until_probe": self.seconds_until_probe(endpoint),
                    "probes_in_flight": state.half_open_probes_in_flight,
                    "last_reason": state.last_reason or None,
                }
            return payload
