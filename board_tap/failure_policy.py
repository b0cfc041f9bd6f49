from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
import logging
import threading
import time

from board_tap.pipeline import Status


@dataclass
class FailureState:
    consecutive_failures: int = 0
    next_allowed_attempt: float = 0.0
    backoff_s: float = 0.0
    total_failures: int = 0
    last_status: Status | None = None


class FailurePolicy:
    """Tracks consecutive failures per module and gates retries.

    Up to ``threshold`` consecutive failures are retried on the normal
    schedule. Each failure beyond that doubles the wait before the next
    attempt, starting at the module interval and capped at
    ``min(max_backoff_factor * interval, max_backoff_s)`` but never below the
    interval itself. A single success clears the backoff. Modules are never
    disabled here.
    """

    def __init__(
        self,
        threshold: int = 3,
        max_backoff_s: float = 600.0,
        max_backoff_factor: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = max(0, threshold)
        self.max_backoff_s = max_backoff_s
        self.max_backoff_factor = max_backoff_factor
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._states: dict[str, FailureState] = {}

    def backoff_for(self, consecutive_failures: int, interval_s: float) -> float:
        excess = consecutive_failures - self.threshold
        if excess <= 0:
            return 0.0
        cap = max(interval_s, min(self.max_backoff_factor * interval_s, self.max_backoff_s))
        # Bound the exponent so long outages cannot overflow the float.
        return min(interval_s * 2 ** min(excess - 1, 32), cap)

    def record_result(self, module_id: str, status: Status, interval_s: float) -> FailureState:
        now = self.clock()
        with self._lock:
            state = self._states.setdefault(module_id, FailureState())
            state.last_status = status
            if status is Status.SUCCESS:
                if state.consecutive_failures > self.threshold:
                    self.logger.info(
                        "Module %s recovered after %s consecutive failures",
                        module_id,
                        state.consecutive_failures,
                    )
                state.consecutive_failures = 0
                state.backoff_s = 0.0
                state.next_allowed_attempt = 0.0
                return replace(state)

            state.consecutive_failures += 1
            state.total_failures += 1
            state.backoff_s = self.backoff_for(state.consecutive_failures, interval_s)
            if state.backoff_s > 0:
                state.next_allowed_attempt = now + state.backoff_s
                self.logger.info(
                    "Module %s failed %s times in a row (%s); next attempt in %.0fs",
                    module_id,
                    state.consecutive_failures,
                    status,
                    state.backoff_s,
                )
            return replace(state)

    def should_attempt(self, module_id: str) -> bool:
        with self._lock:
            state = self._states.get(module_id)
            return state is None or state.next_allowed_attempt <= self.clock()

    def retry_in(self, module_id: str) -> float:
        """Seconds until the module may be attempted again; 0 when it may now."""
        with self._lock:
            state = self._states.get(module_id)
            if state is None:
                return 0.0
            return max(0.0, state.next_allowed_attempt - self.clock())

    def state(self, module_id: str) -> FailureState:
        with self._lock:
            return replace(self._states.get(module_id) or FailureState())

    def states(self) -> dict[str, FailureState]:
        with self._lock:
            return {module_id: replace(state) for module_id, state in self._states.items()}

    def reset(self, module_id: str) -> None:
        with self._lock:
            self._states.pop(module_id, None)
