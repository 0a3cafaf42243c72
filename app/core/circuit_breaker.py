from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

# Type alias for notification callback - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass
class CircuitBreaker:
    """
    Per-dependency failure state machine.

    is_available() is both the gate and the OPEN -> HALF_OPEN transition, so
    callers must use it as the single check before attempting the guarded
    call. Only the code that attempts the call records its outcome.
    """

    name: str
    failure_threshold: int = 5
    reset_timeout: float = 60.0  # seconds
    half_open_successes: int = 3
    on_state_change: Optional[StateChangeCallback] = None

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _last_success_time: datetime | None = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        """Return current state. Use is_available() for state transitions."""
        return self._state

    @property
    def failures(self) -> int:
        return self._failure_count

    def _notify(self, old_state: CircuitState) -> None:
        """Report a transition to the registered callback, if any."""
        if self.on_state_change is None:
            return
        try:
            self.on_state_change(self.name, old_state.value, self._state.value)
        except Exception as e:
            logger.error("Circuit breaker notification failed", circuit=self.name, error=str(e))

    def _recovery_elapsed(self) -> bool:
        """Must be called while holding self._lock."""
        if self._last_failure_time is None:
            return True
        elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
        return elapsed >= self.reset_timeout

    def is_available(self) -> bool:
        old_state = None
        with self._lock:
            if self._state == CircuitState.CLOSED:
                result = True
            elif self._state == CircuitState.OPEN:
                result = self._recovery_elapsed()
                if result:
                    old_state = self._state
                    self._state = CircuitState.HALF_OPEN
                    self._success_count = 0
                    logger.info("Circuit transition", circuit=self.name, transition="OPEN -> HALF_OPEN")
            else:  # HALF_OPEN lets trial calls through
                result = True
        # Notify outside lock so callbacks can read status
        if old_state is not None:
            self._notify(old_state)
        return result

    def record_success(self) -> None:
        old_state = None
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.half_open_successes:
                    old_state = self._state
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    self._success_count = 0
                    logger.info("Circuit transition", circuit=self.name, transition="HALF_OPEN -> CLOSED")
            else:
                self._failure_count = 0
            self._last_success_time = datetime.now(timezone.utc)
        if old_state is not None:
            self._notify(old_state)

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        old_state = None
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                old_state = self._state
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit transition",
                    circuit=self.name,
                    transition="HALF_OPEN -> OPEN",
                    reason="failure during recovery",
                    error=str(error) if error else None,
                )
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                old_state = self._state
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit transition",
                    circuit=self.name,
                    transition="CLOSED -> OPEN",
                    reason="threshold reached",
                    failures=self._failure_count,
                    error=str(error) if error else None,
                )
        if old_state is not None:
            self._notify(old_state)

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of breaker state. Never transitions OPEN -> HALF_OPEN."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                available = self._recovery_elapsed()
            else:
                available = True
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failure_count,
                "last_failure": self._last_failure_time.isoformat() if self._last_failure_time else None,
                "last_success": self._last_success_time.isoformat() if self._last_success_time else None,
                "is_available": available,
            }

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
        logger.info("Circuit reset", circuit=self.name)


class CircuitBreakerRegistry:
    """One breaker per dependency name, created on first use."""

    def __init__(self, on_state_change: Optional[StateChangeCallback] = None):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._on_state_change = on_state_change
        self._lock = Lock()

    def get(self, name: str, **kwargs) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                kwargs.setdefault("on_state_change", self._on_state_change)
                self._breakers[name] = CircuitBreaker(name=name, **kwargs)
            return self._breakers[name]

    def get_all_states(self) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in self._breakers.items()}

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: cb.get_status() for name, cb in self._breakers.items()}
