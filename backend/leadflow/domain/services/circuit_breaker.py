"""
Circuit Breaker
Wraps every external capability call (text generation, channel delivery,
handover destinations).

States:
- CLOSED: calls pass through; failures inside a rolling window are
  counted and reaching the threshold opens the breaker. The failure is
  still raised to the caller as DependencyError.
- OPEN: calls short-circuit to the fallback for the cool-down period.
  Never raises.
- HALF_OPEN: exactly one trial call is let through. Success closes the
  breaker with reset counters, failure re-opens it. Concurrent callers
  get the fallback while the trial is in flight.

A call that exceeds call_timeout_seconds counts as a failure.
"""
import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar, Union

from pydantic import BaseModel, Field

from leadflow.core.exceptions import DependencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerConfig(BaseModel):
    """Per-dependency breaker settings"""
    failure_threshold: int = Field(default=5, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)
    cooldown_seconds: float = Field(default=30.0, ge=0)
    call_timeout_seconds: Optional[float] = Field(default=10.0, gt=0)


class CircuitBreaker:
    """Breaker for a single named dependency"""

    def __init__(
        self,
        name: str,
        config: Optional[BreakerConfig] = None,
        time_func: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._time = time_func

        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

        # Stats
        self._total_calls = 0
        self._total_failures = 0
        self._total_short_circuits = 0

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN cool-down reads as HALF_OPEN."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    def _cooldown_elapsed(self) -> bool:
        return (
            self._opened_at is not None
            and self._time() - self._opened_at >= self.config.cooldown_seconds
        )

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        fallback: Union[Callable[[], T], T, None] = None
    ) -> T:
        """
        Run func through the breaker.

        Args:
            func: Zero-argument coroutine factory for the external call
            fallback: Value (or zero-argument callable producing it)
                returned while the breaker is open

        Returns:
            func's result, or the fallback when short-circuited

        Raises:
            DependencyError: func failed or timed out while CLOSED or
                during the HALF_OPEN trial
        """
        if self._state == CircuitState.OPEN:
            if not self._cooldown_elapsed():
                return self._short_circuit(fallback)
            self._transition(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                return self._short_circuit(fallback)
            self._trial_in_flight = True

        self._total_calls += 1
        try:
            if self.config.call_timeout_seconds:
                result = await asyncio.wait_for(func(), timeout=self.config.call_timeout_seconds)
            else:
                result = await func()
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception as e:
            self._on_failure()
            if isinstance(e, asyncio.TimeoutError):
                message = f"timed out after {self.config.call_timeout_seconds}s"
            else:
                message = str(e) or type(e).__name__
            raise DependencyError(self.name, message, {"breaker_state": self._state.value}) from e

        self._on_success()
        return result

    def _short_circuit(self, fallback: Union[Callable[[], Any], Any, None]) -> Any:
        self._total_short_circuits += 1
        logger.debug(f"Breaker {self.name} short-circuited ({self._state.value})")
        return fallback() if callable(fallback) else fallback

    def _on_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            logger.info(f"Breaker {self.name} trial succeeded, closing")
            self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        now = self._time()
        self._total_failures += 1

        if self._state == CircuitState.HALF_OPEN:
            logger.warning(f"Breaker {self.name} trial failed, re-opening")
            self._open(now)
            return

        self._failures.append(now)
        self._prune(now)
        if len(self._failures) >= self.config.failure_threshold:
            logger.warning(
                f"Breaker {self.name} opening after {len(self._failures)} failures "
                f"in {self.config.window_seconds}s"
            )
            self._open(now)

    def _prune(self, now: float) -> None:
        horizon = now - self.config.window_seconds
        while self._failures and self._failures[0] < horizon:
            self._failures.popleft()

    def _open(self, now: float) -> None:
        self._transition(CircuitState.OPEN)
        self._opened_at = now

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        logger.info(f"Breaker {self.name}: {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._trial_in_flight = False
        if new_state == CircuitState.CLOSED:
            self._failures.clear()
            self._opened_at = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "recent_failures": len(self._failures),
            "total_calls": self._total_calls,
            "total_failures": self._total_failures,
            "total_short_circuits": self._total_short_circuits,
        }


class BreakerRegistry:
    """
    Owns one breaker per dependency name.

    Names are dotted: "llm", "channel.email", "handover.crm".
    """

    def __init__(self, config_manager=None, time_func: Callable[[], float] = time.monotonic):
        self._config_manager = config_manager
        self._time = time_func
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._overrides: Dict[str, BreakerConfig] = {}

    def configure(self, name: str, config: BreakerConfig) -> None:
        """Override settings for one dependency (before or after creation)."""
        self._overrides[name] = config
        if name in self._breakers:
            self._breakers[name].config = config

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self._config_for(name), time_func=self._time)
            self._breakers[name] = breaker
        return breaker

    def _config_for(self, name: str) -> BreakerConfig:
        if name in self._overrides:
            return self._overrides[name]
        if self._config_manager is not None:
            return BreakerConfig(**self._config_manager.get_breaker_settings(name))
        return BreakerConfig()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}
