"""
Circuit breaker, retry and fallback handling shared by the reference clients.

One CircuitBreaker per remote service:
  closed    -> open       after CIRCUIT_FAILURE_THRESHOLD consecutive failures
  open      -> half_open  once CIRCUIT_RESET_TIMEOUT_S has elapsed
  half_open -> closed     after CIRCUIT_HALF_OPEN_SUCCESSES consecutive successes
  half_open -> open       on any failure (cooldown restarts)
While half-open at most CIRCUIT_HALF_OPEN_SUCCESSES trial calls are in flight;
further calls are refused as if the circuit were open.
"""
import asyncio
import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from config import (
    CIRCUIT_FAILURE_THRESHOLD, CIRCUIT_RESET_TIMEOUT_S, CIRCUIT_HALF_OPEN_SUCCESSES,
    RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY_S,
)
from errors import CircuitOpenError, FallbackUnavailableError, is_recoverable
from ttl_cache import TTLCache

logger = logging.getLogger(__name__)

ERROR_LOG_SIZE = 100
HEALTH_WINDOW_S = 5 * 60
HEALTHY_ERROR_LIMIT = 5


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(self, service: str,
                 failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
                 reset_timeout: float = CIRCUIT_RESET_TIMEOUT_S,
                 half_open_successes: int = CIRCUIT_HALF_OPEN_SUCCESSES,
                 clock: Callable[[], float] = time.time):
        self.service = service
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.trials_in_flight = 0
        self.last_failure_at: Optional[float] = None
        self.trips = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self):
        if self._state == CircuitState.OPEN and self.opened_at is not None:
            if self._clock() - self.opened_at >= self.reset_timeout:
                self._state = CircuitState.HALF_OPEN
                self.success_count = 0
                self.trials_in_flight = 0
                logger.info(f"[CircuitBreaker] {self.service} half-open, probing")

    def allow_request(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                return False
            if self._state == CircuitState.HALF_OPEN:
                if self.trials_in_flight >= self.half_open_successes:
                    return False
                self.trials_in_flight += 1
            return True

    def _release_trial(self):
        if self.trials_in_flight > 0:
            self.trials_in_flight -= 1

    def release(self):
        """End a call that neither proved nor disproved the service."""
        with self._lock:
            self._release_trial()

    def record_success(self):
        with self._lock:
            self._release_trial()
            if self._state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.half_open_successes:
                    self._state = CircuitState.CLOSED
                    self.success_count = 0
                    self.trials_in_flight = 0
                    logger.info(f"[CircuitBreaker] {self.service} closed")
            self.failure_count = 0

    def record_failure(self):
        with self._lock:
            self._release_trial()
            now = self._clock()
            self.last_failure_at = now
            self.failure_count += 1
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold
            ):
                self._state = CircuitState.OPEN
                self.opened_at = now
                self.success_count = 0
                self.trials_in_flight = 0
                self.trips += 1
                logger.warning(
                    f"[CircuitBreaker] {self.service} opened after {self.failure_count} failures"
                )

    def snapshot(self) -> Dict:
        state = self.state
        return {
            "state": state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "opened_at": self.opened_at,
            "last_failure_at": self.last_failure_at,
        }


@dataclass
class FallbackStrategy:
    """
    kind is one of:
      cache             - last stored value for cache_key, even if expired
      mock              - mock_data, or mock_data(error) when callable
      degraded_service  - generic medium-risk verdict asking for manual review
    """
    kind: str
    source: str = ""
    cache: Optional[TTLCache] = None
    cache_key: Optional[str] = None
    mock_data: Any = None
    confidence: float = 0.5


@dataclass
class BreakerResult:
    result: Any
    from_fallback: bool = False
    strategy: Optional[str] = None


def degraded_verdict(source: str, confidence: float = 0.5) -> Dict:
    return {
        "is_compatible": True,
        "risk_level": "medium",
        "notes": f"Service temporarily degraded - {source}. Manual review recommended.",
        "confidence": confidence,
        "degraded": True,
    }


class ResilienceService:
    def __init__(self,
                 failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
                 reset_timeout: float = CIRCUIT_RESET_TIMEOUT_S,
                 half_open_successes: int = CIRCUIT_HALF_OPEN_SUCCESSES,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 jitter: Callable[[], float] = random.random):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._error_log: Dict[str, Deque[Dict]] = {}
        self._lock = threading.Lock()
        self.metrics = {
            "total_errors": 0,
            "recovered_errors": 0,
            "circuit_breaker_trips": 0,
            "fallback_activations": 0,
        }

    def breaker(self, service: str) -> CircuitBreaker:
        with self._lock:
            if service not in self._breakers:
                self._breakers[service] = CircuitBreaker(
                    service,
                    failure_threshold=self.failure_threshold,
                    reset_timeout=self.reset_timeout,
                    half_open_successes=self.half_open_successes,
                    clock=self._clock,
                )
            return self._breakers[service]

    async def execute_with_circuit_breaker(self, service: str, operation: str,
                                           call: Callable[[], Awaitable[Any]],
                                           fallback: Optional[FallbackStrategy] = None) -> BreakerResult:
        """
        Run call() under the service's breaker.
        With a fallback configured, failures and open circuits resolve to the
        fallback value; without one the error propagates.
        """
        breaker = self.breaker(service)
        if not breaker.allow_request():
            error = CircuitOpenError(service)
            if fallback is None:
                raise error
            return self._apply_fallback(service, operation, fallback, error)

        try:
            result = await call()
        except Exception as e:
            self.log_error(service, operation, e)
            if is_recoverable(e):
                trips_before = breaker.trips
                breaker.record_failure()
                if breaker.trips > trips_before:
                    self.metrics["circuit_breaker_trips"] += 1
            else:
                breaker.release()
            if fallback is None:
                raise
            return self._apply_fallback(service, operation, fallback, e)

        breaker.record_success()
        return BreakerResult(result=result)

    async def execute_with_retry(self, operation: Callable[[], Awaitable[Any]],
                                 max_retries: int = RETRY_MAX_ATTEMPTS,
                                 base_delay: float = RETRY_BASE_DELAY_S,
                                 label: str = "operation") -> Any:
        """Retry recoverable failures with exponential backoff plus jitter."""
        attempt = 0
        while True:
            try:
                result = await operation()
            except Exception as e:
                if not is_recoverable(e) or attempt >= max_retries:
                    raise
                delay = base_delay * (2 ** attempt) + self._jitter() * base_delay
                logger.info(f"[Resilience] {label} failed ({e}), retry {attempt + 1} in {delay:.2f}s")
                await self._sleep(delay)
                attempt += 1
                continue
            if attempt > 0:
                self.metrics["recovered_errors"] += 1
            return result

    async def execute(self, service: str, operation: str,
                      call: Callable[[], Awaitable[Any]],
                      fallback: Optional[FallbackStrategy] = None,
                      max_retries: int = RETRY_MAX_ATTEMPTS,
                      base_delay: float = RETRY_BASE_DELAY_S) -> BreakerResult:
        """Breaker around a retried call; one exhausted retry sequence is one breaker failure."""
        async def retried():
            return await self.execute_with_retry(
                call, max_retries=max_retries, base_delay=base_delay,
                label=f"{service}.{operation}",
            )
        return await self.execute_with_circuit_breaker(service, operation, retried, fallback)

    def _apply_fallback(self, service: str, operation: str,
                        fallback: FallbackStrategy, error: Exception) -> BreakerResult:
        source = fallback.source or service
        if fallback.kind == "cache":
            cached = None
            if fallback.cache is not None and fallback.cache_key is not None:
                cached = fallback.cache.get_stale(fallback.cache_key)
            if cached is None:
                raise FallbackUnavailableError(
                    f"No cached data for {service}.{operation}"
                ) from error
            value = cached
        elif fallback.kind == "mock":
            value = fallback.mock_data(error) if callable(fallback.mock_data) else fallback.mock_data
        elif fallback.kind == "degraded_service":
            value = degraded_verdict(source, fallback.confidence)
        else:
            raise FallbackUnavailableError(f"Unknown fallback strategy: {fallback.kind}") from error

        self.metrics["fallback_activations"] += 1
        self.metrics["recovered_errors"] += 1
        logger.warning(f"[Resilience] {service}.{operation} using {fallback.kind} fallback: {error}")
        return BreakerResult(result=value, from_fallback=True, strategy=fallback.kind)

    def log_error(self, service: str, operation: str, error: Exception):
        entry = {
            "timestamp": self._clock(),
            "operation": operation,
            "error_type": type(error).__name__,
            "message": str(error),
        }
        with self._lock:
            log = self._error_log.setdefault(service, deque(maxlen=ERROR_LOG_SIZE))
            log.append(entry)
        self.metrics["total_errors"] += 1
        logger.error(f"[Resilience] {service}.{operation} failed: {type(error).__name__}: {error}")

    def service_health(self, service: str) -> Dict:
        breaker = self.breaker(service)
        now = self._clock()
        with self._lock:
            errors = list(self._error_log.get(service, []))
        recent = [e for e in errors if e["timestamp"] > now - HEALTH_WINDOW_S]
        state = breaker.state
        return {
            "service": service,
            "healthy": state == CircuitState.CLOSED and len(recent) < HEALTHY_ERROR_LIMIT,
            "circuit": breaker.snapshot(),
            "recent_errors": len(recent),
            "last_error": errors[-1] if errors else None,
        }

    def overall_metrics(self) -> Dict:
        with self._lock:
            services = list(self._breakers)
        return {
            **self.metrics,
            "services": {name: self.service_health(name) for name in services},
        }
