"""
Circuit breaker in front of the durable store.

After failure_threshold consecutive transient failures the breaker opens and
events fail fast with CircuitBreakerOpenError (the pipeline backs off, the
broker redelivers). Once recovery_timeout has passed calls are let through as
probes; success_threshold successful probes close it again, one failed probe
reopens it.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, Union

logger = logging.getLogger(__name__)

ExceptionTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """The store is considered down; retry after `retry_after` seconds."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker [{name}] is OPEN; retry after {retry_after:.1f}s")


class CircuitBreaker:

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: ExceptionTypes = Exception,
        success_threshold: int = 2,
        name: str = "circuit_breaker",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.success_threshold = success_threshold
        self.name = name
        self._clock = clock
        self._lock = asyncio.Lock()
        self.reset()
        self.total_requests = 0
        self.total_failures = 0
        self.total_rejected = 0

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None

    def retry_after(self) -> float:
        """Seconds until an open breaker lets a probe through (0 when not open)."""
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self.opened_at))

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        self.success_count = 0

    async def _admit(self) -> None:
        async with self._lock:
            self.total_requests += 1
            if self.state != CircuitState.OPEN:
                return
            wait = self.retry_after()
            if wait > 0:
                self.total_rejected += 1
                raise CircuitBreakerOpenError(self.name, wait)
            logger.info("[%s] Recovery timeout elapsed, probing store (HALF_OPEN)", self.name)
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0

    async def _on_success(self) -> None:
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count < self.success_threshold:
                    return
                logger.info("[%s] Store recovered -> CLOSED", self.name)
                self.state = CircuitState.CLOSED
                self.success_count = 0
            self.failure_count = 0

    async def _on_failure(self, error: BaseException) -> None:
        async with self._lock:
            self.total_failures += 1
            if self.state == CircuitState.HALF_OPEN:
                logger.warning("[%s] Probe failed -> OPEN: %s", self.name, error)
                self._open()
                return
            self.failure_count += 1
            if self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                logger.error(
                    "[%s] %d consecutive failures -> OPEN for %.0fs. Last error: %s",
                    self.name, self.failure_count, self.recovery_timeout, error,
                )
                self._open()

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run func through the breaker; raises CircuitBreakerOpenError without calling it while open."""
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.expected_exception as e:
            await self._on_failure(e)
            raise
        await self._on_success()
        return result

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "retry_after": round(self.retry_after(), 1),
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
            "total_rejected": self.total_rejected,
        }
