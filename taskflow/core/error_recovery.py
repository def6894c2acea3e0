"""Retry policies and component health checks.

Task nodes derive their backoff from ``RetryConfig.for_task``; the SQL
workflow store wraps each transaction in ``with_retry`` so that a locked or
briefly unavailable database does not fail an API call outright. The
``HealthChecker`` backs the detailed and readiness health endpoints.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional, Sequence, Type

from .exceptions import StorageError, TransientError, WorkflowEngineError
from .logging import ErrorRecoveryLogger, get_logger


logger = get_logger(__name__)


class RetryConfig:
    """Exponential backoff policy: attempt ``n`` waits ``base_delay * exponential_base ** (n - 1)``."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Sequence[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or (TransientError, StorageError))

    @classmethod
    def for_task(cls, max_retries: int, backoff: float, max_delay: float = 3600.0) -> "RetryConfig":
        """Policy for a task node: the first attempt plus ``max_retries`` re-offers, without jitter."""
        return cls(max_attempts=max_retries + 1, base_delay=backoff, max_delay=max_delay, jitter=False)

    def is_retryable(self, exception: Exception) -> bool:
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        return isinstance(exception, self.retryable_exceptions)

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        return attempt < self.max_attempts and self.is_retryable(exception)

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds after the given (1-based) failed attempt."""
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay


def with_retry(config: Optional[RetryConfig] = None, sleep: Callable[[float], None] = time.sleep):
    """Retry the decorated call while it raises recoverable errors."""
    policy = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        operation = func.__qualname__
        recovery_logger = ErrorRecoveryLogger(func.__module__.rsplit(".", 1)[-1])

        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    if not policy.should_retry(e, attempt):
                        if policy.is_retryable(e):
                            recovery_logger.log_recovery_failure(operation, e, attempt)
                        raise
                    recovery_logger.log_recovery_attempt(operation, e, attempt, policy.max_attempts)
                    sleep(policy.get_delay(attempt))
                    attempt += 1
                    continue
                if attempt > 1:
                    recovery_logger.log_recovery_success(operation, attempt)
                return result

        return wrapper

    return decorator


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class HealthCheck:
    name: str
    func: Callable[[], Any]
    timeout: float


class HealthChecker:
    """
    Runs registered component checks.

    A check may be a plain or an async callable. It passes by returning (a
    string becomes the message, a dict is merged into the result) and fails
    by raising. Async checks are bounded by their timeout.
    """

    def __init__(self):
        self._checks: Dict[str, HealthCheck] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable[[], Any], timeout: float = 5.0) -> None:
        self._checks[name] = HealthCheck(name=name, func=check_func, timeout=timeout)
        logger.debug(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        check = self._checks.get(name)
        if check is None:
            return {"status": "error", "message": f"Health check '{name}' not found", "timestamp": _utc_timestamp()}

        started = time.perf_counter()
        try:
            if asyncio.iscoroutinefunction(check.func):
                outcome = await asyncio.wait_for(check.func(), timeout=check.timeout)
            else:
                outcome = check.func()
        except asyncio.TimeoutError:
            result = {"status": "timeout", "message": f"Health check timed out after {check.timeout}s"}
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {str(e)}")
            result = {"status": "unhealthy", "message": str(e), "error_type": type(e).__name__}
        else:
            result = {"status": "healthy", "message": "Check passed"}
            if isinstance(outcome, dict):
                result.update(outcome)
            elif isinstance(outcome, str):
                result["message"] = outcome

        result["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        result["timestamp"] = _utc_timestamp()
        self.last_results[name] = result
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        names = list(self._checks)
        outcomes = await asyncio.gather(*(self.run_check(name) for name in names))
        results = dict(zip(names, outcomes))
        healthy = all(result["status"] == "healthy" for result in outcomes)
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": _utc_timestamp()
        }
