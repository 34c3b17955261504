"""
Reliability patterns for signalrelay.

Provides bounded retry with exponential backoff and health checking.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple, Type

import structlog
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)
# Standard logger for tenacity compatibility
retry_logger = logging.getLogger(__name__)


def bounded_retry(
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    retry_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
) -> Retrying:
    """
    Build a retry controller: ``max_attempts`` tries, waits of
    ``backoff_seconds``, then doubling (1s, 2s, 4s... by default).

    Exceptions in ``give_up_on`` are never retried even when they subclass
    one of ``retry_exceptions``. The last exception is re-raised once
    attempts are exhausted.
    """
    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_seconds, min=0, max=60),
        retry=retry_if_exception_type(retry_exceptions) & retry_if_not_exception_type(give_up_on),
        before_sleep=before_sleep_log(retry_logger, logging.WARNING),
        reraise=True,
    )


def retry_call(
    func: Callable[..., Any],
    *args,
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    retry_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    **kwargs,
) -> Any:
    """Call ``func`` under :func:`bounded_retry`."""
    for attempt in bounded_retry(max_attempts, backoff_seconds, retry_exceptions, give_up_on):
        with attempt:
            try:
                return func(*args, **kwargs)
            except retry_exceptions as e:
                if not isinstance(e, give_up_on):
                    logger.warning(
                        "Operation attempt failed",
                        function=getattr(func, "__name__", repr(func)),
                        attempt=attempt.retry_state.attempt_number,
                        max_attempts=max_attempts,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                raise


class HealthChecker:
    """Health checking for the store and the transport."""

    def __init__(self):
        self.checks: Dict[str, Callable] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable):
        """Register a health check function."""
        self.checks[name] = check_func

    def check_all(self) -> Dict[str, Dict[str, Any]]:
        """Run all registered health checks."""
        results = {}

        for name, check_func in self.checks.items():
            start_time = time.time()
            try:
                check_result = check_func()
                results[name] = {
                    "status": "healthy",
                    "response_time_ms": (time.time() - start_time) * 1000,
                    "details": check_result if isinstance(check_result, dict) else {},
                }
            except Exception as e:
                results[name] = {
                    "status": "unhealthy",
                    "response_time_ms": (time.time() - start_time) * 1000,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }

        self.last_results = results
        return results

    def is_healthy(self, service_name: Optional[str] = None) -> bool:
        """Check if service(s) are healthy."""
        if not self.last_results:
            self.check_all()

        if service_name:
            return self.last_results.get(service_name, {}).get("status") == "healthy"

        return all(result.get("status") == "healthy" for result in self.last_results.values())
