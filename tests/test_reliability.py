"""
Test suite for reliability patterns.

Validates bounded retry and health checking.
"""

from unittest.mock import Mock

import pytest

from signalrelay.core.exceptions import ClaimLostError, StoreError
from signalrelay.utils.reliability import HealthChecker, bounded_retry, retry_call


class TestRetryCall:
    """Test bounded retry behaviour."""

    def test_success_first_try(self):
        func = Mock(return_value="ok")

        assert retry_call(func, 1, key="v", backoff_seconds=0) == "ok"
        func.assert_called_once_with(1, key="v")

    def test_retries_until_success(self):
        func = Mock(side_effect=[StoreError("locked"), StoreError("locked"), "ok"])

        result = retry_call(func, max_attempts=3, backoff_seconds=0, retry_exceptions=(StoreError,))

        assert result == "ok"
        assert func.call_count == 3

    def test_reraises_after_exhaustion(self):
        func = Mock(side_effect=StoreError("locked"))

        with pytest.raises(StoreError):
            retry_call(func, max_attempts=2, backoff_seconds=0, retry_exceptions=(StoreError,))
        assert func.call_count == 2

    def test_other_exceptions_not_retried(self):
        func = Mock(side_effect=ValueError("bad"))

        with pytest.raises(ValueError):
            retry_call(func, max_attempts=3, backoff_seconds=0, retry_exceptions=(StoreError,))
        assert func.call_count == 1

    def test_give_up_on_subclass(self):
        func = Mock(side_effect=ClaimLostError(1, "sending"))

        with pytest.raises(ClaimLostError):
            retry_call(
                func,
                max_attempts=3,
                backoff_seconds=0,
                retry_exceptions=(StoreError,),
                give_up_on=(ClaimLostError,),
            )
        assert func.call_count == 1

    def test_backoff_doubles(self):
        retrying = bounded_retry(max_attempts=3, backoff_seconds=1.0)

        state = Mock()
        state.attempt_number = 1
        assert retrying.wait(state) == 1.0
        state.attempt_number = 2
        assert retrying.wait(state) == 2.0


class TestHealthChecker:
    """Test health checking functionality."""

    def test_health_checker_success(self):
        checker = HealthChecker()
        checker.register_check("store", lambda: {"status": "healthy", "backend": "sqlite"})

        results = checker.check_all()

        assert results["store"]["status"] == "healthy"
        assert results["store"]["details"]["backend"] == "sqlite"
        assert checker.is_healthy("store")

    def test_health_checker_failure(self):
        checker = HealthChecker()

        def failing_check():
            raise StoreError("unreachable")

        checker.register_check("store", failing_check)
        checker.register_check("transport", lambda: {"status": "healthy"})

        results = checker.check_all()

        assert results["store"]["status"] == "unhealthy"
        assert results["store"]["error_type"] == "StoreError"
        assert checker.is_healthy("transport")
        assert not checker.is_healthy()
