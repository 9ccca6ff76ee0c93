import asyncio
import sqlite3

import pytest

from ehr_explorer.config import RetryConfig
from ehr_explorer.exceptions import StoreBusyError
from ehr_explorer.retry import RetryPolicy, execute_with_retry, is_busy_error

def _busy() -> sqlite3.OperationalError:
    return sqlite3.OperationalError("database is locked")

class FlakyOperation:
    """Reports busy for the first ``failures`` calls, then returns ``result``"""

    def __init__(self, failures: int, result="ok", error_factory=_busy):
        self.failures = failures
        self.result = result
        self.error_factory = error_factory
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return self.result

class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)

class TestRetryPolicy:
    """Test retry policy settings"""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.delay_seconds == 1.0
        assert policy.delay_for(1) == 1.0
        assert policy.delay_for(3) == 1.0

    def test_backoff_delays(self):
        policy = RetryPolicy(max_attempts=4, delay_seconds=0.5, backoff=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_from_config(self):
        policy = RetryPolicy.from_config(RetryConfig(max_attempts=5, delay_seconds=0.25, backoff=1.5))
        assert policy == RetryPolicy(max_attempts=5, delay_seconds=0.25, backoff=1.5)

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"delay_seconds": -1},
        {"backoff": 0.5},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

class TestIsBusyError:
    """Test busy/locked detection"""

    def test_locked_message(self):
        assert is_busy_error(sqlite3.OperationalError("database is locked"))

    def test_table_locked_message(self):
        assert is_busy_error(sqlite3.OperationalError("database table is locked: patients"))

    def test_error_code(self):
        error = sqlite3.OperationalError("something")
        error.sqlite_errorcode = 5
        assert is_busy_error(error)

    def test_extended_error_code(self):
        error = sqlite3.OperationalError("something")
        error.sqlite_errorcode = 517  # SQLITE_BUSY_SNAPSHOT
        assert is_busy_error(error)

    def test_other_errors(self):
        assert not is_busy_error(sqlite3.OperationalError("no such table: patients"))
        assert not is_busy_error(sqlite3.IntegrityError("FOREIGN KEY constraint failed"))
        assert not is_busy_error(ValueError("database is locked"))

class TestExecuteWithRetry:
    """Test retrying a single store operation"""

    def setup_method(self):
        self.sleep = RecordingSleep()
        self.policy = RetryPolicy(max_attempts=3, delay_seconds=1.0)

    def test_success_first_attempt(self):
        operation = FlakyOperation(failures=0)
        result = asyncio.run(execute_with_retry(operation, self.policy, sleep=self.sleep))
        assert result == "ok"
        assert operation.calls == 1
        assert self.sleep.delays == []

    @pytest.mark.parametrize("attempts", [2, 3])
    def test_busy_then_success(self, attempts):
        """N-1 busy results followed by success returns after N attempts"""
        operation = FlakyOperation(failures=attempts - 1)
        result = asyncio.run(execute_with_retry(operation, self.policy, sleep=self.sleep))
        assert result == "ok"
        assert operation.calls == attempts
        assert self.sleep.delays == [1.0] * (attempts - 1)

    def test_exhausted_retries_raise_store_busy(self):
        operation = FlakyOperation(failures=10)

        with pytest.raises(StoreBusyError) as exc_info:
            asyncio.run(execute_with_retry(operation, self.policy, description="COMMIT", sleep=self.sleep))

        assert operation.calls == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.details["statement"] == "COMMIT"
        assert exc_info.value.error_code == "STORE_BUSY"
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        # No sleep after the final attempt
        assert self.sleep.delays == [1.0, 1.0]

    def test_non_busy_error_is_not_retried(self):
        operation = FlakyOperation(failures=1, error_factory=lambda: sqlite3.IntegrityError("NOT NULL constraint failed"))

        with pytest.raises(sqlite3.IntegrityError):
            asyncio.run(execute_with_retry(operation, self.policy, sleep=self.sleep))

        assert operation.calls == 1
        assert self.sleep.delays == []

    def test_backoff_applied_between_attempts(self):
        policy = RetryPolicy(max_attempts=4, delay_seconds=0.1, backoff=3.0)
        operation = FlakyOperation(failures=3)

        asyncio.run(execute_with_retry(operation, policy, sleep=self.sleep))

        assert self.sleep.delays == pytest.approx([0.1, 0.3, 0.9])

    def test_single_attempt_policy(self):
        operation = FlakyOperation(failures=1)
        with pytest.raises(StoreBusyError) as exc_info:
            asyncio.run(execute_with_retry(operation, RetryPolicy(max_attempts=1), sleep=self.sleep))
        assert exc_info.value.attempts == 1
