"""
Retrying Executor

Runs one storage operation and retries it while the store reports a
busy/locked condition. Any other failure propagates on the first attempt.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .config import RetryConfig, get_config
from .exceptions import StoreBusyError

logger = logging.getLogger(__name__)

SQLITE_BUSY = 5
SQLITE_LOCKED = 6

Operation = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]

@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try a statement and how long to wait in between"""
    max_attempts: int = 3
    delay_seconds: float = 1.0
    backoff: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")
        if self.backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")

    @classmethod
    def from_config(cls, config: Optional[RetryConfig] = None) -> 'RetryPolicy':
        config = config or get_config().retry
        return cls(
            max_attempts=config.max_attempts,
            delay_seconds=config.delay_seconds,
            backoff=config.backoff
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt"""
        return self.delay_seconds * (self.backoff ** (attempt - 1))

def is_busy_error(error: BaseException) -> bool:
    """True when the store reports a conflicting writer holding it"""
    if not isinstance(error, sqlite3.OperationalError):
        return False
    code = getattr(error, 'sqlite_errorcode', None)
    if code is not None and (code & 0xFF) in (SQLITE_BUSY, SQLITE_LOCKED):
        return True
    message = str(error).lower()
    return 'database is locked' in message or 'database is busy' in message or 'database table is locked' in message

async def execute_with_retry(
    operation: Operation,
    policy: Optional[RetryPolicy] = None,
    *,
    description: str = "statement",
    sleep: Sleep = asyncio.sleep
) -> Any:
    """Await ``operation()`` until it succeeds, retrying only busy errors.

    Raises StoreBusyError once ``policy.max_attempts`` attempts all came back
    busy. The sleep function is injectable so tests do not wait for real.
    """
    policy = policy or RetryPolicy.from_config()
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not is_busy_error(e):
                raise
            if attempt >= policy.max_attempts:
                logger.error(f"Database still busy after {attempt} attempts for {description}, giving up")
                raise StoreBusyError(
                    f"Database busy after {attempt} attempts: {e}",
                    attempts=attempt,
                    details={"statement": description}
                ) from e
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Database is busy, retrying {description} in {delay * 1000:.0f}ms... "
                f"(attempt {attempt}/{policy.max_attempts})"
            )
            await sleep(delay)
