"""Bounded retry with increasing delay for calls against remote collaborators."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from pydantic import BaseModel

from cblock.errors import ErrorClass, TransientInfraError

log = structlog.get_logger()

T = TypeVar("T")


class RetryPolicy(BaseModel):
    max_retries: int = 3
    retryable: frozenset[ErrorClass] = frozenset(
        {ErrorClass.NETWORK, ErrorClass.TIMEOUT, ErrorClass.SERVER}
    )
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``."""
        return min(self.base_delay * (self.backoff_factor**attempt), self.max_delay)


def classify_error(error: BaseException) -> ErrorClass | None:
    """Map a failure onto an ErrorClass, or None if it is not transient."""
    if isinstance(error, TransientInfraError):
        return error.error_class
    if isinstance(error, TimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorClass.NETWORK
    return None


class RetryExecutor:
    """Run an async operation, retrying classified transient failures.

    Non-retryable failures and the last failure after ``max_retries`` extra
    attempts propagate to the caller unchanged.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def policy(
        self, max_retries: int, retryable: set[ErrorClass] | frozenset[ErrorClass]
    ) -> RetryPolicy:
        """Build a policy that uses this executor's delay bounds."""
        return RetryPolicy(
            max_retries=max_retries,
            retryable=frozenset(retryable),
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        *,
        name: str = "operation",
    ) -> T:
        policy = policy or RetryPolicy(base_delay=self.base_delay, max_delay=self.max_delay)
        attempt = 0
        while True:
            try:
                result = await operation()
            except Exception as e:
                error_class = classify_error(e)
                if error_class is None or error_class not in policy.retryable:
                    raise
                if attempt >= policy.max_retries:
                    log.warning(
                        "retries_exhausted",
                        operation=name,
                        attempts=attempt + 1,
                        error_class=error_class.value,
                        error=str(e),
                    )
                    raise
                delay = policy.delay_for(attempt)
                log.info(
                    "retrying_operation",
                    operation=name,
                    attempt=attempt + 1,
                    max_retries=policy.max_retries,
                    delay=delay,
                    error_class=error_class.value,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if attempt > 0:
                log.info("operation_recovered", operation=name, retries=attempt)
            return result
