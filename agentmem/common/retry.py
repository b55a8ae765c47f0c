"""Retry handler with exponential backoff for connection attempts."""

import asyncio
import inspect
import random
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger("retry_handler")


class RetryConfig:
    """Configuration for retry behavior.

    ``give_up_exceptions`` are re-raised immediately even when they also match
    ``retryable_exceptions`` (e.g. a dimension mismatch reported while
    connecting is a caller bug, not a transient failure).
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        min_delay: float = 0.1,
        retryable_exceptions: tuple = (Exception,),
        give_up_exceptions: tuple = ()
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.min_delay = min_delay
        self.retryable_exceptions = retryable_exceptions
        self.give_up_exceptions = give_up_exceptions


class RetryHandler:
    """Handles retry logic with exponential backoff."""

    def __init__(self, config: RetryConfig):
        self.config = config

    async def execute_with_retry(
        self,
        func: Callable,
        *args,
        operation_name: str = "unknown",
        timeout: Optional[float] = None,
        **kwargs
    ) -> Any:
        """Execute ``func`` until it succeeds or attempts run out.

        Parameters
        - func: Sync or async callable
        - operation_name: Label used in retry logs
        - timeout: Per-attempt timeout in seconds (async callables only)
        """
        last_exception = None

        for attempt in range(self.config.max_attempts):
            try:
                result = await self._invoke(func, args, kwargs, timeout)

                if attempt > 0:
                    logger.info(
                        "Operation succeeded after retry",
                        operation=operation_name,
                        attempt=attempt + 1,
                        total_attempts=self.config.max_attempts
                    )

                return result

            except self.config.give_up_exceptions:
                raise

            except self.config.retryable_exceptions as e:
                last_exception = e

                if attempt == self.config.max_attempts - 1:
                    logger.error(
                        "Operation failed after all retries",
                        operation=operation_name,
                        attempts=self.config.max_attempts,
                        error=str(e) or type(e).__name__
                    )
                    raise

                delay = self._calculate_delay(attempt)

                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt + 1,
                    total_attempts=self.config.max_attempts,
                    delay_seconds=delay,
                    error=str(e) or type(e).__name__
                )

                await asyncio.sleep(delay)

        # Unreachable while max_attempts >= 1
        raise RuntimeError("Retry logic error") from last_exception

    async def _invoke(self, func: Callable, args: tuple, kwargs: dict, timeout: Optional[float]) -> Any:
        if inspect.iscoroutinefunction(func):
            if timeout is not None:
                return await asyncio.wait_for(func(*args, **kwargs), timeout)
            return await func(*args, **kwargs)
        return func(*args, **kwargs)

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        # Exponential backoff: base_delay * (exponential_base ^ attempt)
        delay = self.config.base_delay * (self.config.exponential_base ** attempt)

        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            jitter_range = delay * 0.1
            delay += random.uniform(-jitter_range, jitter_range)

        return max(delay, self.config.min_delay)
