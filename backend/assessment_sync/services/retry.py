"""
Bounded retry with linear backoff.
Every network call in the sync engine goes through here so retry policy lives in one place.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..core.config import settings
from ..core.exceptions import MalformedResponseError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (TransientNetworkError,)


class RetryEngine:
    """
    Retry transient failures, waiting ``base_delay * attempt`` between attempts.

    Non-transient errors propagate on the first occurrence. When attempts run
    out, the last transient error is raised to the caller.
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        transient: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts if max_attempts is not None else settings.SUBMIT_MAX_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.RETRY_BASE_DELAY
        self.transient = transient
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        label: str = "operation",
    ) -> T:
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        delay = base_delay if base_delay is not None else self.base_delay
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except self.transient as exc:
                if isinstance(exc, MalformedResponseError):
                    logger.warning(
                        "%s returned a malformed response (attempt %d/%d): %s",
                        label, attempt, attempts, exc,
                    )
                else:
                    logger.warning(
                        "%s failed transiently (attempt %d/%d): %s",
                        label, attempt, attempts, exc,
                    )
                if attempt == attempts:
                    raise
                await self._sleep(delay * attempt)

        raise AssertionError("unreachable")


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    base_delay: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Functional shorthand for a one-off RetryEngine."""
    return await RetryEngine(max_attempts, base_delay, sleep=sleep).run(operation)
