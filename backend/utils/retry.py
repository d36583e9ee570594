# backend/utils/retry.py
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 2,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "call",
) -> T:
    """Run ``fn`` up to ``attempts`` times, retrying immediately on ``retry_on``.

    Only for idempotent gateway requests. The last error is re-raised.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts:
                raise
            logger.warning("%s failed (attempt %d/%d): %s", label, attempt, attempts, e)


async def acall_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 2,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "call",
) -> T:
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if attempt >= attempts:
                raise
            logger.warning("%s failed (attempt %d/%d): %s", label, attempt, attempts, e)
