import asyncio
from typing import Awaitable, Callable, TypeVar

from converty.errors import StoreError
from converty.utils.logger import get_logger

logger = get_logger("retry")

T = TypeVar("T")


async def retry_store_operation(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    description: str,
    max_delay: float = 30.0,
) -> T:
    """
    Run a store operation, retrying StoreError with exponential backoff.

    Retries the operation only; callers decide what a final StoreError means.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except StoreError as exc:
            if attempt >= attempts:
                raise
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            logger.warning(
                "store.retry",
                extra={
                    "operation": description,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": str(exc)[:500],
                },
            )
            await asyncio.sleep(delay)
    raise StoreError(f"{description}: no attempts made")
