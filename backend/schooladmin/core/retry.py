"""
Retry helper for storage operations.

Only transient engine faults are retried. Each attempt opens a new session
from the provider's current handle, and the handle is recreated before the
next attempt, so a crashed connection pool is never reused.
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.core.database import StorageHandleProvider, is_transient_storage_fault

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_storage_operation(
    storage: StorageHandleProvider,
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 0.2,
) -> T:
    """
    Run ``operation`` with a fresh session, retrying transient storage faults.

    Args:
        storage: Provider used to obtain the current session factory
        operation: Coroutine function receiving an AsyncSession
        max_retries: Total number of attempts
        base_delay: Initial backoff in seconds, doubled after every failure

    Returns:
        The operation's result

    Raises:
        The last transient fault once all attempts are exhausted, or any
        non-transient exception immediately.
    """
    attempt = 0
    while True:
        generation = storage.generation
        try:
            async with storage.session() as session:
                return await operation(session)
        except Exception as e:
            attempt += 1
            if not is_transient_storage_fault(e) or attempt >= max_retries:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                f"Transient storage fault (attempt {attempt}/{max_retries}), "
                f"retrying in {delay:.2f}s: {e.__class__.__name__}"
            )
            await storage.recreate(generation)
            await asyncio.sleep(delay)
