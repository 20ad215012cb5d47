"""
Base Worker Utilities
Retry decorator for idempotent remote calls made by the poll paths.
"""

import asyncio
import inspect
import logging
import traceback
from typing import Callable, TypeVar
from functools import wraps

from app.core.errors import GenerationError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _should_retry(error: Exception, retryable_exceptions: tuple) -> bool:
    if isinstance(error, GenerationError):
        return error.retryable
    return isinstance(error, retryable_exceptions)


def with_retry(
    max_retries: int = 3,
    retry_delay: float = 1.0,
    exponential_backoff: bool = True,
    retryable_exceptions: tuple = (TimeoutError, ConnectionError)
):
    """
    Decorator to add retry logic to remote calls.

    Only use on idempotent operations (status reads); submissions must not be
    replayed blindly. ``GenerationError`` subclasses are retried when their
    ``retryable`` flag is set; other exceptions only when listed.

    Args:
        max_retries: Maximum number of retry attempts
        retry_delay: Base delay between retries (seconds)
        exponential_backoff: Whether to use exponential backoff
        retryable_exceptions: Tuple of non-GenerationError types that should trigger retry
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except Exception as e:
                    if not _should_retry(e, retryable_exceptions):
                        if not isinstance(e, GenerationError):
                            logger.error(f"[Unexpected] {func.__name__}: {e}\n{traceback.format_exc()}")
                        raise

                    if attempt >= max_retries:
                        logger.error(f"[Failed] {func.__name__} exhausted all {max_retries} retries: {e}")
                        raise

                    delay = retry_delay * (2 ** attempt if exponential_backoff else 1)
                    logger.warning(
                        f"[Retry {attempt + 1}/{max_retries}] {func.__name__} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)

        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"with_retry only wraps coroutine functions, got {func.__name__}")
        return async_wrapper

    return decorator


__all__ = ["with_retry"]
