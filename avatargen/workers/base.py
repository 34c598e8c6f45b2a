"""
Worker Helpers
Retry decorator shared by the orchestrator's network steps.
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from avatargen.core.exceptions import AvatarPipelineError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_retryable(error: BaseException) -> bool:
    """Pipeline errors say so themselves; other exceptions never retry."""
    return isinstance(error, AvatarPipelineError) and error.retryable


def with_retry(
    max_retries: int = 3,
    retry_delay: float = 1.0,
    exponential_backoff: bool = True,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (AvatarPipelineError,),
    on_retry: Optional[Callable[[int, BaseException], Any]] = None,
):
    """
    Decorator to add retry logic to async steps.

    Only exceptions that are instances of ``retryable_exceptions`` *and*
    pass ``is_retryable`` are retried; everything else propagates at once.

    Args:
        max_retries: Maximum number of retry attempts
        retry_delay: Base delay between retries (seconds)
        exponential_backoff: Whether to use exponential backoff
        retryable_exceptions: Tuple of exception types that may trigger retry
        on_retry: Optional callback(attempt, error) before each retry
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except retryable_exceptions as e:
                    if not is_retryable(e) or attempt >= max_retries:
                        if is_retryable(e):
                            logger.error(
                                f"[Failed] {func.__name__} exhausted all {max_retries} retries: {e}"
                            )
                        raise

                    delay = retry_delay * (2 ** attempt if exponential_backoff else 1)
                    logger.warning(
                        f"[Retry {attempt + 1}/{max_retries}] {func.__name__} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    if on_retry is not None:
                        on_retry(attempt + 1, e)
                    await asyncio.sleep(delay)

        return async_wrapper

    return decorator


__all__ = ["is_retryable", "with_retry"]
