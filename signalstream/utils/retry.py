import asyncio
import functools
import random
from typing import Type, Tuple, Optional, Callable

from signalstream.exceptions import ConfigurationError, DataError, QuotaExceededError, is_quota_error
from signalstream.monitoring.logger import get_logger

logger = get_logger(__name__)

_NEVER_RETRY = (ValueError, TypeError, ConfigurationError, DataError, QuotaExceededError)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator to retry async functions on transient errors.

    Exponential backoff with jitter. Quota errors are never retried so the
    exhausted quota is not consumed further.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types to retry on (default: anything not
                          obviously a logic, data or configuration error)
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if isinstance(e, _NEVER_RETRY) or is_quota_error(e):
                        raise
                    if transient_errors and not isinstance(e, transient_errors):
                        raise

                    if retry_count >= max_retries:
                        logger.warning("RETRIES_EXHAUSTED", func=func.__name__, max_retries=max_retries, error=str(e))
                        raise

                    logger.warning(
                        "TRANSIENT_ERROR_RETRY",
                        func=func.__name__,
                        attempt=retry_count + 1,
                        max_retries=max_retries,
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )
                    await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.5)  # Jitter

        return wrapper
    return decorator
