"""
Retry handler for transient failures
Implements exponential backoff retry logic for database and broker operations
"""
import asyncio
import logging
import socket
from typing import Any, Callable, Tuple, Type

from aio_pika.exceptions import AMQPChannelError, AMQPConnectionError

logger = logging.getLogger(__name__)

# Expected while dependencies are starting or restarting
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    ConnectionError,
    ConnectionRefusedError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
    socket.gaierror,
    socket.herror,
    AMQPConnectionError,
    AMQPChannelError,
)


def _describe(error: BaseException) -> str:
    error_msg = str(error) or type(error).__name__
    if "Name or service not known" in error_msg or isinstance(error, socket.gaierror):
        return "Service not available (DNS/host resolution failed)"
    if "Connection refused" in error_msg:
        return "Connection refused (service not ready)"
    return error_msg


async def retry_with_backoff(
    func: Callable[..., Any],
    *args,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
    **kwargs
) -> Any:
    """
    Retry an async function with exponential backoff on transient failures.

    Args:
        func: Async function to retry
        *args: Positional arguments to pass to function
        max_retries: Maximum number of retry attempts (use -1 for infinite)
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential backoff
        retry_on: Exception types that trigger a retry; anything else propagates at once
        **kwargs: Keyword arguments to pass to function

    Returns:
        Result from function call

    Raises:
        Last exception if all retries fail (only if max_retries != -1)
    """
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            logger.debug("Retry cancelled (shutdown requested)")
            raise
        except retry_on as e:
            attempt += 1

            if max_retries != -1 and attempt > max_retries:
                logger.error(f"All {max_retries + 1} attempts failed. Last error: {_describe(e)}")
                raise

            delay = min(initial_delay * (exponential_base ** (attempt - 1)), max_delay)

            # INFO for the first few attempts, WARNING once it keeps failing
            log_level = logger.info if attempt <= 3 else logger.warning
            log_level(
                f"Attempt {attempt} failed: {_describe(e)}. "
                f"Retrying in {delay:.2f}s... "
                f"(max_retries={'infinite' if max_retries == -1 else max_retries})"
            )
            await asyncio.sleep(delay)

