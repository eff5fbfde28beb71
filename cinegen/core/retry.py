"""
Retry wrapper for calls to the generation service.

Transient overload signals (HTTP 429/503, "overloaded", "unavailable") are
retried with exponential backoff; every other error propagates unchanged
on the first failure.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 5
DEFAULT_INITIAL_DELAY = 3.0

RETRYABLE_STATUS_CODES = {429, 503}
RETRYABLE_MARKERS = ("overloaded", "unavailable")


def is_retryable(exc: BaseException) -> bool:
    """Return True if the error signals a transient overload.

    Checks the HTTP status, the provider's numeric or symbolic code, and
    finally the message text for "overloaded" or "unavailable". Numeric codes
    are only read from attributes, never from the message.
    """
    for attr in ("status_code", "status", "code"):
        if _is_retryable_code(getattr(exc, attr, None)):
            return True

    response = getattr(exc, "response", None)
    if response is not None and _is_retryable_code(getattr(response, "status_code", None)):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


def _is_retryable_code(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value in RETRYABLE_STATUS_CODES
    text = str(value).strip().lower()
    if text.isdigit():
        return int(text) in RETRYABLE_STATUS_CODES
    return text in RETRYABLE_MARKERS


def _log_retry(attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        remaining = attempts - retry_state.attempt_number
        logger.warning(
            "Generation service busy (%s). Retrying in %.1fs (%d attempts left)",
            retry_state.outcome.exception(), delay, remaining
        )
    return before_sleep


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int = DEFAULT_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """Run ``operation``, retrying transient overload errors.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        attempts: Total number of attempts, including the first
        initial_delay: Delay before the first retry; doubles each time
        sleep: Awaitable used for backoff delays

    Returns:
        The operation's result

    Raises:
        Exception: The last error raised by ``operation``, unchanged
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=initial_delay, exp_base=2),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry(attempts),
        sleep=sleep,
        reraise=True
    )

    async for attempt in retrying:
        with attempt:
            result = await operation()
    return result
