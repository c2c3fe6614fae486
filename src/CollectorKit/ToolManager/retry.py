"""Tenacity-based retry policy for tool downloads.

Transient failures (connection errors, timeouts, truncated bodies, 5xx) are
retried with exponential backoff; everything else, including every 4xx
response, unsupported or malformed URLs, and hash mismatches, fails on the
first attempt.

Example:
    >>> policy = create_download_retry_policy(max_retries=3, backoff_factor=1.0)
    >>> policy(fetch_once)  # waits 1s, 2s, 4s between attempts
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Union

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import NetworkError

__all__ = [
    "PERMANENT_TRANSPORT_ERRORS",
    "create_download_retry_policy",
    "is_retryable_error",
    "is_retryable_status",
    "network_error_from_httpx",
]

logger = logging.getLogger(__name__)

# Transport errors that no amount of retrying can fix.
PERMANENT_TRANSPORT_ERRORS = (httpx.UnsupportedProtocol,)


def is_retryable_status(status_code: Optional[int]) -> bool:
    if status_code is None:
        return True
    return status_code >= 500


def is_retryable_error(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` represents a transient network failure."""

    if isinstance(exc, NetworkError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return is_retryable_status(exc.response.status_code)
    if isinstance(exc, httpx.TransportError):
        return not isinstance(exc, PERMANENT_TRANSPORT_ERRORS)
    return False


def network_error_from_httpx(
    exc: Union[httpx.HTTPError, httpx.InvalidURL], url: str
) -> NetworkError:
    """Translate an HTTPX failure into a classified :class:`NetworkError`."""

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return NetworkError(
            f"HTTP {status} while fetching {url}",
            url=url,
            status_code=status,
            retryable=is_retryable_status(status),
        )
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"Timed out fetching {url}: {exc}", url=url, retryable=True)
    return NetworkError(
        f"Network error while fetching {url}: {exc}",
        url=url,
        retryable=is_retryable_error(exc),
    )


def create_download_retry_policy(
    *,
    max_retries: int = 3,
    backoff_factor: float = 1.0,
    max_backoff_sec: float = 60.0,
    sleep: Optional[Callable[[float], None]] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> Retrying:
    """Create the retry controller used for every download attempt.

    Args:
        max_retries: Retries after the first attempt (``3`` means up to 4 attempts).
        backoff_factor: First delay in seconds; doubles after each retry.
        max_backoff_sec: Upper bound for a single delay.
        sleep: Sleep function (tests pass a no-op).
        on_retry: Callback receiving ``(attempt, exception, delay)`` before sleeping.

    Returns:
        Tenacity ``Retrying`` object; call it with the function to retry.
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if exc is None:
            return
        if on_retry is not None:
            on_retry(retry_state.attempt_number, exc, delay)
        else:
            logger.debug(
                "retrying after transient failure",
                extra={"attempt": retry_state.attempt_number, "delay_sec": delay, "error": str(exc)},
            )

    return Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=backoff_factor, min=0, max=max_backoff_sec),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=_before_sleep,
        sleep=sleep or time.sleep,
        reraise=True,
    )
