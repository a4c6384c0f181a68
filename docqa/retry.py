"""Retry policy for calls to the local model server."""
from dataclasses import dataclass

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docqa import config

logger = structlog.get_logger()

RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings shared by the embedding and generation clients."""

    max_attempts: int = config.RETRY_MAX_ATTEMPTS
    backoff: float = config.RETRY_BACKOFF
    backoff_max: float = config.RETRY_BACKOFF_MAX

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")


def is_transient_error(exc: BaseException) -> bool:
    """Classify an httpx exception as worth retrying.

    Timeouts and connection problems are transient, and so are 408, 429
    and 5xx responses. Other HTTP status errors are not.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in RETRYABLE_STATUS_CODES or status >= 500
    return isinstance(exc, httpx.TransportError)


def _log_before_sleep(retry_state) -> None:
    exc = retry_state.outcome.exception()
    logger.warning(
        "request_retry_scheduled",
        attempt=retry_state.attempt_number,
        sleep_seconds=round(retry_state.next_action.sleep, 3),
        error=str(exc),
        error_type=type(exc).__name__,
    )


def async_retrying(policy: RetryPolicy) -> AsyncRetrying:
    """Build a tenacity controller for one logical request.

    The last exception is re-raised unchanged once attempts run out, so
    callers translate it into their own service error.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.backoff, max=policy.backoff_max),
        retry=retry_if_exception(is_transient_error),
        before_sleep=_log_before_sleep,
        reraise=True,
    )
