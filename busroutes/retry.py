"""Bounded retry with exponential backoff and jitter for network calls.

Every call to an external service (Drive, Docs, OCR, Gemini, Geocoding) goes
through :func:`call_with_retry`. Only transient failures are retried: HTTP 429,
HTTP 5xx, connection errors and timeouts. Anything else, including JSON or
schema problems, surfaces immediately.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from .models import TransientServiceError

log = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0


def _status_of(exc: BaseException) -> int | None:
    """Return the HTTP status carried by a requests or googleapiclient error."""
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is not None:
        return int(status)
    resp = getattr(exc, "resp", None)
    status = getattr(resp, "status", None)
    if status is not None:
        try:
            return int(status)
        except (TypeError, ValueError):
            return None
    return None


def is_transient_error(exc: BaseException) -> bool:
    """Decide whether *exc* is worth another attempt."""
    if isinstance(exc, TransientServiceError):
        return True
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return True
    status = _status_of(exc)
    if status is None:
        return False
    return status in RETRYABLE_STATUS or status >= 500


def call_with_retry(
    fn: Callable[..., T],
    *args: Any,
    description: str = "",
    policy: RetryPolicy | None = None,
    retry_on: Callable[[BaseException], bool] = is_transient_error,
    **kwargs: Any,
) -> T:
    """Call ``fn(*args, **kwargs)`` retrying transient failures.

    The last exception is re-raised once the attempt budget is spent.
    """
    policy = policy or RetryPolicy()
    retrying = Retrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait_random_exponential(
            multiplier=policy.base_delay_s,
            max=policy.max_delay_s,
        ),
        retry=retry_if_exception(retry_on),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )
    label = description or getattr(fn, "__name__", "call")
    for attempt in retrying:
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                log.debug("%s: attempt %s", label, attempt.retry_state.attempt_number)
            return fn(*args, **kwargs)
    raise AssertionError("unreachable")  # pragma: no cover
