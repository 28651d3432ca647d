"""Retry with exponential backoff and error classification."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .config import RetryConfig
from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    GateBlockedError,
    StepTimeoutError,
    TerminalExecutionError,
    TransientError,
    WorkflowValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HTTP_STATUS = re.compile(r"\b(?:HTTP|status)[\s:]+(\d{3})\b", re.IGNORECASE)
_NETWORK_MARKERS = (
    "econnrefused",
    "econnreset",
    "enotfound",
    "etimedout",
    "connection refused",
    "connection reset",
    "network",
    "getaddrinfo",
)
_VALIDATION_MARKERS = ("validation", "schema", "invalid")
_AUTH_MARKERS = ("authentication", "unauthorized", "forbidden", "auth failed")


class RetryPolicy(BaseModel):
    """Bounded exponential backoff parameters (seconds)."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.0, ge=0)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(**config.model_dump())


DEFAULT_RETRY_POLICY = RetryPolicy()


class RetryResult(BaseModel):
    """Value returned by a successful call and how many attempts it took."""

    value: Any = None
    attempts: int
    retry_count: int


def _message(error: Any) -> str:
    if error is None:
        return ""
    return str(error).lower()


def extract_http_status(error: Any) -> Optional[int]:
    """Return the HTTP status mentioned in the error message, if any."""
    if not isinstance(error, BaseException):
        return None
    match = _HTTP_STATUS.search(str(error))
    return int(match.group(1)) if match else None


def classify_error_type(error: Any) -> str:
    """Bucket an error for diagnostics and persisted error details."""
    if not isinstance(error, BaseException):
        return "unknown_error"
    if isinstance(error, (asyncio.TimeoutError, StepTimeoutError)):
        return "timeout"
    if isinstance(error, (AuthenticationError, AuthorizationError)):
        return "auth_error"
    if isinstance(error, WorkflowValidationError):
        return "validation_error"

    message = _message(error)
    if "timeout" in message or "timed out" in message:
        return "timeout"
    status = extract_http_status(error)
    if status is not None:
        if status == 429:
            return "rate_limit"
        if status >= 500:
            return "server_error"
        if status in (401, 403):
            return "auth_error"
        if status >= 400:
            return "client_error"
    if any(marker in message for marker in _VALIDATION_MARKERS):
        return "validation_error"
    if any(marker in message for marker in _AUTH_MARKERS):
        return "auth_error"
    if isinstance(error, (ConnectionError, OSError)) or any(
        marker in message for marker in _NETWORK_MARKERS
    ):
        return "network_error"
    return "unknown_error"


def is_retryable_error(error: Any) -> bool:
    """Decide whether another attempt may succeed.

    Timeouts, rate limiting, 5xx responses and network failures are
    retryable. Client errors, validation failures and authentication
    problems are terminal. Anything unrecognised is treated as retryable.
    """
    if isinstance(error, TransientError):
        return True
    if isinstance(
        error,
        (
            WorkflowValidationError,
            TerminalExecutionError,
            GateBlockedError,
            ConflictError,
            AuthenticationError,
            AuthorizationError,
        ),
    ):
        return False
    return classify_error_type(error) not in (
        "client_error",
        "validation_error",
        "auth_error",
    )


def calculate_backoff_delay(
    retry_index: int, policy: RetryPolicy = DEFAULT_RETRY_POLICY
) -> float:
    """Delay before retry number ``retry_index`` (0-based), capped at ``max_delay``."""
    delay = policy.initial_delay * (policy.backoff_multiplier**retry_index)
    delay = min(delay, policy.max_delay)
    if policy.jitter:
        delay += random.uniform(0, policy.jitter)
    return delay


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
) -> RetryResult:
    """Invoke ``fn`` until it succeeds, fails terminally or attempts run out.

    A terminal error is raised after a single invocation. When attempts are
    exhausted the last error is re-raised unchanged, with ``attempts`` and
    ``retry_count`` attributes attached.
    """
    policy = policy or DEFAULT_RETRY_POLICY
    attempt = 0
    while True:
        attempt += 1
        try:
            value = await fn()
        except Exception as e:
            retryable = is_retryable_error(e)
            if not retryable or attempt >= policy.max_attempts:
                e.attempts = attempt  # type: ignore[attr-defined]
                e.retry_count = attempt - 1  # type: ignore[attr-defined]
                if retryable:
                    logger.error(
                        f"Giving up after {attempt} attempts: {e} ({classify_error_type(e)})"
                    )
                raise
            delay = calculate_backoff_delay(attempt - 1, policy)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed ({classify_error_type(e)}): {e}; "
                f"retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)
            continue
        return RetryResult(value=value, attempts=attempt, retry_count=attempt - 1)


async def with_timeout(awaitable: Awaitable[T], seconds: float) -> T:
    """Await ``awaitable`` for at most ``seconds``; raise ``StepTimeoutError`` otherwise."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise StepTimeoutError(seconds) from e
