"""Error taxonomy and transport retry policy.

Every failure of a remote call ends up in one of three tiers:

- ConfigurationError: settings are wrong (bad key, bad endpoint). Never
  retried; aborts the whole run.
- TransientError: rate limits, server errors, network trouble. Retried at the
  transport layer; once retries are exhausted the orchestrator records the
  batch as failed and moves on.
- ContentError: one item cannot be processed. Skipped; the run continues.

Network failures are classified by explicit TransportFailure categories which
are mapped into TransientError in one place (classify_transport /
classify_sdk_exception).
"""

from __future__ import annotations

import asyncio
import logging
import socket
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import anthropic
import httpx
import openai
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_ATTEMPTS = 3
"""Total attempts per remote call, including the first one."""


class LinkweaveError(Exception):
    """Base class for all linkweave errors."""

    pass


class ConfigurationError(LinkweaveError):
    """Raised when settings are missing or rejected by a remote service.

    Attributes:
        status: HTTP status that triggered the error, if any.
        guidance: User-actionable hint naming the setting to fix.
    """

    def __init__(self, message: str, status: int | None = None, guidance: str | None = None) -> None:
        self.message = message
        self.status = status
        self.guidance = guidance
        super().__init__(message)


class TransientError(LinkweaveError):
    """Raised for failures that may succeed when retried."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        category: TransportFailure | None = None,
        attempts: int = 0,
    ) -> None:
        self.message = message
        self.status = status
        self.category = category
        self.attempts = attempts
        super().__init__(message)


class ContentError(LinkweaveError):
    """Raised when a single item cannot be processed."""

    def __init__(self, message: str, item_id: str | None = None) -> None:
        self.message = message
        self.item_id = item_id
        super().__init__(message)


class RunCancelledError(LinkweaveError):
    """Raised when a run is cancelled between batches."""

    def __init__(self, message: str = "Task cancelled by user") -> None:
        super().__init__(message)


class RunInProgressError(LinkweaveError):
    """Raised when a second run is started while one is active."""

    def __init__(self, message: str = "Another task is already running") -> None:
        super().__init__(message)


class DimensionMismatchError(LinkweaveError, ValueError):
    """Raised when two vectors of different length are compared."""

    pass


class EmptyVectorError(LinkweaveError, ValueError):
    """Raised when an empty vector is compared."""

    pass


class TransportFailure(str, Enum):
    """Network-level failure categories reported by the transport."""

    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    CONNECTION_CLOSED = "connection_closed"
    DNS = "dns"


# =============================================================================
# Classification
# =============================================================================

_INVALID_KEY_GUIDANCE = (
    "Check the API key for the configured provider "
    "(ANTHROPIC_API_KEY, OPENROUTER_API_KEY or JINA_API_KEY)."
)
_NOT_FOUND_GUIDANCE = "Check the configured model name and endpoint URL."
_BAD_REQUEST_GUIDANCE = "Check the configured model name and request size limits."

_SERVER_ERROR_STATUSES = frozenset({500, 503, 504})


def classify_status(status: int, message: str = "") -> LinkweaveError:
    """Map an HTTP status code to an error tier.

    Args:
        status: HTTP status code. 0 means the API could not be reached.
        message: Original error message, used for unrecognized statuses.

    Returns:
        ConfigurationError for 400/401/404, TransientError otherwise.
    """
    if status == 401:
        return ConfigurationError("Invalid API key", status=status, guidance=_INVALID_KEY_GUIDANCE)
    if status == 404:
        return ConfigurationError("API endpoint not found", status=status, guidance=_NOT_FOUND_GUIDANCE)
    if status == 400:
        return ConfigurationError("Bad request to API", status=status, guidance=_BAD_REQUEST_GUIDANCE)
    if status == 429:
        return TransientError("Rate limit exceeded", status=status)
    if status in _SERVER_ERROR_STATUSES:
        return TransientError(f"Server error: {status}", status=status)
    if status == 0:
        return TransientError("Network error: Unable to reach API", status=0)
    return TransientError(f"Unexpected error: {message or status}", status=status)


def classify_transport(category: TransportFailure, message: str = "") -> TransientError:
    """Map a transport failure category to a TransientError."""
    detail = f": {message}" if message else ""
    return TransientError(f"Network failure ({category.value}){detail}", status=0, category=category)


def _transport_category(exc: BaseException) -> TransportFailure | None:
    """Find the transport category of an exception or anything in its cause chain."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)):
            return TransportFailure.TIMEOUT
        if isinstance(current, socket.gaierror):
            return TransportFailure.DNS
        if isinstance(current, (httpx.RemoteProtocolError, ConnectionAbortedError, BrokenPipeError)):
            return TransportFailure.CONNECTION_CLOSED
        if isinstance(current, (ConnectionResetError, httpx.NetworkError)):
            return TransportFailure.CONNECTION_RESET
        current = current.__cause__ or current.__context__
    return None


def classify_sdk_exception(exc: BaseException) -> BaseException:
    """Translate an SDK or transport exception into the taxonomy.

    Exceptions already in the taxonomy, and exceptions that are neither SDK
    nor transport failures, are returned unchanged.
    """
    if isinstance(exc, LinkweaveError):
        return exc

    if isinstance(exc, (anthropic.APIStatusError, openai.APIStatusError)):
        return classify_status(exc.status_code, str(exc))

    if isinstance(exc, (anthropic.APITimeoutError, openai.APITimeoutError)):
        return classify_transport(TransportFailure.TIMEOUT, str(exc))

    if isinstance(exc, (anthropic.APIConnectionError, openai.APIConnectionError)):
        category = _transport_category(exc.__cause__) if exc.__cause__ else None
        return classify_transport(category or TransportFailure.CONNECTION_RESET, str(exc))

    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code, str(exc))

    category = _transport_category(exc)
    if category is not None:
        return classify_transport(category, str(exc))

    return exc


def should_retry(exc: BaseException) -> bool:
    """Return True if the error is worth retrying at the transport layer."""
    return isinstance(exc, TransientError)


def can_skip(exc: BaseException) -> bool:
    """Return True if the error only affects one item and the run can continue."""
    return isinstance(exc, ContentError)


def retry_delay(attempt: int) -> float:
    """Backoff delay in seconds before retry number ``attempt`` (0-based)."""
    return float(2**attempt)


# =============================================================================
# Retry
# =============================================================================


def _wait_for(retry_state: Any) -> float:
    return retry_delay(retry_state.attempt_number - 1)


def _log_before_sleep(retry_state: Any) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
    delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
    log.warning(
        "Attempt %d failed (%s), retrying in %.0fs",
        retry_state.attempt_number,
        exc,
        delay,
    )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = MAX_RETRY_ATTEMPTS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``fn`` and retry TransientErrors with exponential backoff.

    SDK and transport exceptions raised by ``fn`` are classified first, so a
    429 is retried while a 401 surfaces immediately as ConfigurationError.

    Args:
        fn: Zero-argument coroutine function performing one remote call.
        attempts: Total attempts, including the first.
        sleep: Async sleep function (injectable for tests).

    Returns:
        The result of ``fn``.

    Raises:
        TransientError: When every attempt failed; ``attempts`` is set.
        ConfigurationError, ContentError: Immediately, without retry.
    """
    made = 0

    async def _attempt() -> T:
        nonlocal made
        made += 1
        try:
            return await fn()
        except Exception as exc:
            mapped = classify_sdk_exception(exc)
            if mapped is exc:
                raise
            raise mapped from exc

    retrying = AsyncRetrying(
        retry=retry_if_exception(should_retry),
        wait=_wait_for,
        stop=stop_after_attempt(attempts),
        sleep=sleep,
        reraise=True,
        before_sleep=_log_before_sleep,
    )
    try:
        return await retrying(_attempt)
    except TransientError as exc:
        exc.attempts = made
        raise
