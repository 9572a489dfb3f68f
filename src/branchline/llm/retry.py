"""Bounded exponential-backoff retry for non-streaming requests."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .cancellation import CancelSignal
from .errors import ErrorCode, OllamaAbortError, OllamaError, classify

_logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryObserver = Callable[[OllamaError, int, float], Any]


async def sleep(delay_ms: float, signal: CancelSignal | None = None) -> None:
    """Sleep for *delay_ms*, raising ``OllamaAbortError`` if *signal* fires."""
    if signal is None:
        await asyncio.sleep(delay_ms / 1000)
        return
    if signal.aborted:
        raise OllamaAbortError("Sleep aborted")
    try:
        await asyncio.wait_for(signal.wait(), timeout=delay_ms / 1000)
    except asyncio.TimeoutError:
        return
    raise OllamaAbortError("Sleep aborted")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    initial_delay_ms: float = 1000,
    max_delay_ms: float = 10000,
    backoff_multiplier: float = 2,
    signal: CancelSignal | None = None,
    is_retryable: Callable[[OllamaError], bool] | None = None,
    on_retry: RetryObserver | None = None,
) -> T:
    """Run *operation* with up to *max_attempts* tries.

    Errors are classified after every failure.  Non-retryable errors, abort
    errors and the failure of the final attempt are raised immediately,
    without sleeping.  Otherwise *on_retry(error, attempt, delay_ms)* is
    called and the controller waits ``delay_ms`` (cancellable through
    *signal*) before trying again; the delay grows by *backoff_multiplier*
    up to *max_delay_ms*.
    """
    check = is_retryable or (lambda err: err.retryable)
    delay_ms = initial_delay_ms
    last_error: OllamaError | None = None

    for attempt in range(1, max_attempts + 1):
        if signal is not None and signal.aborted:
            raise OllamaAbortError("Operation aborted before retry")

        try:
            return await operation()
        except Exception as e:
            last_error = classify(e)

        if (
            last_error.code is ErrorCode.ABORT_ERROR
            or not check(last_error)
            or attempt == max_attempts
        ):
            raise last_error

        _logger.warning(
            "%s (attempt %d/%d), retrying in %.0f ms",
            last_error.message, attempt, max_attempts, delay_ms,
        )
        if on_retry is not None:
            on_retry(last_error, attempt, delay_ms)

        await sleep(delay_ms, signal)
        delay_ms = min(delay_ms * backoff_multiplier, max_delay_ms)

    raise last_error or OllamaError("Retry failed", ErrorCode.UNKNOWN_ERROR)
