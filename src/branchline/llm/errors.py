"""Error taxonomy and classification for the Ollama API.

Every failure that leaves the client is normalized to an ``OllamaError``
subclass.  The ``code`` tells callers what happened and ``retryable`` tells
the retry controller whether another attempt could succeed.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
from typing import Any

import httpx

_logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    """Fixed set of error kinds."""

    CONNECTION_ERROR = "CONNECTION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    STREAM_ERROR = "STREAM_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    ABORT_ERROR = "ABORT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


_RETRYABLE_CODES = frozenset({
    ErrorCode.CONNECTION_ERROR,
    ErrorCode.TIMEOUT_ERROR,
    ErrorCode.SERVER_ERROR,
})

# Substrings that mark a message as a connectivity failure
_CONNECTION_HINTS = (
    "econnrefused",
    "enotfound",
    "connection refused",
    "network",
    "failed to fetch",
)

_MODEL_NAME_RE = re.compile(r"model\s+['\"]?([^'\"]+)['\"]?", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Error classes
# ---------------------------------------------------------------------------

class OllamaError(Exception):
    """Base class for all classified Ollama API errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        status_code: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        if cause is not None:
            self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        return self.code in _RETRYABLE_CODES

    @property
    def is_abort(self) -> bool:
        return self.code is ErrorCode.ABORT_ERROR

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code.value})"


class OllamaConnectionError(OllamaError):
    """The server is unreachable."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message, ErrorCode.CONNECTION_ERROR, cause=cause)


class OllamaTimeoutError(OllamaError):
    """The request took longer than allowed."""

    def __init__(
        self,
        message: str,
        timeout_ms: float = 0,
        cause: BaseException | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message, ErrorCode.TIMEOUT_ERROR, status_code=status_code, cause=cause,
        )
        self.timeout_ms = timeout_ms


class OllamaServerError(OllamaError):
    """The server answered with a 5xx status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message, ErrorCode.SERVER_ERROR, status_code=status_code)


class OllamaModelNotFoundError(OllamaError):
    """The requested model is not installed on the server."""

    def __init__(self, model_name: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Model '{model_name}' not found",
            ErrorCode.MODEL_NOT_FOUND,
            status_code=404,
        )
        self.model_name = model_name


class OllamaInvalidRequestError(OllamaError):
    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorCode.INVALID_REQUEST, status_code=400)


class OllamaStreamError(OllamaError):
    """The response body was missing or ended unexpectedly."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message, ErrorCode.STREAM_ERROR, cause=cause)


class OllamaParseError(OllamaError):
    """A line of the response could not be decoded as JSON."""

    def __init__(
        self,
        message: str,
        raw_data: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, ErrorCode.PARSE_ERROR, cause=cause)
        self.raw_data = raw_data


class OllamaAbortError(OllamaError):
    """The operation was cancelled through a cancellation signal."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "Request was aborted", ErrorCode.ABORT_ERROR)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify(error: Any, context: str | None = None) -> OllamaError:
    """Normalize any raised value into an ``OllamaError``.

    Inspection order: already classified, network-shaped transport errors,
    platform abort/timeout types, message heuristics, unknown.
    """
    if isinstance(error, OllamaError):
        return error

    prefix = f"{context}: " if context else ""

    if isinstance(error, httpx.RemoteProtocolError):
        return OllamaStreamError(f"{prefix}Stream ended unexpectedly: {error}", error)
    if isinstance(error, (httpx.NetworkError, ConnectionError)):
        return OllamaConnectionError(f"{prefix}Network error: {error}", error)

    if isinstance(error, asyncio.CancelledError):
        return OllamaAbortError(f"{prefix}Request aborted")
    if isinstance(error, (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)):
        return OllamaTimeoutError(f"{prefix}Request timed out", 0, error)

    if isinstance(error, BaseException):
        text = str(error)
        lowered = text.lower()
        if any(hint in lowered for hint in _CONNECTION_HINTS):
            return OllamaConnectionError(f"{prefix}Connection failed: {text}", error)
        if "timeout" in lowered or "timed out" in lowered:
            return OllamaTimeoutError(f"{prefix}Request timed out: {text}", 0, error)
        if "abort" in lowered:
            return OllamaAbortError(f"{prefix}{text}")
        return OllamaError(f"{prefix}{text}", ErrorCode.UNKNOWN_ERROR, cause=error)

    return OllamaError(f"{prefix}Unknown error: {error}", ErrorCode.UNKNOWN_ERROR)


def _extract_message(body: str, status_code: int) -> str:
    """Pull the server-supplied message out of an error body."""
    if not body:
        return f"HTTP {status_code}"
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return body
    if isinstance(parsed, dict) and parsed.get("error"):
        return str(parsed["error"])
    return f"HTTP {status_code}"


def error_for_status(
    status_code: int, body: str, context: str | None = None,
) -> OllamaError:
    """Map an HTTP status and its body text to a classified error."""
    prefix = f"{context}: " if context else ""
    message = _extract_message(body, status_code)

    if status_code == 400:
        return OllamaInvalidRequestError(f"{prefix}{message}")
    if status_code == 404:
        if "model" in message.lower():
            match = _MODEL_NAME_RE.search(message)
            model_name = match.group(1) if match else "unknown"
            return OllamaModelNotFoundError(model_name, f"{prefix}{message}")
        return OllamaError(
            f"{prefix}{message}", ErrorCode.MODEL_NOT_FOUND, status_code=404,
        )
    if status_code in (408, 504):
        return OllamaTimeoutError(f"{prefix}{message}", 0, status_code=status_code)
    if status_code in (500, 502, 503):
        return OllamaServerError(f"{prefix}{message}", status_code)
    return OllamaError(
        f"{prefix}{message}", ErrorCode.UNKNOWN_ERROR, status_code=status_code,
    )


async def from_response(
    response: httpx.Response, context: str | None = None,
) -> OllamaError:
    """Build a classified error from a non-2xx response, reading its body."""
    body = ""
    try:
        body = (await response.aread()).decode("utf-8", errors="replace")
    except httpx.HTTPError as e:
        _logger.debug("Could not read error body (HTTP %d): %s", response.status_code, e)
    return error_for_status(response.status_code, body, context)
