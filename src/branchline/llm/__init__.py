"""Ollama protocol client: streaming, error classification and retry."""

from branchline.llm.cancellation import (
    CancelController,
    CancelSignal,
    TimeoutSource,
    combine_signals,
)
from branchline.llm.client import ChatOptions, ConnectionStatus, OllamaClient, build_chat_request
from branchline.llm.errors import (
    ErrorCode,
    OllamaAbortError,
    OllamaConnectionError,
    OllamaError,
    OllamaInvalidRequestError,
    OllamaModelNotFoundError,
    OllamaParseError,
    OllamaServerError,
    OllamaStreamError,
    OllamaTimeoutError,
    classify,
    from_response,
)
from branchline.llm.ndjson import NDJSONParser
from branchline.llm.retry import with_retry
from branchline.llm.streaming import (
    ChatStream,
    StreamCallbacks,
    collect_stream,
    stream_chat,
    stream_chat_with_callbacks,
)

__all__ = [
    "CancelController",
    "CancelSignal",
    "ChatOptions",
    "ChatStream",
    "ConnectionStatus",
    "ErrorCode",
    "NDJSONParser",
    "OllamaAbortError",
    "OllamaClient",
    "OllamaConnectionError",
    "OllamaError",
    "OllamaInvalidRequestError",
    "OllamaModelNotFoundError",
    "OllamaParseError",
    "OllamaServerError",
    "OllamaStreamError",
    "OllamaTimeoutError",
    "StreamCallbacks",
    "TimeoutSource",
    "build_chat_request",
    "classify",
    "collect_stream",
    "combine_signals",
    "from_response",
    "stream_chat",
    "stream_chat_with_callbacks",
    "with_retry",
]
