"""Async client for the Ollama native API.

Non-streaming calls go through ``_request()``, which applies the per-call
timeout and cancellation signal and, when enabled, the retry controller.
Streaming chat is delegated to ``branchline.llm.streaming`` and is never
retried.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from branchline.config import RetrySpec, ServerSpec
from branchline.types import StreamChatResult

from .cancellation import CancelSignal, TimeoutSource, combine_signals, race
from .errors import classify, from_response
from .retry import with_retry
from .streaming import ChatStream, StreamCallbacks, stream_chat, stream_chat_with_callbacks

_logger = logging.getLogger(__name__)

# Version checks should be fast
_VERSION_TIMEOUT_MS = 5000


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

@dataclass
class ChatOptions:
    """Parameters of a chat request."""

    model: str
    messages: list[dict[str, Any]]
    format: str | dict[str, Any] | None = None  # "json" or a JSON schema
    tools: list[dict[str, Any]] | None = None
    options: dict[str, Any] | None = None  # sampling parameters
    keep_alive: str | None = None
    think: bool | None = None
    timeout_ms: float | None = None


def build_chat_request(options: ChatOptions, stream: bool) -> dict[str, Any]:
    """Produce the ``/api/chat`` wire request; unset optionals are omitted."""
    request: dict[str, Any] = {
        "model": options.model,
        "messages": options.messages,
        "stream": stream,
    }
    if options.format is not None:
        request["format"] = options.format
    if options.tools is not None:
        request["tools"] = options.tools
    if options.options is not None:
        request["options"] = options.options
    if options.keep_alive is not None:
        request["keep_alive"] = options.keep_alive
    if options.think is not None:
        request["think"] = options.think
    return request


@dataclass
class ConnectionStatus:
    """Outcome of ``OllamaClient.test_connection()``."""

    connected: bool
    latency_ms: float
    base_url: str
    version: str | None = None
    error: str | None = None
    error_code: str | None = None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class OllamaClient:
    """Client for a local Ollama server.

    *transport* replaces the network layer (tests pass an
    ``httpx.MockTransport``).
    """

    def __init__(
        self,
        server: ServerSpec | None = None,
        retry: RetrySpec | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.server = server or ServerSpec()
        self.retry = retry or RetrySpec()
        self._transport = transport
        self.base_url = self.server.base_url.rstrip("/")

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.server.timeout_ms / 1000, connect=30, read=300),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Model management
    # ------------------------------------------------------------------

    async def list_models(self, signal: CancelSignal | None = None) -> dict[str, Any]:
        """``GET /api/tags``: locally available models."""
        return await self._request("GET", "/api/tags", signal=signal)

    async def list_running_models(
        self, signal: CancelSignal | None = None,
    ) -> dict[str, Any]:
        """``GET /api/ps``: models currently loaded in memory."""
        return await self._request("GET", "/api/ps", signal=signal)

    async def show_model(
        self,
        model: str | dict[str, Any],
        signal: CancelSignal | None = None,
    ) -> dict[str, Any]:
        """``POST /api/show``: details, template and parameters of a model."""
        body = {"model": model} if isinstance(model, str) else model
        return await self._request("POST", "/api/show", body=body, signal=signal)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat(
        self, options: ChatOptions, signal: CancelSignal | None = None,
    ) -> dict[str, Any]:
        """One-shot (non-streaming) chat completion."""
        return await self._request(
            "POST",
            "/api/chat",
            body=build_chat_request(options, stream=False),
            signal=signal,
            # Completions may take longer than metadata calls
            timeout_ms=options.timeout_ms or self.server.timeout_ms * 2,
        )

    def stream_chat(
        self, options: ChatOptions, signal: CancelSignal | None = None,
    ) -> ChatStream:
        """Streaming chat completion; iterate the returned ``ChatStream``."""
        return stream_chat(
            build_chat_request(options, stream=True),
            base_url=self.base_url,
            timeout_ms=options.timeout_ms or self.server.timeout_ms,
            signal=signal,
            http_client=self._client,
        )

    async def stream_chat_with_callbacks(
        self,
        options: ChatOptions,
        callbacks: StreamCallbacks,
        signal: CancelSignal | None = None,
    ) -> StreamChatResult:
        return await stream_chat_with_callbacks(
            build_chat_request(options, stream=True),
            callbacks,
            base_url=self.base_url,
            timeout_ms=options.timeout_ms or self.server.timeout_ms,
            signal=signal,
            http_client=self._client,
        )

    # ------------------------------------------------------------------
    # Generation and embeddings
    # ------------------------------------------------------------------

    async def generate(
        self, request: dict[str, Any], signal: CancelSignal | None = None,
    ) -> dict[str, Any]:
        """``POST /api/generate`` with ``stream`` forced off."""
        return await self._request(
            "POST",
            "/api/generate",
            body={**request, "stream": False},
            signal=signal,
            timeout_ms=self.server.timeout_ms * 2,
        )

    async def embed(
        self, request: dict[str, Any], signal: CancelSignal | None = None,
    ) -> dict[str, Any]:
        return await self._request("POST", "/api/embed", body=request, signal=signal)

    # ------------------------------------------------------------------
    # Health and connectivity
    # ------------------------------------------------------------------

    async def get_version(self, signal: CancelSignal | None = None) -> dict[str, Any]:
        return await self._request(
            "GET", "/api/version", signal=signal, timeout_ms=_VERSION_TIMEOUT_MS,
        )

    async def health_check(self, signal: CancelSignal | None = None) -> bool:
        """True when ``/api/version`` answers."""
        try:
            await self.get_version(signal)
        except Exception as e:
            _logger.debug("Health check failed: %s", e)
            return False
        return True

    async def test_connection(
        self, signal: CancelSignal | None = None,
    ) -> ConnectionStatus:
        """Probe the server and report version, latency or the failure."""
        start = time.monotonic()
        try:
            version = await self.get_version(signal)
        except Exception as e:
            err = classify(e)
            return ConnectionStatus(
                connected=False,
                latency_ms=round((time.monotonic() - start) * 1000),
                base_url=self.base_url,
                error=err.message,
                error_code=err.code.value,
            )
        return ConnectionStatus(
            connected=True,
            latency_ms=round((time.monotonic() - start) * 1000),
            base_url=self.base_url,
            version=version.get("version"),
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def with_config(
        self,
        *,
        retry: RetrySpec | None = None,
        **server_changes: Any,
    ) -> OllamaClient:
        """Return a new client with changed server settings or ``RetrySpec``.

        The transport is shared; the HTTP connection pool is not.
        """
        return OllamaClient(
            server=dataclasses.replace(self.server, **server_changes),
            retry=retry or self.retry,
            transport=self._transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> OllamaClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        body: dict[str, Any] | None = None,
        signal: CancelSignal | None = None,
        timeout_ms: float | None = None,
    ) -> Any:
        timeout_ms = timeout_ms or self.server.timeout_ms

        async def attempt() -> Any:
            timeout = TimeoutSource(timeout_ms)
            combined = combine_signals(signal, timeout.signal)
            try:
                resp = await race(
                    self._client.request(method, endpoint, json=body), combined,
                )
                if not resp.is_success:
                    raise await from_response(resp, endpoint)
                return resp.json()
            except Exception as e:
                raise classify(e, f"Request to {endpoint} failed")
            finally:
                timeout.clear()
                combined.detach()

        if not self.server.enable_retry:
            return await attempt()

        return await with_retry(
            attempt,
            max_attempts=self.retry.max_attempts,
            initial_delay_ms=self.retry.initial_delay_ms,
            max_delay_ms=self.retry.max_delay_ms,
            backoff_multiplier=self.retry.backoff_multiplier,
            signal=signal,
        )
