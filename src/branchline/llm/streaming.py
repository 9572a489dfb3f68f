"""Streaming chat over Ollama's NDJSON ``/api/chat`` endpoint.

``ChatStream`` is the single read/parse/accumulate loop.  Iterate it to pull
records as they arrive; once exhausted, ``stream.result`` holds the
accumulated ``StreamChatResult``.  ``stream_chat_with_callbacks()`` is a thin
push-style adapter that drives a ``ChatStream`` to completion.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import httpx

from branchline.types import StreamChatResult, StreamState

from .cancellation import CancelSignal, TimeoutSource, combine_signals, race
from .errors import OllamaAbortError, OllamaStreamError, classify, from_response
from .ndjson import NDJSONParser

_logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 120000

ChatChunk = dict[str, Any]


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class ChatStream:
    """One streaming chat request.

    Usage::

        stream = stream_chat(request, base_url="http://localhost:11434")
        async for chunk in stream:
            print(chunk["message"]["content"], end="")
        print(stream.result.response)

    The request is only issued when iteration starts.  Failures raise a
    classified ``OllamaError``; an abort raises ``OllamaAbortError`` and
    leaves ``state`` at ``ABORTED``, distinct from ``FAILED``.
    """

    def __init__(
        self,
        request: dict[str, Any],
        *,
        base_url: str,
        timeout_ms: float = DEFAULT_TIMEOUT_MS,
        signal: CancelSignal | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.request = request
        self.base_url = base_url.rstrip("/")
        self.timeout_ms = timeout_ms
        self.signal = signal
        self.state = StreamState.IDLE
        self._http_client = http_client
        self._result: StreamChatResult | None = None
        self._gen: Any = None

    @property
    def result(self) -> StreamChatResult | None:
        """The accumulated result; set once the stream completed."""
        return self._result

    def __aiter__(self) -> ChatStream:
        return self

    async def __anext__(self) -> ChatChunk:
        if self._gen is None:
            self._gen = self._run()
        return await self._gen.__anext__()

    async def aclose(self) -> None:
        """Stop reading and release the connection."""
        if self._gen is not None:
            await self._gen.aclose()

    async def __aenter__(self) -> ChatStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    async def _run(self) -> Any:
        external = self.signal
        if external is not None and external.aborted:
            self.state = StreamState.ABORTED
            raise OllamaAbortError("Request aborted before starting")

        timeout = TimeoutSource(self.timeout_ms)
        remove_listener = (
            external.add_listener(lambda _reason: timeout.clear())
            if external is not None else None
        )
        combined = combine_signals(external, timeout.signal)

        client = self._http_client
        owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_ms / 1000, connect=30, read=300),
            )

        payload = {**self.request, "stream": True}
        parser: NDJSONParser[ChatChunk] = NDJSONParser()
        result = StreamChatResult()
        response: httpx.Response | None = None
        records = 0
        start = time.monotonic()

        try:
            self.state = StreamState.REQUESTING
            try:
                http_request = client.build_request(
                    "POST", f"{self.base_url}/api/chat", json=payload,
                )
                response = await race(client.send(http_request, stream=True), combined)
            except Exception as e:
                raise classify(e, "Failed to connect to Ollama")
            finally:
                # The deadline covers the request phase only
                timeout.clear()

            if not response.is_success:
                raise await from_response(response, "Chat request failed")

            self.state = StreamState.STREAMING
            _logger.debug(
                "Streaming %s from %s (HTTP %d)",
                payload.get("model"), self.base_url, response.status_code,
            )

            chunks = response.aiter_bytes().__aiter__()
            while True:
                data = await race(_next_chunk(chunks), combined)
                if data is None:
                    break
                for record in parser.parse(data):
                    records += 1
                    _accumulate(result, record)
                    yield record

            for record in parser.flush():
                records += 1
                _accumulate(result, record)
                yield record

            if records == 0:
                raise OllamaStreamError("Response body was empty")

        except asyncio.CancelledError:
            self.state = StreamState.ABORTED
            raise
        except GeneratorExit:
            self.state = StreamState.ABORTED
            raise
        except Exception as e:
            err = classify(e, None if response is None else "Streaming failed")
            self.state = StreamState.ABORTED if err.is_abort else StreamState.FAILED
            _logger.debug("Stream ended with %r", err)
            raise err
        else:
            self._result = result
            self.state = StreamState.COMPLETED
            _logger.info(
                "Stream completed: %d records, %d chars in %.0f ms",
                records, len(result.content), (time.monotonic() - start) * 1000,
            )
        finally:
            timeout.clear()
            combined.detach()
            if remove_listener is not None:
                remove_listener()
            if response is not None:
                try:
                    await response.aclose()
                except Exception as e:
                    _logger.debug("Ignoring error while closing stream: %s", e)
            if owns_client:
                await client.aclose()


def _accumulate(result: StreamChatResult, record: ChatChunk) -> None:
    if not isinstance(record, dict):
        raise OllamaStreamError(
            f"Expected a JSON object per line, got {type(record).__name__}",
        )
    if "error" in record and not record.get("message"):
        raise OllamaStreamError(f"Server reported an error: {record['error']}")

    message = record.get("message") or {}
    if message.get("content"):
        result.content += message["content"]
    if message.get("thinking"):
        result.thinking += message["thinking"]
    if message.get("tool_calls"):
        # Only one tool-call burst is expected per turn
        result.tool_calls = message["tool_calls"]
    if record.get("done"):
        result.response = record


def stream_chat(
    request: dict[str, Any],
    *,
    base_url: str,
    timeout_ms: float = DEFAULT_TIMEOUT_MS,
    signal: CancelSignal | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ChatStream:
    """Create a ``ChatStream`` for *request* (``stream`` is forced on)."""
    return ChatStream(
        request,
        base_url=base_url,
        timeout_ms=timeout_ms,
        signal=signal,
        http_client=http_client,
    )


# ---------------------------------------------------------------------------
# Callback adapter
# ---------------------------------------------------------------------------

@dataclass
class StreamCallbacks:
    """Observers for ``stream_chat_with_callbacks``.

    Each may be a plain function or a coroutine function.
    """

    on_token: Callable[[str], Any] | None = None
    on_chunk: Callable[[ChatChunk], Any] | None = None
    on_tool_call: Callable[[list[dict[str, Any]]], Any] | None = None
    on_complete: Callable[[StreamChatResult], Any] | None = None
    on_error: Callable[[Exception], Any] | None = None


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    ret = callback(*args)
    if inspect.isawaitable(ret):
        await ret


async def stream_chat_with_callbacks(
    request: dict[str, Any],
    callbacks: StreamCallbacks,
    **options: Any,
) -> StreamChatResult:
    """Drive a ``ChatStream`` to completion, reporting through *callbacks*.

    ``on_chunk`` fires for every record and ``on_token`` for every content
    delta.  ``on_tool_call`` fires once, the first time tool calls appear.
    Exactly one of ``on_complete`` / ``on_error`` fires at the end; errors
    are re-raised after ``on_error``.  The stream is closed on every exit,
    including a callback raising mid-stream.
    """
    tool_calls_emitted = False

    try:
        async with stream_chat(request, **options) as stream:
            async for chunk in stream:
                await _notify(callbacks.on_chunk, chunk)
                message = chunk.get("message") or {}
                if message.get("content"):
                    await _notify(callbacks.on_token, message["content"])
                if message.get("tool_calls") and not tool_calls_emitted:
                    tool_calls_emitted = True
                    await _notify(callbacks.on_tool_call, message["tool_calls"])

        result = stream.result or StreamChatResult()
        if result.tool_calls and not tool_calls_emitted:
            tool_calls_emitted = True
            await _notify(callbacks.on_tool_call, result.tool_calls)
    except Exception as e:
        err = classify(e)
        await _notify(callbacks.on_error, err)
        raise err

    await _notify(callbacks.on_complete, result)
    return result


async def collect_stream(
    stream: ChatStream,
) -> tuple[list[ChatChunk], StreamChatResult | None]:
    """Drain *stream*, returning every record and the final result."""
    chunks = [chunk async for chunk in stream]
    return chunks, stream.result
