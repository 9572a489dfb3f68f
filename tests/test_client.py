"""Tests for OllamaClient with a mocked transport."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from branchline.config import RetrySpec, ServerSpec
from branchline.llm.cancellation import CancelController
from branchline.llm.client import ChatOptions, OllamaClient, build_chat_request
from branchline.llm.errors import (
    OllamaAbortError,
    OllamaModelNotFoundError,
    OllamaServerError,
)
from branchline.llm.streaming import StreamCallbacks
from branchline.types import StreamState

BASE_URL = "http://ollama.test"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _Recorder:
    """Transport handler that replays queued responses and records requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        # Fresh copy so a queued response can be served more than once
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def _make_client(recorder: _Recorder, **server) -> OllamaClient:
    return OllamaClient(
        ServerSpec(base_url=BASE_URL, **server),
        RetrySpec(max_attempts=3, initial_delay_ms=1),
        transport=httpx.MockTransport(recorder),
    )


def _ndjson(*records: dict) -> bytes:
    return b"".join(json.dumps(r).encode() + b"\n" for r in records)


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

class TestBuildChatRequest:
    def test_unset_optionals_are_omitted(self):
        request = build_chat_request(
            ChatOptions(model="m", messages=[{"role": "user", "content": "hi"}]),
            stream=False,
        )
        assert request == {
            "model": "m",
            "messages": [{"role": "user", "content": "hi"}],
            "stream": False,
        }

    def test_optionals_are_passed_through(self):
        request = build_chat_request(
            ChatOptions(
                model="m",
                messages=[],
                format="json",
                tools=[{"type": "function"}],
                options={"temperature": 0.2},
                keep_alive="5m",
                think=True,
            ),
            stream=True,
        )
        assert request["format"] == "json"
        assert request["tools"] == [{"type": "function"}]
        assert request["options"] == {"temperature": 0.2}
        assert request["keep_alive"] == "5m"
        assert request["think"] is True
        assert request["stream"] is True


# ---------------------------------------------------------------------------
# Non-streaming endpoints
# ---------------------------------------------------------------------------

class TestEndpoints:
    async def test_list_models(self):
        recorder = _Recorder(httpx.Response(200, json={"models": [{"name": "llama3.2"}]}))
        async with _make_client(recorder) as client:
            data = await client.list_models()
        assert data["models"][0]["name"] == "llama3.2"
        assert recorder.requests[0].method == "GET"
        assert recorder.requests[0].url.path == "/api/tags"

    async def test_list_running_models(self):
        recorder = _Recorder(httpx.Response(200, json={"models": []}))
        async with _make_client(recorder) as client:
            await client.list_running_models()
        assert recorder.requests[0].url.path == "/api/ps"

    async def test_show_model_by_name(self):
        recorder = _Recorder(httpx.Response(200, json={"details": {"family": "llama"}}))
        async with _make_client(recorder) as client:
            data = await client.show_model("llama3.2")
        assert data["details"]["family"] == "llama"
        assert recorder.body() == {"model": "llama3.2"}

    async def test_chat_is_non_streaming(self):
        recorder = _Recorder(httpx.Response(200, json={
            "message": {"role": "assistant", "content": "hello"}, "done": True,
        }))
        async with _make_client(recorder) as client:
            data = await client.chat(ChatOptions(model="m", messages=[]))
        assert data["message"]["content"] == "hello"
        assert recorder.body()["stream"] is False

    async def test_generate_forces_stream_off(self):
        recorder = _Recorder(httpx.Response(200, json={"response": "x"}))
        async with _make_client(recorder) as client:
            await client.generate({"model": "m", "prompt": "p", "stream": True})
        assert recorder.requests[0].url.path == "/api/generate"
        assert recorder.body()["stream"] is False

    async def test_embed(self):
        recorder = _Recorder(httpx.Response(200, json={"embeddings": [[0.1, 0.2]]}))
        async with _make_client(recorder) as client:
            data = await client.embed({"model": "m", "input": "text"})
        assert data["embeddings"] == [[0.1, 0.2]]
        assert recorder.requests[0].url.path == "/api/embed"


class TestRetry:
    async def test_server_error_is_retried(self):
        recorder = _Recorder(
            httpx.Response(503, json={"error": "loading"}),
            httpx.Response(503, json={"error": "loading"}),
            httpx.Response(200, json={"version": "0.5.1"}),
        )
        with patch("branchline.llm.retry.sleep", new=AsyncMock()):
            async with _make_client(recorder) as client:
                data = await client.get_version()
        assert data == {"version": "0.5.1"}
        assert len(recorder.requests) == 3

    async def test_retry_bound(self):
        recorder = _Recorder(httpx.Response(500, json={"error": "boom"}))
        with patch("branchline.llm.retry.sleep", new=AsyncMock()):
            async with _make_client(recorder) as client:
                with pytest.raises(OllamaServerError):
                    await client.list_models()
        assert len(recorder.requests) == 3

    async def test_model_not_found_is_not_retried(self):
        recorder = _Recorder(httpx.Response(404, json={"error": "model 'foo' not found"}))
        async with _make_client(recorder) as client:
            with pytest.raises(OllamaModelNotFoundError) as exc_info:
                await client.show_model("foo")
        assert exc_info.value.model_name == "foo"
        assert len(recorder.requests) == 1

    async def test_retry_can_be_disabled(self):
        recorder = _Recorder(httpx.Response(503, json={"error": "loading"}))
        async with _make_client(recorder, enable_retry=False) as client:
            with pytest.raises(OllamaServerError):
                await client.list_models()
        assert len(recorder.requests) == 1

    async def test_aborted_signal_makes_no_request(self):
        recorder = _Recorder(httpx.Response(200, json={}))
        controller = CancelController()
        controller.abort()
        async with _make_client(recorder) as client:
            with pytest.raises(OllamaAbortError):
                await client.list_models(signal=controller.signal)
        assert recorder.requests == []

    async def test_reused_signal_keeps_no_listeners(self):
        recorder = _Recorder(httpx.Response(200, json={"version": "0.5.1"}))
        controller = CancelController()
        async with _make_client(recorder) as client:
            for _ in range(50):
                await client.get_version(signal=controller.signal)
        assert controller.signal._listeners == []
        assert len(recorder.requests) == 50

    async def test_reused_signal_still_aborts_later_calls(self):
        recorder = _Recorder(httpx.Response(200, json={"version": "0.5.1"}))
        controller = CancelController()
        async with _make_client(recorder) as client:
            await client.get_version(signal=controller.signal)
            controller.abort()
            with pytest.raises(OllamaAbortError):
                await client.get_version(signal=controller.signal)
        assert len(recorder.requests) == 1


class TestConnectivity:
    async def test_connection_ok(self):
        recorder = _Recorder(httpx.Response(200, json={"version": "0.5.1"}))
        async with _make_client(recorder) as client:
            status = await client.test_connection()
            healthy = await client.health_check()
        assert status.connected
        assert status.version == "0.5.1"
        assert status.base_url == BASE_URL
        assert status.latency_ms >= 0
        assert healthy

    async def test_connection_refused(self):
        recorder = _Recorder(httpx.ConnectError("Connection refused"))
        async with _make_client(recorder, enable_retry=False) as client:
            status = await client.test_connection()
            healthy = await client.health_check()
        assert not status.connected
        assert status.error_code == "CONNECTION_ERROR"
        assert "Connection refused" in status.error
        assert not healthy


class TestWithConfig:
    async def test_returns_new_client(self):
        recorder = _Recorder(httpx.Response(200, json={"models": []}))
        client = _make_client(recorder)
        other = client.with_config(base_url="http://elsewhere.test", timeout_ms=5000)
        try:
            assert other is not client
            assert other.base_url == "http://elsewhere.test"
            assert other.server.timeout_ms == 5000
            assert other.retry == client.retry
            assert client.base_url == BASE_URL
            await other.list_models()
            assert recorder.requests[0].url.host == "elsewhere.test"
        finally:
            await client.close()
            await other.close()

    async def test_replaces_retry(self):
        client = _make_client(_Recorder(httpx.Response(200)))
        other = client.with_config(retry=RetrySpec(max_attempts=7))
        assert other.retry.max_attempts == 7
        assert other.server == client.server
        await client.close()
        await other.close()


# ---------------------------------------------------------------------------
# Streaming through the client
# ---------------------------------------------------------------------------

class TestStreamingChat:
    async def test_stream_chat(self):
        recorder = _Recorder(httpx.Response(200, content=_ndjson(
            {"message": {"role": "assistant", "content": "Hi"}, "done": False},
            {"message": {"role": "assistant", "content": "!"}, "done": True, "eval_count": 2},
        )))
        async with _make_client(recorder) as client:
            stream = client.stream_chat(ChatOptions(model="m", messages=[]))
            tokens = [c["message"]["content"] async for c in stream]
        assert tokens == ["Hi", "!"]
        assert stream.state is StreamState.COMPLETED
        assert stream.result.content == "Hi!"
        assert recorder.body()["stream"] is True

    async def test_streams_are_never_retried(self):
        recorder = _Recorder(httpx.Response(503, json={"error": "busy"}))
        async with _make_client(recorder) as client:
            with pytest.raises(OllamaServerError):
                async for _ in client.stream_chat(ChatOptions(model="m", messages=[])):
                    pass
        assert len(recorder.requests) == 1

    async def test_stream_chat_with_callbacks(self):
        recorder = _Recorder(httpx.Response(200, content=_ndjson(
            {"message": {"role": "assistant", "content": "ok"}, "done": True},
        )))
        tokens = []
        async with _make_client(recorder) as client:
            result = await client.stream_chat_with_callbacks(
                ChatOptions(model="m", messages=[]),
                StreamCallbacks(on_token=tokens.append),
            )
        assert tokens == ["ok"]
        assert result.content == "ok"
