"""Tests for the click CLI with a mocked Ollama server."""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
import yaml
from click.testing import CliRunner

from branchline.cli import main
from branchline.llm.client import OllamaClient


def _server(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/api/tags":
        return httpx.Response(200, json={"models": [{
            "name": "llama3.2:latest",
            "size": 2_019_393_189,
            "details": {"family": "llama", "parameter_size": "3.2B"},
        }]})
    if path == "/api/version":
        return httpx.Response(200, json={"version": "0.5.1"})
    if path == "/api/chat":
        records = [
            {"message": {"role": "assistant", "content": "Hello"}, "done": False},
            {"message": {"role": "assistant", "content": " there"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True},
        ]
        return httpx.Response(200, content=b"".join(json.dumps(r).encode() + b"\n" for r in records))
    return httpx.Response(404, json={"error": "not found"})


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused")


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "branchline.yaml"
    path.write_text(yaml.dump({
        "server": {"base_url": "http://ollama.test", "enable_retry": False},
        "storage": {"db_path": str(tmp_path / "chat.db")},
    }))
    return path


class _ScriptedPrompt:
    """Stands in for the prompt_toolkit session; replays typed lines."""

    def __init__(self, *lines: str) -> None:
        self.lines = list(lines)
        self.asked = 0

    async def prompt_async(self, message: str) -> str:
        self.asked += 1
        if not self.lines:
            raise EOFError
        return self.lines.pop(0)


def _invoke(config_file: Path, handler, *args: str, typed: _ScriptedPrompt | None = None):
    def make_client(config):
        return OllamaClient(config.server, config.retry, transport=httpx.MockTransport(handler))

    runner = CliRunner()
    with patch("branchline.cli._make_client", side_effect=make_client), \
            patch("branchline.cli._make_prompt_session", return_value=typed or _ScriptedPrompt()):
        return runner.invoke(main, ["--config", str(config_file), *args])


class TestServerCommands:
    def test_models(self, config_file):
        result = _invoke(config_file, _server, "models")
        assert result.exit_code == 0, result.output
        assert "llama3.2:latest" in result.output
        assert "3.2B" in result.output

    def test_ping(self, config_file):
        result = _invoke(config_file, _server, "ping")
        assert result.exit_code == 0
        assert "Connected" in result.output
        assert "0.5.1" in result.output

    def test_ping_unreachable(self, config_file):
        result = _invoke(config_file, _unreachable, "ping")
        assert result.exit_code == 1
        assert "Cannot reach" in result.output

    def test_models_unreachable(self, config_file):
        result = _invoke(config_file, _unreachable, "models")
        assert result.exit_code == 1
        assert "CONNECTION_ERROR" in result.output


class TestConversationCommands:
    def test_no_conversations(self, config_file):
        result = _invoke(config_file, _server, "conversations")
        assert result.exit_code == 0
        assert "No conversations yet" in result.output

    def test_one_shot_chat_is_persisted(self, config_file):
        result = _invoke(config_file, _server, "chat", "-p", "hi there")
        assert result.exit_code == 0, result.output
        assert "Hello there" in result.output

        listing = _invoke(config_file, _server, "conversations")
        assert "llama3.2" in listing.output
        assert "2" in listing.output

    def test_tree_of_unknown_conversation(self, config_file):
        result = _invoke(config_file, _server, "tree", "missing")
        assert result.exit_code == 0
        assert "has no messages" in result.output

    def test_chat_in_unknown_conversation(self, config_file):
        result = _invoke(config_file, _server, "chat", "missing", "-p", "hi")
        assert result.exit_code == 1
        assert "missing" in result.output

    def test_one_shot_chat_failure_exits_non_zero(self, config_file):
        def handler(request):
            return httpx.Response(404, json={"error": "model 'llama3.2' not found"})

        result = _invoke(config_file, handler, "chat", "-p", "hi")
        assert result.exit_code == 1
        assert "MODEL_NOT_FOUND" in result.output


class TestInteractiveChat:
    def test_turns_until_quit(self, config_file):
        typed = _ScriptedPrompt("hi", "", "/regen", "/prev", "/quit", "never read")
        result = _invoke(config_file, _server, "chat", typed=typed)
        assert result.exit_code == 0, result.output
        assert result.output.count("Hello there") >= 3
        assert typed.lines == ["never read"]

        with closing(sqlite3.connect(config_file.parent / "chat.db")) as conn:
            roles = [r[0] for r in conn.execute("SELECT role FROM messages ORDER BY rowid")]
        assert roles == ["user", "assistant", "assistant"]

    def test_end_of_input_exits_cleanly(self, config_file):
        typed = _ScriptedPrompt()
        result = _invoke(config_file, _server, "chat", typed=typed)
        assert result.exit_code == 0, result.output
        assert typed.asked == 1

    def test_regen_with_nothing_to_regenerate(self, config_file):
        result = _invoke(config_file, _server, "chat", typed=_ScriptedPrompt("/regen"))
        assert result.exit_code == 0
        assert "Nothing to regenerate" in result.output

    def test_failed_turn_keeps_the_loop_running(self, config_file):
        def handler(request):
            return httpx.Response(404, json={"error": "model 'llama3.2' not found"})

        typed = _ScriptedPrompt("hi", "again")
        result = _invoke(config_file, handler, "chat", typed=typed)
        assert result.exit_code == 0
        assert result.output.count("MODEL_NOT_FOUND") == 2
        assert typed.asked == 3
