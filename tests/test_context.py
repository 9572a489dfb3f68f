"""Tests for token estimation and the debounced context tracker."""

from __future__ import annotations

import logging

import pytest

from branchline.context import (
    DEFAULT_CONTEXT_LENGTH,
    ContextTracker,
    ContextUsage,
    estimate_conversation_tokens,
    estimate_message_tokens,
    estimate_tokens,
    format_token_count,
    model_context_limit,
)
from branchline.types import MessageNode


def _msg(node_id: str, content: str = "", images: list[str] | None = None) -> MessageNode:
    return MessageNode(id=node_id, conversation_id="c", parent_id=None, role="user",
                       content=content, images=images)


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------

class TestEstimation:
    def test_empty(self):
        assert estimate_tokens("") == 0

    def test_single_word(self):
        assert estimate_tokens("a") == 2

    def test_grows_with_text(self):
        short = estimate_tokens("The quick brown fox")
        long = estimate_tokens("The quick brown fox jumps over the lazy dog " * 20)
        assert 0 < short < long

    def test_images_cost_a_fixed_block(self):
        assert estimate_message_tokens("", ["img1", "img2"]) == 2 * 765

    def test_conversation_adds_format_overhead(self):
        assert estimate_conversation_tokens([_msg("1"), _msg("2")]) == 8


class TestModelLimits:
    @pytest.mark.parametrize("model, limit", [
        ("llama3.2:3b", 128000),
        ("llama3.1:8b", 128000),
        ("llama3:8b-instruct-q4_0", 128000),
        ("llama3:8b", 8192),
        ("llama2:13b", 4096),
        ("mistral-nemo", 128000),
        ("mistral:7b", 32000),
        ("qwen2.5-coder:7b", 128000),
        ("qwen2:7b", 32000),
        ("phi-3-mini", 128000),
        ("phi3:mini", 4096),
        ("gemma2:9b", 8192),
        ("codellama:13b", 16384),
        ("deepseek-coder-v2", 16384),
        ("command-r", 128000),
        ("bakllava", 4096),
        ("some-unknown-thing", DEFAULT_CONTEXT_LENGTH),
    ])
    def test_lookup(self, model, limit):
        assert model_context_limit(model) == limit

    def test_case_insensitive(self):
        assert model_context_limit("Mistral-Large") == 128000

    def test_first_match_wins(self):
        # "phi" precedes "dolphin" in the table
        assert model_context_limit("dolphin-phi") == 4096


class TestFormatting:
    @pytest.mark.parametrize("tokens, text", [
        (0, "0"),
        (999, "999"),
        (1500, "1.5K"),
        (9999, "10.0K"),
        (12345, "12K"),
        (128000, "128K"),
    ])
    def test_format_token_count(self, tokens, text):
        assert format_token_count(tokens) == text


class TestContextUsage:
    def test_thresholds(self):
        assert not ContextUsage(800, 1000).is_near_limit
        assert ContextUsage(850, 1000).is_near_limit
        assert not ContextUsage(900, 1000).is_critical
        assert ContextUsage(950, 1000).is_critical

    def test_remaining_never_negative(self):
        assert ContextUsage(1200, 1000).remaining_tokens == 0
        assert ContextUsage(200, 1000).remaining_tokens == 800

    def test_status_message(self):
        assert ContextUsage(500, 1000).status_message == "500 / 1.0K tokens (50%)"
        assert ContextUsage(900, 1000).status_message.startswith("Approaching context limit")
        assert ContextUsage(990, 1000).status_message.startswith("Context almost full")

    def test_zero_max(self):
        assert ContextUsage(10, 0).percentage == 0.0


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class TestContextTracker:
    def test_limit_follows_model(self):
        tracker = ContextTracker("llama3.2")
        assert tracker.max_tokens == 128000
        tracker.set_model("llama2")
        assert tracker.max_tokens == 4096
        assert tracker.usage.max_tokens == 4096

    def test_no_model_uses_default(self):
        assert ContextTracker().max_tokens == DEFAULT_CONTEXT_LENGTH

    def test_updates_within_window_are_coalesced(self):
        clock = _Clock()
        tracker = ContextTracker("llama2", throttle_ms=500, clock=clock)

        assert tracker.update([_msg("1", "hello")]) is True
        first = tracker.usage.used_tokens

        clock.advance(100)
        assert tracker.update([_msg("1", "hello"), _msg("2", "more text here")]) is False
        assert tracker.has_pending
        assert tracker.usage.used_tokens == first

        clock.advance(100)
        latest = [_msg("1", "hello"), _msg("2", "more text here, and more")]
        assert tracker.update(latest) is False

        usage = tracker.flush()
        assert not tracker.has_pending
        assert usage.used_tokens == estimate_conversation_tokens(latest)

    def test_update_after_window_applies(self):
        clock = _Clock()
        tracker = ContextTracker("llama2", throttle_ms=500, clock=clock)
        tracker.update([_msg("1", "a")])
        clock.advance(600)
        assert tracker.update([_msg("1", "a"), _msg("2", "b")]) is True

    def test_force_bypasses_window(self):
        clock = _Clock()
        tracker = ContextTracker("llama2", throttle_ms=500, clock=clock)
        tracker.update([_msg("1", "a")])
        assert tracker.update([], force=True) is True
        assert tracker.usage.used_tokens == 0

    def test_flush_without_pending_keeps_usage(self):
        tracker = ContextTracker("llama2")
        tracker.update([_msg("1", "hello")])
        before = tracker.usage
        assert tracker.flush() is before

    def test_growing_message_is_re_estimated(self):
        clock = _Clock()
        tracker = ContextTracker("llama2", throttle_ms=0, clock=clock)
        node = _msg("1", "short")
        tracker.update([node])
        small = tracker.usage.used_tokens
        node.content += " and then a lot more streamed text arrives"
        tracker.update([node])
        assert tracker.usage.used_tokens > small

    def test_would_exceed(self):
        tracker = ContextTracker("llama2")
        tracker.update([_msg("1", images=["x"] * 5)])
        assert tracker.usage.used_tokens == 5 * 765 + 4
        assert not tracker.would_exceed(200)
        assert tracker.would_exceed(300)

    def test_reset(self):
        tracker = ContextTracker("llama2")
        tracker.update([_msg("1", "hello")])
        tracker.reset()
        assert tracker.usage.used_tokens == 0
        assert not tracker.has_pending

    def test_warns_near_limit(self, caplog):
        tracker = ContextTracker("llama2")
        with caplog.at_level(logging.WARNING, logger="branchline.context"):
            tracker.update([_msg("1", images=["x"] * 5)])
        assert "Approaching context limit" in caplog.text
