"""Context-window usage tracking.

``ContextTracker`` is an explicit object handed to whoever needs usage data.
Updates arriving within ``throttle_ms`` of the last applied update are
coalesced: only the newest message list is kept, and it is applied either by
the next update outside the window or by ``flush()``, which callers invoke
when a stream completes.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from branchline.types import MessageNode

_logger = logging.getLogger(__name__)

# Calibrated for LLaMA-style tokenizers
_CHARS_PER_TOKEN = 3.7
_TOKENS_PER_WORD = 1.3
# Vision models encode each image as a fixed block
_TOKENS_PER_IMAGE = 765
# Role markers and special tokens per message
_FORMAT_OVERHEAD = 4

WARNING_THRESHOLD = 0.85
CRITICAL_THRESHOLD = 0.95

DEFAULT_CONTEXT_LENGTH = 4096

# First match wins, so specific patterns precede general ones
_MODEL_CONTEXT_LIMITS: list[tuple[re.Pattern[str], int]] = [
    (re.compile(p, re.IGNORECASE), n) for p, n in [
        (r"llama-?3\.2", 128000),
        (r"llama-?3\.1", 128000),
        (r"llama3:.*-instruct", 128000),
        (r"llama-?3(?!\.)", 8192),
        (r"llama-?2", 4096),
        (r"mistral-large", 128000),
        (r"mistral-medium", 32000),
        (r"mistral.*nemo", 128000),
        (r"mistral", 32000),
        (r"mixtral", 32000),
        (r"qwen2\.5", 128000),
        (r"qwen2", 32000),
        (r"qwen", 8192),
        (r"phi-3", 128000),
        (r"phi-2", 2048),
        (r"phi", 4096),
        (r"gemma", 8192),
        (r"codellama", 16384),
        (r"deepseek.*coder", 16384),
        (r"deepseek", 32000),
        (r"vicuna", 4096),
        (r"yi", 200000),
        (r"command-r", 128000),
        (r"b?llava", 4096),
        (r"orca", 4096),
        (r"nous-hermes", 8192),
        (r"openhermes", 8192),
        (r"neural-chat", 8192),
        (r"starling", 8192),
        (r"dolphin", 16384),
        (r"zephyr", 32000),
    ]
]


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Weighted blend of character- and word-based estimates."""
    if not text:
        return 0
    by_chars = math.ceil(len(text) / _CHARS_PER_TOKEN)
    by_words = math.ceil(len(text.split()) * _TOKENS_PER_WORD)
    return math.ceil(by_chars * 0.6 + by_words * 0.4)


def estimate_message_tokens(content: str, images: Sequence[Any] | None = None) -> int:
    return estimate_tokens(content) + len(images or ()) * _TOKENS_PER_IMAGE


def estimate_conversation_tokens(messages: Sequence[MessageNode]) -> int:
    total = sum(estimate_message_tokens(m.content, m.images) for m in messages)
    return total + len(messages) * _FORMAT_OVERHEAD


def model_context_limit(model: str) -> int:
    """Context window size for *model*, by name pattern."""
    for pattern, length in _MODEL_CONTEXT_LIMITS:
        if pattern.search(model):
            return length
    return DEFAULT_CONTEXT_LENGTH


def format_token_count(tokens: int) -> str:
    if tokens < 1000:
        return str(tokens)
    if tokens < 10000:
        return f"{tokens / 1000:.1f}K"
    return f"{round(tokens / 1000)}K"


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

@dataclass
class ContextUsage:
    used_tokens: int
    max_tokens: int

    @property
    def percentage(self) -> float:
        return self.used_tokens / self.max_tokens * 100 if self.max_tokens else 0.0

    @property
    def remaining_tokens(self) -> int:
        return max(0, self.max_tokens - self.used_tokens)

    @property
    def is_near_limit(self) -> bool:
        return self.percentage >= WARNING_THRESHOLD * 100

    @property
    def is_critical(self) -> bool:
        return self.percentage >= CRITICAL_THRESHOLD * 100

    @property
    def status_message(self) -> str:
        used = format_token_count(self.used_tokens)
        limit = format_token_count(self.max_tokens)
        summary = f"{used} / {limit} tokens ({self.percentage:.0f}%)"
        if self.is_critical:
            return f"Context almost full: {summary}"
        if self.is_near_limit:
            return f"Approaching context limit: {summary}"
        return summary


class ContextTracker:
    """Debounced token-usage estimate for the active path of a conversation."""

    def __init__(
        self,
        model: str = "",
        throttle_ms: float = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.throttle_ms = throttle_ms
        self._clock = clock
        self.model = model
        self.max_tokens = model_context_limit(model) if model else DEFAULT_CONTEXT_LENGTH
        self._cache: dict[str, tuple[int, int]] = {}
        self._last_applied: float | None = None
        self._pending: list[MessageNode] | None = None
        self.usage = ContextUsage(0, self.max_tokens)

    def set_model(self, model: str) -> None:
        self.model = model
        self.max_tokens = model_context_limit(model)
        self.usage = ContextUsage(self.usage.used_tokens, self.max_tokens)

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def update(self, messages: Sequence[MessageNode], force: bool = False) -> bool:
        """Offer a new message list.  Returns True when it was applied now.

        Inside the throttle window the list is parked until the next update
        outside the window or ``flush()``.
        """
        now = self._clock()
        if (
            not force
            and self._last_applied is not None
            and (now - self._last_applied) * 1000 < self.throttle_ms
        ):
            self._pending = list(messages)
            return False
        self._apply(messages, now)
        return True

    def flush(self) -> ContextUsage:
        """Apply any parked update immediately."""
        if self._pending is not None:
            self._apply(self._pending, self._clock())
        return self.usage

    def would_exceed(self, new_tokens: int) -> bool:
        return self.usage.used_tokens + new_tokens > self.max_tokens

    def reset(self) -> None:
        self._cache.clear()
        self._pending = None
        self._last_applied = None
        self.usage = ContextUsage(0, self.max_tokens)

    def _estimate(self, node: MessageNode) -> int:
        # A node growing during a stream changes size and is re-estimated
        size = len(node.content) + len(node.images or ()) * _TOKENS_PER_IMAGE
        cached = self._cache.get(node.id)
        if cached is not None and cached[0] == size:
            return cached[1]
        tokens = estimate_message_tokens(node.content, node.images)
        self._cache[node.id] = (size, tokens)
        return tokens

    def _apply(self, messages: Sequence[MessageNode], now: float) -> None:
        self._pending = None
        self._last_applied = now
        used = sum(self._estimate(m) for m in messages)
        used += len(messages) * _FORMAT_OVERHEAD
        self.usage = ContextUsage(used, self.max_tokens)
        if self.usage.is_near_limit:
            _logger.warning("%s", self.usage.status_message)
