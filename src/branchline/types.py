"""Shared data types for branchline."""

from __future__ import annotations

import enum
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

ROLES = ("system", "user", "assistant", "tool")


def new_id() -> str:
    """Opaque unique identifier for messages, conversations and attachments."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Message tree types
# ---------------------------------------------------------------------------

@dataclass
class ToolCallRecord:
    """A tool call made by the assistant, with its outcome once executed."""

    id: str
    name: str
    arguments: str = "{}"  # JSON-encoded
    result: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ToolCallRecord:
        return cls(
            id=raw["id"],
            name=raw["name"],
            arguments=raw.get("arguments", "{}"),
            result=raw.get("result"),
            error=raw.get("error"),
        )

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> ToolCallRecord:
        """Build from an Ollama ``message.tool_calls`` entry."""
        func = raw.get("function", {})
        args = func.get("arguments", {})
        if not isinstance(args, str):
            args = json.dumps(args)
        return cls(id=raw.get("id") or new_id(), name=func.get("name", ""), arguments=args)

    def to_wire(self) -> dict[str, Any]:
        try:
            args = json.loads(self.arguments)
        except json.JSONDecodeError:
            args = {}
        return {"function": {"name": self.name, "arguments": args}}


@dataclass
class Message:
    """Content of a message before it is placed in the tree."""

    role: str  # system, user, assistant, tool
    content: str = ""
    images: list[str] | None = None
    tool_calls: list[ToolCallRecord] | None = None


@dataclass
class MessageNode:
    """A node of the conversation tree.

    ``sibling_index`` is fixed at creation.  ``child_ids`` is derived from
    the store at read time and ordered by the children's ``sibling_index``.
    """

    id: str
    conversation_id: str
    parent_id: str | None
    role: str
    content: str = ""
    images: list[str] | None = None
    tool_calls: list[ToolCallRecord] | None = None
    sibling_index: int = 0
    created_at: float = field(default_factory=time.time)
    child_ids: list[str] = field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def to_wire(self) -> dict[str, Any]:
        """Render as an Ollama chat message."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.images:
            msg["images"] = list(self.images)
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        return msg


@dataclass
class MessageTreeInfo:
    """Canonical root and active path of a conversation."""

    root_message_id: str | None = None
    active_path: list[str] = field(default_factory=list)


@dataclass
class BranchInfo:
    """Position of a message among its siblings."""

    current_index: int
    total_count: int
    sibling_ids: list[str]


@dataclass
class Conversation:
    """Conversation metadata as persisted."""

    id: str
    title: str = "New conversation"
    model: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    is_pinned: bool = False
    is_archived: bool = False
    message_count: int = 0


@dataclass
class Attachment:
    """Binary file attached to a message."""

    id: str
    message_id: str
    filename: str
    mime_type: str
    data: bytes = b""
    created_at: float = field(default_factory=time.time)

    @property
    def size(self) -> int:
        return len(self.data)


# ---------------------------------------------------------------------------
# Streaming types
# ---------------------------------------------------------------------------

class StreamState(enum.Enum):
    """Lifecycle of a single streaming request."""

    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.FAILED, StreamState.ABORTED)


@dataclass
class StreamChatResult:
    """Accumulated outcome of one streaming chat request.  Not persisted."""

    content: str = ""
    response: dict[str, Any] | None = None
    tool_calls: list[dict[str, Any]] | None = None
    thinking: str = ""

    @property
    def done_reason(self) -> str | None:
        return self.response.get("done_reason") if self.response else None

    @property
    def usage(self) -> dict[str, int]:
        """Token counts from the final record, when the stream completed."""
        if not self.response:
            return {}
        usage: dict[str, int] = {}
        if "prompt_eval_count" in self.response:
            usage["prompt_tokens"] = self.response["prompt_eval_count"]
        if "eval_count" in self.response:
            usage["completion_tokens"] = self.response["eval_count"]
        if usage:
            usage["total_tokens"] = usage.get("prompt_tokens", 0) + usage.get(
                "completion_tokens", 0,
            )
        return usage


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events published by ``ChatSession``."""

    MESSAGE_ADDED = "message.added"
    MESSAGES_DELETED = "message.deleted"

    STREAM_STARTED = "stream.started"
    STREAM_TOKEN = "stream.token"
    STREAM_TOOL_CALLS = "stream.tool_calls"
    STREAM_COMPLETED = "stream.completed"
    STREAM_FAILED = "stream.failed"
    STREAM_ABORTED = "stream.aborted"

    CONTEXT_UPDATED = "context.updated"


@dataclass
class ChatEvent:
    """Event emitted via the EventBus.

    ``message_id`` names the message the event is about; it is ``None`` for
    events that concern the whole conversation.
    """

    type: EventType
    message_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
