"""Chat session: streams model replies into the message tree.

    user node → empty assistant node → stream → append deltas → finalize

The session owns no protocol or tree logic itself; it wires the client,
the tree engine, the in-memory conversation state and the context tracker
together and emits events.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from branchline.context import ContextTracker
from branchline.events.bus import EventBus
from branchline.llm.cancellation import CancelSignal
from branchline.llm.client import ChatOptions, OllamaClient
from branchline.llm.errors import OllamaError
from branchline.tree.conversation import ConversationState
from branchline.tree.engine import MessageNotFoundError, MessageTree
from branchline.types import EventType, Message, MessageNode, ToolCallRecord

_logger = logging.getLogger(__name__)


class ThrottledAppender:
    """Batch streamed deltas into ``append_to_message`` calls.

    Deltas are buffered and written at most once per *interval_ms*;
    ``flush()`` writes whatever is left.
    """

    def __init__(
        self,
        tree: MessageTree,
        message_id: str,
        interval_ms: float = 50,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tree = tree
        self.message_id = message_id
        self.interval_ms = interval_ms
        self._clock = clock
        self._buffer: list[str] = []
        self._last_write = clock()
        self.writes = 0

    async def add(self, delta: str) -> None:
        self._buffer.append(delta)
        if (self._clock() - self._last_write) * 1000 >= self.interval_ms:
            await self.flush()

    async def flush(self) -> None:
        if not self._buffer:
            return
        text = "".join(self._buffer)
        self._buffer.clear()
        self._last_write = self._clock()
        await self._tree.append_to_message(self.message_id, text)
        self.writes += 1


class ChatSession:
    """One conversation being chatted in.

    Parameters
    ----------
    client:
        Ollama client used for streaming replies.
    tree:
        Tree engine the conversation is persisted through.
    conversation_id:
        The conversation to operate on.
    model:
        Model used for replies.
    event_bus:
        Event bus for observers (optional).
    context:
        Context tracker updated while replies stream (optional).
    append_interval_ms:
        Minimum spacing of content writes while streaming.
    """

    def __init__(
        self,
        client: OllamaClient,
        tree: MessageTree,
        conversation_id: str,
        model: str,
        event_bus: EventBus | None = None,
        context: ContextTracker | None = None,
        append_interval_ms: float = 50,
    ) -> None:
        self._client = client
        self._tree = tree
        self.conversation_id = conversation_id
        self.model = model
        self._event_bus = event_bus or EventBus()
        self.context = context or ContextTracker(model)
        self.append_interval_ms = append_interval_ms
        self.state = ConversationState(conversation_id)

    async def load(self) -> ConversationState:
        """Read the conversation from the store, newest branch selected."""
        self.state = await self._tree.load_conversation(self.conversation_id)
        self.context.update(self.state.active_messages, force=True)
        return self.state

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send(
        self,
        content: str,
        images: list[str] | None = None,
        *,
        signal: CancelSignal | None = None,
        options: dict[str, Any] | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> MessageNode:
        """Add a user message at the active leaf and stream the reply.

        Returns the assistant node.
        """
        user = await self._add(Message("user", content, images), self.state.leaf_id)
        return await self._respond(user.id, signal=signal, options=options, tools=tools)

    async def regenerate(
        self,
        assistant_id: str | None = None,
        *,
        signal: CancelSignal | None = None,
        options: dict[str, Any] | None = None,
    ) -> MessageNode:
        """Stream a new reply as a sibling of an existing assistant message.

        Defaults to the active leaf.  The old reply stays as a branch.
        """
        target_id = assistant_id or self.state.leaf_id
        node = self.state.messages.get(target_id) if target_id else None
        if node is None:
            raise MessageNotFoundError(str(target_id))
        if node.role != "assistant":
            raise ValueError(f"Message {node.id} is a {node.role} message, not assistant")
        if node.parent_id is None:
            raise ValueError(f"Assistant message {node.id} has no prompt to answer")
        return await self._respond(node.parent_id, signal=signal, options=options)

    async def edit(
        self,
        user_message_id: str,
        content: str,
        images: list[str] | None = None,
        *,
        signal: CancelSignal | None = None,
        options: dict[str, Any] | None = None,
    ) -> MessageNode:
        """Branch off an edited copy of a user message and stream a reply."""
        node = self.state.messages.get(user_message_id)
        if node is None:
            raise MessageNotFoundError(user_message_id)
        if node.role != "user":
            raise ValueError(f"Message {node.id} is a {node.role} message, not user")
        edited = await self._add(Message("user", content, images), node.parent_id)
        return await self._respond(edited.id, signal=signal, options=options)

    async def delete(self, message_id: str) -> list[str]:
        """Delete a message and everything below it."""
        deleted = await self._tree.delete_message(message_id)
        self.state.remove(deleted)
        self.context.update(self.state.active_messages, force=True)
        await self._emit(EventType.MESSAGES_DELETED, message_ids=deleted)
        return deleted

    def switch_branch(self, message_id: str, direction: str) -> list[str]:
        path = self.state.switch_branch(message_id, direction)
        self.context.update(self.state.active_messages, force=True)
        return path

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _add(self, message: Message, parent_id: str | None) -> MessageNode:
        node = await self._tree.add_message(self.conversation_id, message, parent_id)
        self.state.insert(node)
        await self._emit(
            EventType.MESSAGE_ADDED, node.id, role=node.role, parent_id=parent_id,
        )
        return node

    async def _respond(
        self,
        parent_id: str,
        *,
        signal: CancelSignal | None = None,
        options: dict[str, Any] | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> MessageNode:
        # Only the ancestry: a regenerated reply must not see the one it replaces
        prompt = [
            self.state.messages[i].to_wire()
            for i in self.state.get_path_to_message(parent_id)
        ]
        assistant = await self._add(Message("assistant", ""), parent_id)

        stream = self._client.stream_chat(
            ChatOptions(model=self.model, messages=prompt, options=options, tools=tools),
            signal=signal,
        )
        appender = ThrottledAppender(self._tree, assistant.id, self.append_interval_ms)
        await self._emit(EventType.STREAM_STARTED, assistant.id)

        try:
            async for chunk in stream:
                delta = (chunk.get("message") or {}).get("content")
                if not delta:
                    continue
                assistant.content += delta
                await appender.add(delta)
                self.context.update(self.state.active_messages)
                await self._emit(EventType.STREAM_TOKEN, assistant.id, token=delta)
        except OllamaError as e:
            event = EventType.STREAM_ABORTED if e.is_abort else EventType.STREAM_FAILED
            _logger.info("Reply %s ended early: %s", assistant.id, e.message)
            await self._emit(
                event,
                assistant.id,
                error=e.message,
                code=e.code.value,
                partial_content=assistant.content,
            )
            raise
        finally:
            await stream.aclose()
            await appender.flush()
            self.context.flush()

        result = stream.result
        if result is not None and result.tool_calls:
            records = [ToolCallRecord.from_wire(tc) for tc in result.tool_calls]
            await self._tree.set_tool_calls(assistant.id, records)
            assistant.tool_calls = records
            await self._emit(
                EventType.STREAM_TOOL_CALLS,
                assistant.id,
                tool_calls=[r.to_dict() for r in records],
            )

        self.state.focus(assistant.id)
        await self._emit(
            EventType.STREAM_COMPLETED,
            assistant.id,
            content=assistant.content,
            usage=result.usage if result is not None else {},
        )
        await self._emit(
            EventType.CONTEXT_UPDATED,
            used_tokens=self.context.usage.used_tokens,
            max_tokens=self.context.usage.max_tokens,
        )
        return assistant

    async def _emit(
        self, event_type: EventType, message_id: str | None = None, **data: Any,
    ) -> None:
        await self._event_bus.emit(event_type, message_id, **data)
