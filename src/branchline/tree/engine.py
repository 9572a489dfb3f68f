"""Branching message tree over a ``NodeStore``.

Nodes live in the store as an arena keyed by id with parent back-links.
Children, sibling order and the active path are computed by query, never
stored.  ``sibling_index`` is assigned by counting existing siblings before
the insert; two unawaited inserts under one parent can therefore read the
same count and collide.  A persisted per-parent counter would close that
gap; until then callers must await one insert before issuing the next.
"""

from __future__ import annotations

import logging
import time

from branchline.types import (
    Message,
    MessageNode,
    MessageTreeInfo,
    ToolCallRecord,
    new_id,
)

from .conversation import ConversationState, descend_newest, link_children, newest_root
from .store import NodeStore

_logger = logging.getLogger(__name__)


class MessageNotFoundError(LookupError):
    """Raised when an operation names a message id that does not exist."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class ConversationNotFoundError(LookupError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class MessageTree:
    """Tree operations for conversations persisted in a ``NodeStore``."""

    def __init__(self, store: NodeStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_message(
        self,
        conversation_id: str,
        message: Message,
        parent_id: str | None = None,
        message_id: str | None = None,
    ) -> MessageNode:
        """Insert *message* under *parent_id* (a new root when None).

        The new node's ``sibling_index`` is the number of nodes already in
        its sibling group.  Bumps the conversation's message count.
        """
        if parent_id is not None and await self.store.get_node(parent_id) is None:
            raise MessageNotFoundError(parent_id)

        sibling_index = await self.store.count_siblings(conversation_id, parent_id)
        node = MessageNode(
            id=message_id or new_id(),
            conversation_id=conversation_id,
            parent_id=parent_id,
            role=message.role,
            content=message.content,
            images=list(message.images) if message.images else None,
            tool_calls=list(message.tool_calls) if message.tool_calls else None,
            sibling_index=sibling_index,
            created_at=time.time(),
        )
        await self.store.insert_node(node)
        await self.store.touch_conversation(conversation_id, message_delta=1)
        _logger.debug(
            "Added %s message %s under %s (index %d)",
            node.role, node.id, parent_id, sibling_index,
        )
        return node

    async def update_message(self, message_id: str, content: str) -> MessageNode:
        """Replace a message's content wholesale."""
        node = await self._require(message_id)
        await self.store.update_content(message_id, content)
        await self.store.touch_conversation(node.conversation_id)
        return await self.get_message(message_id)

    async def append_to_message(self, message_id: str, delta: str) -> None:
        """Concatenate *delta* onto the content; nothing else changes."""
        node = await self._require(message_id)
        await self.store.update_content(message_id, node.content + delta)

    async def set_tool_calls(
        self, message_id: str, tool_calls: list[ToolCallRecord] | None,
    ) -> None:
        await self._require(message_id)
        await self.store.update_tool_calls(message_id, tool_calls)

    async def attach_tool_result(
        self,
        message_id: str,
        tool_call_id: str,
        result: str | None = None,
        error: str | None = None,
    ) -> ToolCallRecord:
        """Record the outcome of one tool call on an assistant message."""
        node = await self._require(message_id)
        for call in node.tool_calls or []:
            if call.id == tool_call_id:
                call.result = result
                call.error = error
                await self.store.update_tool_calls(message_id, node.tool_calls)
                return call
        raise LookupError(f"Tool call {tool_call_id} not found on message {message_id}")

    async def delete_message(self, message_id: str) -> list[str]:
        """Delete a message and its whole subtree.

        Returns the deleted ids, depth-first from *message_id*.  Nodes,
        their attachments and the message-count adjustment are removed in
        one store transaction.
        """
        node = await self._require(message_id)

        deleted: list[str] = []

        async def collect(node_id: str) -> None:
            deleted.append(node_id)
            for child in await self.store.list_siblings(node.conversation_id, node_id):
                await collect(child.id)

        await collect(message_id)
        await self.store.delete_nodes(node.conversation_id, deleted)
        _logger.debug("Deleted %d messages from %s", len(deleted), message_id)
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_message(self, message_id: str) -> MessageNode:
        node = await self._require(message_id)
        children = await self.store.list_siblings(node.conversation_id, node.id)
        node.child_ids = [c.id for c in children]
        return node

    async def get_messages(self, conversation_id: str) -> dict[str, MessageNode]:
        """Every node of the conversation, keyed by id, with ``child_ids``."""
        return link_children(await self.store.list_nodes(conversation_id))

    async def get_message_tree(self, conversation_id: str) -> MessageTreeInfo:
        """Canonical root (newest) and the active path below it."""
        arena = await self.get_messages(conversation_id)
        root = newest_root(arena)
        if root is None:
            return MessageTreeInfo()
        return MessageTreeInfo(
            root_message_id=root.id,
            active_path=descend_newest(arena, root.id),
        )

    async def get_siblings(self, message_id: str) -> list[str]:
        """Ids sharing the parent of *message_id* (all roots for a root)."""
        node = await self._require(message_id)
        siblings = await self.store.list_siblings(node.conversation_id, node.parent_id)
        return [s.id for s in siblings]

    async def get_path_to_message(self, message_id: str) -> list[str]:
        """Ids from the root down to *message_id*."""
        path: list[str] = []
        current: str | None = message_id
        while current is not None:
            node = await self.store.get_node(current)
            if node is None:
                if current == message_id:
                    raise MessageNotFoundError(message_id)
                break
            path.append(current)
            current = node.parent_id
        path.reverse()
        return path

    async def load_conversation(self, conversation_id: str) -> ConversationState:
        """Snapshot a conversation for navigation and request building."""
        arena = await self.get_messages(conversation_id)
        return ConversationState(conversation_id, arena)

    async def _require(self, message_id: str) -> MessageNode:
        node = await self.store.get_node(message_id)
        if node is None:
            raise MessageNotFoundError(message_id)
        return node
