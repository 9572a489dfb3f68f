"""Branching conversation tree: engine, in-memory state and storage."""

from branchline.tree.conversation import ConversationState
from branchline.tree.engine import ConversationNotFoundError, MessageNotFoundError, MessageTree
from branchline.tree.store import NodeStore, SQLiteNodeStore

__all__ = [
    "ConversationNotFoundError",
    "ConversationState",
    "MessageNotFoundError",
    "MessageTree",
    "NodeStore",
    "SQLiteNodeStore",
]
