"""branchline: streaming Ollama chat client with branching conversations."""

from branchline.config import BranchlineConfig, load_config
from branchline.context import ContextTracker
from branchline.events.bus import EventBus
from branchline.session import ChatSession
from branchline.tree import ConversationState, MessageNotFoundError, MessageTree, SQLiteNodeStore
from branchline.types import (
    BranchInfo,
    Conversation,
    Message,
    MessageNode,
    MessageTreeInfo,
    StreamChatResult,
    StreamState,
    ToolCallRecord,
)

__version__ = "0.3.0"

__all__ = [
    "BranchInfo",
    "BranchlineConfig",
    "ChatSession",
    "ContextTracker",
    "Conversation",
    "ConversationState",
    "EventBus",
    "Message",
    "MessageNode",
    "MessageNotFoundError",
    "MessageTree",
    "MessageTreeInfo",
    "SQLiteNodeStore",
    "StreamChatResult",
    "StreamState",
    "ToolCallRecord",
    "load_config",
]
