"""Persistence for conversations, message nodes and attachments.

``MessageTree`` only talks to storage through the ``NodeStore`` protocol;
``SQLiteNodeStore`` is the implementation shipped with the package.  Every
method is a coroutine so callers treat each store access as a suspension
point, even though SQLite itself answers synchronously.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Iterable, Protocol

from branchline.types import Attachment, Conversation, MessageNode, ToolCallRecord

_logger = logging.getLogger(__name__)


class NodeStore(Protocol):
    """Storage operations the tree engine consumes."""

    async def insert_node(self, node: MessageNode) -> None: ...

    async def get_node(self, node_id: str) -> MessageNode | None: ...

    async def count_siblings(self, conversation_id: str, parent_id: str | None) -> int: ...

    async def list_siblings(
        self, conversation_id: str, parent_id: str | None,
    ) -> list[MessageNode]: ...

    async def list_nodes(self, conversation_id: str) -> list[MessageNode]: ...

    async def update_content(self, node_id: str, content: str) -> None: ...

    async def update_tool_calls(
        self, node_id: str, tool_calls: list[ToolCallRecord] | None,
    ) -> None: ...

    async def delete_nodes(self, conversation_id: str, node_ids: list[str]) -> None: ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def touch_conversation(
        self, conversation_id: str, message_delta: int = 0,
    ) -> None: ...


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        model TEXT NOT NULL DEFAULT '',
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        is_pinned INTEGER NOT NULL DEFAULT 0,
        is_archived INTEGER NOT NULL DEFAULT 0,
        message_count INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        parent_id TEXT,
        role TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        images TEXT,
        tool_calls TEXT,
        sibling_index INTEGER NOT NULL,
        created_at REAL NOT NULL
    );
    CREATE TABLE IF NOT EXISTS attachments (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL,
        filename TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        data BLOB NOT NULL,
        created_at REAL NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_msg_conversation ON messages(conversation_id);
    CREATE INDEX IF NOT EXISTS idx_msg_parent ON messages(parent_id);
    CREATE INDEX IF NOT EXISTS idx_att_message ON attachments(message_id);
"""

_NODE_COLUMNS = (
    "id, conversation_id, parent_id, role, content, images, tool_calls, "
    "sibling_index, created_at"
)
_CONVERSATION_COLUMNS = (
    "id, title, model, created_at, updated_at, is_pinned, is_archived, message_count"
)


def _row_to_node(row: tuple[Any, ...]) -> MessageNode:
    (node_id, conversation_id, parent_id, role, content,
     images, tool_calls, sibling_index, created_at) = row
    return MessageNode(
        id=node_id,
        conversation_id=conversation_id,
        parent_id=parent_id,
        role=role,
        content=content,
        images=json.loads(images) if images else None,
        tool_calls=(
            [ToolCallRecord.from_dict(tc) for tc in json.loads(tool_calls)]
            if tool_calls else None
        ),
        sibling_index=sibling_index,
        created_at=created_at,
    )


def _row_to_conversation(row: tuple[Any, ...]) -> Conversation:
    return Conversation(
        id=row[0],
        title=row[1],
        model=row[2],
        created_at=row[3],
        updated_at=row[4],
        is_pinned=bool(row[5]),
        is_archived=bool(row[6]),
        message_count=row[7],
    )


def _dump_tool_calls(tool_calls: list[ToolCallRecord] | None) -> str | None:
    if not tool_calls:
        return None
    return json.dumps([tc.to_dict() for tc in tool_calls])


def _placeholders(items: Iterable[Any]) -> str:
    return ", ".join("?" for _ in items)


class SQLiteNodeStore:
    """SQLite-backed store for conversations, messages and attachments."""

    def __init__(self, db_path: str = "~/.branchline/chat.db") -> None:
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self._conn = sqlite3.connect(self.db_path)
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Message nodes
    # ------------------------------------------------------------------

    async def insert_node(self, node: MessageNode) -> None:
        with self._conn:
            self._conn.execute(
                f"INSERT INTO messages ({_NODE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    node.id, node.conversation_id, node.parent_id, node.role,
                    node.content,
                    json.dumps(node.images) if node.images else None,
                    _dump_tool_calls(node.tool_calls),
                    node.sibling_index, node.created_at,
                ),
            )

    async def get_node(self, node_id: str) -> MessageNode | None:
        row = self._conn.execute(
            f"SELECT {_NODE_COLUMNS} FROM messages WHERE id = ?", (node_id,),
        ).fetchone()
        return _row_to_node(row) if row else None

    async def count_siblings(self, conversation_id: str, parent_id: str | None) -> int:
        """Number of nodes under *parent_id* (roots when None)."""
        if parent_id is None:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM messages "
                "WHERE conversation_id = ? AND parent_id IS NULL",
                (conversation_id,),
            ).fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM messages WHERE parent_id = ?", (parent_id,),
            ).fetchone()
        return row[0]

    async def list_siblings(
        self, conversation_id: str, parent_id: str | None,
    ) -> list[MessageNode]:
        """Nodes under *parent_id* (roots when None), by ``sibling_index``."""
        if parent_id is None:
            rows = self._conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM messages "
                "WHERE conversation_id = ? AND parent_id IS NULL "
                "ORDER BY sibling_index, created_at, rowid",
                (conversation_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM messages WHERE parent_id = ? "
                "ORDER BY sibling_index, created_at, rowid",
                (parent_id,),
            ).fetchall()
        return [_row_to_node(r) for r in rows]

    async def list_nodes(self, conversation_id: str) -> list[MessageNode]:
        rows = self._conn.execute(
            f"SELECT {_NODE_COLUMNS} FROM messages WHERE conversation_id = ? "
            "ORDER BY created_at, rowid",
            (conversation_id,),
        ).fetchall()
        return [_row_to_node(r) for r in rows]

    async def update_content(self, node_id: str, content: str) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE messages SET content = ? WHERE id = ?", (content, node_id),
            )

    async def update_tool_calls(
        self, node_id: str, tool_calls: list[ToolCallRecord] | None,
    ) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE messages SET tool_calls = ? WHERE id = ?",
                (_dump_tool_calls(tool_calls), node_id),
            )

    async def delete_nodes(self, conversation_id: str, node_ids: list[str]) -> None:
        """Delete nodes, their attachments and adjust the message count.

        Runs as one transaction: either everything goes or nothing does.
        """
        if not node_ids:
            return
        marks = _placeholders(node_ids)
        with self._conn:
            self._conn.execute(
                f"DELETE FROM attachments WHERE message_id IN ({marks})", node_ids,
            )
            self._conn.execute(f"DELETE FROM messages WHERE id IN ({marks})", node_ids)
            self._conn.execute(
                "UPDATE conversations "
                "SET message_count = MAX(0, message_count - ?), updated_at = ? "
                "WHERE id = ?",
                (len(node_ids), time.time(), conversation_id),
            )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._conn:
            self._conn.execute(
                f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    conversation.id, conversation.title, conversation.model,
                    conversation.created_at, conversation.updated_at,
                    int(conversation.is_pinned), int(conversation.is_archived),
                    conversation.message_count,
                ),
            )
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = self._conn.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            (conversation_id,),
        ).fetchone()
        return _row_to_conversation(row) if row else None

    async def list_conversations(self, archived: bool = False) -> list[Conversation]:
        """Pinned first, then most recently updated."""
        rows = self._conn.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
            "WHERE is_archived = ? ORDER BY is_pinned DESC, updated_at DESC",
            (int(archived),),
        ).fetchall()
        return [_row_to_conversation(r) for r in rows]

    async def update_conversation(self, conversation_id: str, **changes: Any) -> None:
        """Update ``title``, ``model``, ``is_pinned`` or ``is_archived``."""
        allowed = {"title", "model", "is_pinned", "is_archived"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update conversation fields: {sorted(unknown)}")
        if not changes:
            return
        assignments = ", ".join(f"{k} = ?" for k in changes)
        values = [int(v) if isinstance(v, bool) else v for v in changes.values()]
        with self._conn:
            self._conn.execute(
                f"UPDATE conversations SET {assignments}, updated_at = ? WHERE id = ?",
                (*values, time.time(), conversation_id),
            )

    async def touch_conversation(
        self, conversation_id: str, message_delta: int = 0,
    ) -> None:
        """Bump ``updated_at`` and adjust the message count (floored at 0)."""
        with self._conn:
            self._conn.execute(
                "UPDATE conversations "
                "SET message_count = MAX(0, message_count + ?), updated_at = ? "
                "WHERE id = ?",
                (message_delta, time.time(), conversation_id),
            )

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation with all of its messages and attachments."""
        with self._conn:
            self._conn.execute(
                "DELETE FROM attachments WHERE message_id IN "
                "(SELECT id FROM messages WHERE conversation_id = ?)",
                (conversation_id,),
            )
            self._conn.execute(
                "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,),
            )
            self._conn.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,),
            )
        _logger.info("Deleted conversation %s", conversation_id)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def add_attachment(self, attachment: Attachment) -> Attachment:
        with self._conn:
            self._conn.execute(
                "INSERT INTO attachments "
                "(id, message_id, filename, mime_type, data, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    attachment.id, attachment.message_id, attachment.filename,
                    attachment.mime_type, attachment.data, attachment.created_at,
                ),
            )
        return attachment

    async def get_attachments(self, message_id: str) -> list[Attachment]:
        rows = self._conn.execute(
            "SELECT id, message_id, filename, mime_type, data, created_at "
            "FROM attachments WHERE message_id = ? ORDER BY created_at",
            (message_id,),
        ).fetchall()
        return [
            Attachment(
                id=r[0], message_id=r[1], filename=r[2], mime_type=r[3],
                data=bytes(r[4]), created_at=r[5],
            )
            for r in rows
        ]

    def close(self) -> None:
        self._conn.close()
