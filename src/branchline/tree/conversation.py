"""In-memory view of one conversation: node arena plus the active path."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from branchline.types import BranchInfo, MessageNode

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Arena helpers
# ---------------------------------------------------------------------------

# Count-based indexes can repeat after a delete; the later insert sorts last
def _order_key(node: MessageNode) -> tuple[int, float]:
    return node.sibling_index, node.created_at


def link_children(nodes: Iterable[MessageNode]) -> dict[str, MessageNode]:
    """Index *nodes* by id and fill ``child_ids`` ordered by ``sibling_index``."""
    arena = {n.id: n for n in nodes}
    children: dict[str, list[MessageNode]] = {}
    for node in arena.values():
        node.child_ids = []
        if node.parent_id is not None:
            children.setdefault(node.parent_id, []).append(node)
    for parent_id, kids in children.items():
        parent = arena.get(parent_id)
        if parent is None:
            continue
        kids.sort(key=_order_key)
        parent.child_ids = [k.id for k in kids]
    return arena


def roots_of(arena: dict[str, MessageNode]) -> list[MessageNode]:
    return sorted((n for n in arena.values() if n.parent_id is None), key=_order_key)


def newest_root(arena: dict[str, MessageNode]) -> MessageNode | None:
    """The root with the highest ``sibling_index``."""
    roots = roots_of(arena)
    return roots[-1] if roots else None


def descend_newest(arena: dict[str, MessageNode], start_id: str) -> list[str]:
    """Path from *start_id* down to a leaf, always taking the newest child."""
    path: list[str] = []
    current: str | None = start_id
    while current is not None:
        path.append(current)
        node = arena.get(current)
        current = node.child_ids[-1] if node and node.child_ids else None
    return path


# ---------------------------------------------------------------------------
# Conversation state
# ---------------------------------------------------------------------------

class ConversationState:
    """Arena of ``MessageNode`` objects with a selected active path.

    The active path starts as the newest branch at every level.  Branch
    navigation selects older siblings; everything below a selected node
    again follows the newest child.
    """

    def __init__(
        self,
        conversation_id: str,
        messages: dict[str, MessageNode] | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.messages: dict[str, MessageNode] = messages or {}
        self.root_message_id: str | None = None
        self.active_path: list[str] = []
        self.reset_active_path()

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def active_messages(self) -> list[MessageNode]:
        return [self.messages[i] for i in self.active_path if i in self.messages]

    @property
    def leaf_id(self) -> str | None:
        return self.active_path[-1] if self.active_path else None

    @property
    def can_regenerate(self) -> bool:
        """True when the active path ends in an assistant reply."""
        leaf = self.messages.get(self.leaf_id) if self.leaf_id else None
        return leaf is not None and leaf.role == "assistant"

    def get_leaf_nodes(self) -> list[MessageNode]:
        return [n for n in self.messages.values() if not n.child_ids]

    def get_path_to_message(self, message_id: str) -> list[str]:
        path: list[str] = []
        current: str | None = message_id
        while current is not None and current in self.messages:
            path.append(current)
            current = self.messages[current].parent_id
        path.reverse()
        return path

    def get_branch_info(self, message_id: str) -> BranchInfo | None:
        """Position of *message_id* among its siblings, or None if unknown."""
        node = self.messages.get(message_id)
        if node is None:
            return None
        if node.parent_id is None:
            sibling_ids = [r.id for r in roots_of(self.messages)]
        else:
            parent = self.messages.get(node.parent_id)
            if parent is None:
                return None
            sibling_ids = list(parent.child_ids)
        return BranchInfo(
            current_index=sibling_ids.index(message_id),
            total_count=len(sibling_ids),
            sibling_ids=sibling_ids,
        )

    def to_wire_messages(self) -> list[dict[str, Any]]:
        """Active path rendered as Ollama chat messages."""
        return [node.to_wire() for node in self.active_messages]

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def reset_active_path(self) -> None:
        """Select the newest branch at every level."""
        root = newest_root(self.messages)
        self.root_message_id = root.id if root else None
        self.active_path = descend_newest(self.messages, root.id) if root else []

    def focus(self, message_id: str) -> list[str]:
        """Make the active path run through *message_id*.

        The path is the ancestry of *message_id* followed by the newest
        descendants below it.
        """
        if message_id not in self.messages:
            raise KeyError(message_id)
        ancestry = self.get_path_to_message(message_id)
        self.active_path = ancestry[:-1] + descend_newest(self.messages, message_id)
        self.root_message_id = self.active_path[0]
        return self.active_path

    def switch_to_message(self, current_id: str, target_id: str) -> list[str]:
        """Replace *current_id* on the active path with its sibling *target_id*.

        Does nothing when *current_id* is not on the active path.
        """
        if current_id not in self.active_path:
            return self.active_path
        index = self.active_path.index(current_id)
        self.active_path = self.active_path[:index] + descend_newest(
            self.messages, target_id,
        )
        if index == 0:
            self.root_message_id = target_id
        return self.active_path

    def switch_branch(self, message_id: str, direction: str) -> list[str]:
        """Move to the previous or next sibling, wrapping at either end."""
        if direction not in ("prev", "next"):
            raise ValueError(f"direction must be 'prev' or 'next', not {direction!r}")
        info = self.get_branch_info(message_id)
        if info is None or info.total_count <= 1:
            return self.active_path
        step = -1 if direction == "prev" else 1
        target = info.sibling_ids[(info.current_index + step) % info.total_count]
        return self.switch_to_message(message_id, target)

    # ------------------------------------------------------------------
    # Keeping the snapshot in sync with the store
    # ------------------------------------------------------------------

    def insert(self, node: MessageNode) -> None:
        """Add a freshly created node and put it on the active path."""
        self.messages[node.id] = node
        if node.parent_id is not None and node.parent_id in self.messages:
            parent = self.messages[node.parent_id]
            kids = [self.messages[c] for c in parent.child_ids if c in self.messages]
            kids.append(node)
            kids.sort(key=_order_key)
            parent.child_ids = [k.id for k in kids]
        self.focus(node.id)

    def remove(self, deleted_ids: Iterable[str]) -> None:
        """Drop deleted nodes; the active path is cut and re-extended."""
        gone = set(deleted_ids)
        for node_id in gone:
            self.messages.pop(node_id, None)
        for node in self.messages.values():
            if any(c in gone for c in node.child_ids):
                node.child_ids = [c for c in node.child_ids if c not in gone]

        kept: list[str] = []
        for node_id in self.active_path:
            if node_id in gone:
                break
            kept.append(node_id)
        if kept:
            self.focus(kept[-1])
        else:
            self.reset_active_path()
        _logger.debug("Removed %d nodes, active leaf now %s", len(gone), self.leaf_id)
