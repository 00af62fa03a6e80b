"""Tree store: CRUD and query primitives over conversations and nodes.

The store is the single source of truth. Callers holding nodes in memory are
holding a snapshot and should reload after any mutation.
"""

from collections.abc import Callable, Iterable
from uuid import uuid4

from loom.db.connection import Database, Transaction
from loom.models import Conversation, Node, now_ms

_UPSERT_NODE_SQL = """
INSERT INTO nodes
    (id, conversation_id, parent_id, role, content, thinking_content,
     created_at, branch_index)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    content = excluded.content,
    thinking_content = excluded.thinking_content
"""

_INSERT_CONVERSATION_SQL = """
INSERT INTO conversations
    (id, title, created_at, updated_at, active_node_id, deleted_at)
VALUES (?, ?, ?, ?, ?, ?)
"""


class TreeStore:
    """Persistence and query operations over conversations and nodes."""

    def __init__(self, db: Database, clock: Callable[[], int] = now_ms) -> None:
        self._db = db
        self._clock = clock

    @property
    def db(self) -> Database:
        return self._db

    def now(self) -> int:
        return self._clock()

    # -- Conversations --

    async def create_conversation(self, title: str) -> Conversation:
        """Create an empty conversation (no nodes, no playhead)."""
        now = self._clock()
        conversation = Conversation(
            id=str(uuid4()),
            title=title,
            created_at=now,
            updated_at=now,
            active_node_id=None,
            deleted_at=None,
        )
        await self._db.execute(_INSERT_CONVERSATION_SQL, _conversation_params(conversation))
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        row = await self._db.fetchone(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        )
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        return _conversation_from_row(row)

    async def get_active_conversations(self) -> list[Conversation]:
        """Conversations not in the recycle bin, most recently updated first."""
        rows = await self._db.fetchall(
            "SELECT * FROM conversations WHERE deleted_at IS NULL "
            "ORDER BY updated_at DESC"
        )
        return [_conversation_from_row(r) for r in rows]

    async def get_deleted_conversations(self) -> list[Conversation]:
        """Soft-deleted conversations, most recently deleted first."""
        rows = await self._db.fetchall(
            "SELECT * FROM conversations WHERE deleted_at IS NOT NULL "
            "ORDER BY deleted_at DESC"
        )
        return [_conversation_from_row(r) for r in rows]

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        await self._update_conversation(
            conversation_id,
            "title = ?, updated_at = MAX(updated_at, ?)",
            (title, self._clock()),
        )
        return await self.get_conversation(conversation_id)

    async def set_active_node(self, conversation_id: str, node_id: str | None) -> None:
        """Move the playhead.

        Precondition: node_id belongs to the conversation. Not re-validated here.
        """
        await self._update_conversation(
            conversation_id,
            "active_node_id = ?, updated_at = MAX(updated_at, ?)",
            (node_id, self._clock()),
        )

    async def set_deleted_at(self, conversation_id: str, deleted_at: int | None) -> None:
        await self._update_conversation(
            conversation_id, "deleted_at = ?", (deleted_at,)
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and all of its nodes in one transaction."""
        async with self._db.transaction() as tx:
            await tx.execute(
                "DELETE FROM nodes WHERE conversation_id = ?", (conversation_id,)
            )
            cursor = await tx.execute(
                "DELETE FROM conversations WHERE id = ?", (conversation_id,)
            )
            if cursor.rowcount == 0:
                raise ConversationNotFoundError(conversation_id)

    async def _update_conversation(
        self, conversation_id: str, assignments: str, params: tuple
    ) -> None:
        cursor = await self._db.execute(
            f"UPDATE conversations SET {assignments} WHERE id = ?",
            (*params, conversation_id),
        )
        if cursor.rowcount == 0:
            raise ConversationNotFoundError(conversation_id)

    # -- Nodes --

    async def get_node(self, node_id: str) -> Node:
        row = await self._db.fetchone("SELECT * FROM nodes WHERE id = ?", (node_id,))
        if row is None:
            raise NodeNotFoundError(node_id)
        return _node_from_row(row)

    async def get_nodes_for_conversation(self, conversation_id: str) -> list[Node]:
        """All nodes of a conversation, in no particular order."""
        rows = await self._db.fetchall(
            "SELECT * FROM nodes WHERE conversation_id = ?", (conversation_id,)
        )
        return [_node_from_row(r) for r in rows]

    async def get_children(self, parent_id: str) -> list[Node]:
        """Direct children of a node, ordered by branch_index."""
        rows = await self._db.fetchall(
            "SELECT * FROM nodes WHERE parent_id = ? ORDER BY branch_index",
            (parent_id,),
        )
        return [_node_from_row(r) for r in rows]

    async def get_max_branch_index(self, parent_id: str | None) -> int | None:
        """Highest branch_index among the children of parent_id, None if childless."""
        if parent_id is None:
            return None
        row = await self._db.fetchone(
            "SELECT MAX(branch_index) AS max_index FROM nodes WHERE parent_id = ?",
            (parent_id,),
        )
        return None if row is None else row["max_index"]

    async def get_root_nodes(self, conversation_id: str) -> list[Node]:
        """Parentless nodes, earliest first. More than one means malformed data."""
        rows = await self._db.fetchall(
            "SELECT * FROM nodes WHERE conversation_id = ? AND parent_id IS NULL "
            "ORDER BY created_at, id",
            (conversation_id,),
        )
        return [_node_from_row(r) for r in rows]

    async def count_nodes(self, conversation_id: str) -> int:
        row = await self._db.fetchone(
            "SELECT COUNT(*) AS cnt FROM nodes WHERE conversation_id = ?",
            (conversation_id,),
        )
        return 0 if row is None else row["cnt"]

    async def insert_node(self, node: Node) -> None:
        """Upsert keyed by id. Structural fields are fixed once inserted."""
        await self._db.execute(_UPSERT_NODE_SQL, _node_params(node))

    async def delete_subtree(self, node_id: str) -> list[str]:
        """Delete a node and every descendant. Returns the removed ids."""
        node = await self.get_node(node_id)
        rows = await self._db.fetchall(
            "SELECT id, parent_id FROM nodes WHERE conversation_id = ?",
            (node.conversation_id,),
        )
        children_of: dict[str, list[str]] = {}
        for r in rows:
            if r["parent_id"] is not None:
                children_of.setdefault(r["parent_id"], []).append(r["id"])

        removed: list[str] = []
        stack = [node_id]
        while stack:
            current = stack.pop()
            removed.append(current)
            stack.extend(children_of.get(current, []))

        placeholders = ", ".join("?" for _ in removed)
        async with self._db.transaction() as tx:
            await tx.execute(
                f"DELETE FROM nodes WHERE id IN ({placeholders})", tuple(removed)
            )
        return removed

    # -- Bulk writes (used by import) --

    @staticmethod
    async def write_conversation(
        tx: Transaction, conversation: Conversation, nodes: Iterable[Node]
    ) -> None:
        """Insert a conversation and its nodes inside an open transaction.

        Nodes must be ordered parents-first.
        """
        await tx.execute(_INSERT_CONVERSATION_SQL, _conversation_params(conversation))
        await tx.executemany(_UPSERT_NODE_SQL, [_node_params(n) for n in nodes])


def _conversation_params(c: Conversation) -> tuple:
    return (c.id, c.title, c.created_at, c.updated_at, c.active_node_id, c.deleted_at)


def _node_params(n: Node) -> tuple:
    return (
        n.id,
        n.conversation_id,
        n.parent_id,
        n.role,
        n.content,
        n.thinking_content,
        n.created_at,
        n.branch_index,
    )


def _conversation_from_row(row) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        active_node_id=row["active_node_id"],
        deleted_at=row["deleted_at"],
    )


def _node_from_row(row) -> Node:
    return Node(
        id=row["id"],
        conversation_id=row["conversation_id"],
        parent_id=row["parent_id"],
        role=row["role"],
        content=row["content"],
        thinking_content=row["thinking_content"] or "",
        created_at=row["created_at"],
        branch_index=row["branch_index"],
    )


class ConversationNotFoundError(Exception):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class NodeNotFoundError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")
