"""Branch mutator: the only way new nodes enter a conversation tree.

Nothing is edited in place. Edits and regenerations create new siblings so
that every earlier future of the conversation stays reachable.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import uuid4

from loom.models import ChatRole, Node
from loom.trees.store import NodeNotFoundError, TreeStore

logger = logging.getLogger(__name__)


class BranchMutator:
    """Creates nodes with correct sibling order and removes branches."""

    def __init__(self, store: TreeStore) -> None:
        self._store = store
        # (conversation_id, parent_id) -> lock guarding branch index assignment,
        # held only while some task is using or waiting on it
        self._locks: dict[tuple[str, str | None], asyncio.Lock] = {}
        self._waiters: dict[tuple[str, str | None], int] = {}

    async def create_node(
        self,
        conversation_id: str,
        parent_id: str | None,
        role: ChatRole,
        content: str,
        thinking_content: str = "",
    ) -> Node:
        """Append a node under parent_id. Does not move the playhead.

        Raises ConversationNotFoundError, NodeNotFoundError if the parent is
        not part of the conversation, and RootExistsError when asked for a
        second root.
        """
        await self._store.get_conversation(conversation_id)

        async with self._sibling_lock(conversation_id, parent_id):
            if parent_id is None:
                if await self._store.get_root_nodes(conversation_id):
                    raise RootExistsError(conversation_id)
                branch_index = 0
            else:
                parent = await self._store.get_node(parent_id)
                if parent.conversation_id != conversation_id:
                    raise NodeNotFoundError(parent_id)
                max_index = await self._store.get_max_branch_index(parent_id)
                branch_index = 0 if max_index is None else max_index + 1

            node = Node(
                id=str(uuid4()),
                conversation_id=conversation_id,
                parent_id=parent_id,
                role=role,
                content=content,
                thinking_content=thinking_content,
                created_at=self._store.now(),
                branch_index=branch_index,
            )
            await self._store.insert_node(node)
        return node

    @asynccontextmanager
    async def _sibling_lock(
        self, conversation_id: str, parent_id: str | None
    ) -> AsyncIterator[None]:
        """Serialize sibling creation under one parent.

        The lock is dropped from the map once its last user releases it.
        """
        key = (conversation_id, parent_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    async def edit_as_branch(
        self, conversation_id: str, node_id: str, new_content: str
    ) -> Node:
        """Create an edited copy of a user message as a new sibling.

        The original node and everything below it are left untouched.
        """
        original = await self._get_conversation_node(conversation_id, node_id)
        if original.role != "user":
            raise InvalidEditError(node_id, "only user messages can be edited")
        if original.parent_id is None:
            raise InvalidEditError(node_id, "the root message cannot be branched")
        return await self.create_node(
            conversation_id, original.parent_id, "user", new_content
        )

    async def regeneration_parent(
        self, conversation_id: str, assistant_node_id: str
    ) -> Node:
        """The user message a regenerated response is attached under."""
        original = await self._get_conversation_node(conversation_id, assistant_node_id)
        if original.role != "assistant":
            raise InvalidEditError(assistant_node_id, "only responses can be regenerated")
        if original.parent_id is None:
            raise InvalidEditError(assistant_node_id, "response has no prompt to regenerate from")
        return await self._store.get_node(original.parent_id)

    async def remove_branch(self, conversation_id: str, node_id: str) -> list[str]:
        """Delete a node's subtree, repairing the playhead if it was inside."""
        node = await self._get_conversation_node(conversation_id, node_id)
        if node.parent_id is None:
            raise InvalidEditError(node_id, "the root message cannot be removed")

        conversation = await self._store.get_conversation(conversation_id)
        removed = await self._store.delete_subtree(node_id)
        if conversation.active_node_id in removed:
            await self._store.set_active_node(conversation_id, node.parent_id)
        logger.info(
            "Removed %d node(s) from conversation %s", len(removed), conversation_id
        )
        return removed

    async def _get_conversation_node(self, conversation_id: str, node_id: str) -> Node:
        await self._store.get_conversation(conversation_id)
        node = await self._store.get_node(node_id)
        if node.conversation_id != conversation_id:
            raise NodeNotFoundError(node_id)
        return node


class RootExistsError(Exception):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation already has a root node: {conversation_id}")


class InvalidEditError(Exception):
    def __init__(self, node_id: str, reason: str) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Cannot branch from node {node_id}: {reason}")
