"""Lifecycle manager: recycle-bin semantics for conversations.

Nodes are never soft-deleted on their own; they follow their conversation.
Purging is opportunistic (app start, recycle-bin listing) rather than
scheduled: the retention promise only requires eventual removal.
"""

import logging
import math

from loom.models import DAY_MS, RETENTION_MS, Conversation
from loom.trees.store import ConversationNotFoundError, TreeStore

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Soft delete, restore, permanent delete, and expiry purge."""

    def __init__(self, store: TreeStore, retention_ms: int = RETENTION_MS) -> None:
        self._store = store
        self._retention_ms = retention_ms

    @property
    def retention_ms(self) -> int:
        return self._retention_ms

    async def soft_delete(self, conversation_id: str) -> Conversation:
        """Move a conversation to the recycle bin."""
        await self._store.set_deleted_at(conversation_id, self._store.now())
        return await self._store.get_conversation(conversation_id)

    async def restore(self, conversation_id: str) -> Conversation:
        """Bring a conversation back from the recycle bin. No-op if active."""
        conversation = await self._store.get_conversation(conversation_id)
        if conversation.deleted_at is None:
            return conversation
        await self._store.set_deleted_at(conversation_id, None)
        return await self._store.get_conversation(conversation_id)

    async def permanently_delete(self, conversation_id: str) -> None:
        """Remove a conversation and all its nodes. Irreversible."""
        await self._store.delete_conversation(conversation_id)
        logger.info("Permanently deleted conversation %s", conversation_id)

    async def purge_expired(self, retention_ms: int | None = None) -> list[str]:
        """Permanently delete every conversation past its retention window.

        Returns the ids this call purged. Running it twice without time passing
        purges nothing the second time, and overlapping runs never purge the
        same conversation twice.
        """
        retention = self._retention_ms if retention_ms is None else retention_ms
        now = self._store.now()
        purged: list[str] = []
        for conversation in await self._store.get_deleted_conversations():
            assert conversation.deleted_at is not None
            if now - conversation.deleted_at >= retention:
                try:
                    await self._store.delete_conversation(conversation.id)
                except ConversationNotFoundError:
                    # A concurrent purge got there first
                    logger.debug("Conversation %s already purged", conversation.id)
                    continue
                purged.append(conversation.id)
        if purged:
            logger.info("Purged %d expired conversation(s)", len(purged))
        return purged

    def days_remaining(
        self, conversation: Conversation, retention_ms: int | None = None
    ) -> int:
        """Whole days left before a deleted conversation is purged (0 if active)."""
        return days_remaining(
            conversation.deleted_at,
            self._store.now(),
            self._retention_ms if retention_ms is None else retention_ms,
        )


def days_remaining(deleted_at: int | None, now: int, retention_ms: int = RETENTION_MS) -> int:
    if deleted_at is None:
        return 0
    remaining = deleted_at + retention_ms - now
    return max(0, math.ceil(remaining / DAY_MS))
