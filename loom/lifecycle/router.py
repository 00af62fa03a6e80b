"""Recycle-bin API routes."""

from fastapi import APIRouter, Depends, HTTPException, status

from loom.lifecycle.service import LifecycleManager
from loom.models import Conversation
from loom.trees.router import get_tree_store
from loom.trees.schemas import DeletedConversationResponse
from loom.trees.store import ConversationNotFoundError, TreeStore

router = APIRouter(prefix="/api/conversations", tags=["lifecycle"])


def get_lifecycle_manager() -> LifecycleManager:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("LifecycleManager not configured")


@router.get("/deleted")
async def list_deleted(
    manager: LifecycleManager = Depends(get_lifecycle_manager),
    store: TreeStore = Depends(get_tree_store),
) -> list[DeletedConversationResponse]:
    """Recycle-bin contents. Expired conversations are purged first."""
    await manager.purge_expired()
    return [
        DeletedConversationResponse(
            **c.model_dump(), days_remaining=manager.days_remaining(c)
        )
        for c in await store.get_deleted_conversations()
    ]


@router.post("/purge")
async def purge(
    manager: LifecycleManager = Depends(get_lifecycle_manager),
) -> dict:
    purged = await manager.purge_expired()
    return {"purgedIds": purged}


@router.delete("/{conversation_id}")
async def soft_delete(
    conversation_id: str,
    manager: LifecycleManager = Depends(get_lifecycle_manager),
) -> Conversation:
    try:
        return await manager.soft_delete(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")


@router.post("/{conversation_id}/restore")
async def restore(
    conversation_id: str,
    manager: LifecycleManager = Depends(get_lifecycle_manager),
) -> Conversation:
    try:
        return await manager.restore(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")


@router.delete("/{conversation_id}/permanent", status_code=status.HTTP_204_NO_CONTENT)
async def permanently_delete(
    conversation_id: str,
    manager: LifecycleManager = Depends(get_lifecycle_manager),
) -> None:
    try:
        await manager.permanently_delete(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
