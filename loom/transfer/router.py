"""Export and import API routes."""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from loom.models import Conversation
from loom.transfer.service import MalformedPayloadError, TransferCodec
from loom.trees.store import ConversationNotFoundError

router = APIRouter(prefix="/api/conversations", tags=["transfer"])


def get_transfer_codec() -> TransferCodec:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("TransferCodec not configured")


@router.get("/{conversation_id}/export")
async def export_conversation(
    conversation_id: str,
    codec: TransferCodec = Depends(get_transfer_codec),
) -> Response:
    """Download a conversation and all of its branches as JSON."""
    try:
        content = await codec.export_json(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return Response(
        content=content,
        media_type="application/json",
        headers={
            "Content-Disposition": f'attachment; filename="{conversation_id}.json"',
        },
    )


@router.post("/import", status_code=status.HTTP_201_CREATED)
async def import_conversation(
    request: Request,
    codec: TransferCodec = Depends(get_transfer_codec),
) -> Conversation:
    """Import an exported file, either uploaded as `file` or posted as the body."""
    if request.headers.get("content-type", "").startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None or isinstance(upload, str):
            raise HTTPException(status_code=422, detail="Missing file upload")
        content = await upload.read()
    else:
        content = await request.body()

    try:
        return await codec.import_payload(content)
    except MalformedPayloadError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
