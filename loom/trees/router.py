"""FastAPI routes for conversations, nodes, navigation, and generation."""

import json as json_module
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from loom.config import Settings
from loom.generation.service import (
    GenerationAttempt,
    GenerationFailedError,
    GenerationService,
)
from loom.models import Conversation, GenerationSettings, Node
from loom.providers.base import LLMProvider
from loom.providers.registry import ProviderNotFoundError, get_provider
from loom.trees.branching import BranchMutator, InvalidEditError, RootExistsError
from loom.trees.paths import PathBuilder, TreeView, compute_sibling_info
from loom.trees.schemas import (
    ConversationDetailResponse,
    CreateConversationRequest,
    CreateNodeRequest,
    EditMessageRequest,
    GenerateRequest,
    GenerationResponse,
    NodeResponse,
    RenameConversationRequest,
    SendMessageRequest,
    SetActiveNodeRequest,
)
from loom.trees.store import ConversationNotFoundError, NodeNotFoundError, TreeStore

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def get_tree_store() -> TreeStore:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("TreeStore not initialized")


def get_path_builder() -> PathBuilder:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("PathBuilder not initialized")


def get_branch_mutator() -> BranchMutator:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("BranchMutator not initialized")


def get_generation_service() -> GenerationService:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("GenerationService not initialized")


def get_settings() -> Settings:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("Settings not initialized")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    request: CreateConversationRequest,
    store: TreeStore = Depends(get_tree_store),
) -> Conversation:
    return await store.create_conversation(request.title)


@router.get("")
async def list_conversations(
    store: TreeStore = Depends(get_tree_store),
) -> list[Conversation]:
    return await store.get_active_conversations()


@router.get("/nodes/{node_id}/children")
async def get_children(
    node_id: str,
    store: TreeStore = Depends(get_tree_store),
) -> list[Node]:
    try:
        await store.get_node(node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    return await store.get_children(node_id)


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    store: TreeStore = Depends(get_tree_store),
) -> ConversationDetailResponse:
    try:
        conversation = await store.get_conversation(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    nodes = await store.get_nodes_for_conversation(conversation_id)
    return ConversationDetailResponse(
        **conversation.model_dump(), nodes=_node_responses(nodes, nodes)
    )


@router.patch("/{conversation_id}")
async def rename_conversation(
    conversation_id: str,
    request: RenameConversationRequest,
    store: TreeStore = Depends(get_tree_store),
) -> Conversation:
    try:
        return await store.rename_conversation(conversation_id, request.title)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")


@router.put("/{conversation_id}/active-node")
async def set_active_node(
    conversation_id: str,
    request: SetActiveNodeRequest,
    store: TreeStore = Depends(get_tree_store),
) -> Conversation:
    """Move the playhead. The node must belong to the conversation."""
    try:
        await store.get_conversation(conversation_id)
        node = await store.get_node(request.node_id)
        if node.conversation_id != conversation_id:
            raise NodeNotFoundError(request.node_id)
        await store.set_active_node(conversation_id, node.id)
        return await store.get_conversation(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {request.node_id}")


@router.get("/{conversation_id}/path")
async def get_path(
    conversation_id: str,
    node_id: str | None = Query(None),
    store: TreeStore = Depends(get_tree_store),
    paths: PathBuilder = Depends(get_path_builder),
) -> list[NodeResponse]:
    """Linear path to node_id, or to the playhead when node_id is omitted."""
    try:
        conversation = await store.get_conversation(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    path = await paths.build_linear_path(
        conversation_id, node_id or conversation.active_node_id
    )
    nodes = await store.get_nodes_for_conversation(conversation_id)
    return _node_responses(path, nodes)


@router.get("/{conversation_id}/tree")
async def get_tree(
    conversation_id: str,
    store: TreeStore = Depends(get_tree_store),
    paths: PathBuilder = Depends(get_path_builder),
) -> TreeView | None:
    try:
        await store.get_conversation(conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return await paths.build_tree(conversation_id)


@router.post("/{conversation_id}/nodes", status_code=status.HTTP_201_CREATED)
async def create_node(
    conversation_id: str,
    request: CreateNodeRequest,
    store: TreeStore = Depends(get_tree_store),
    mutator: BranchMutator = Depends(get_branch_mutator),
) -> NodeResponse:
    try:
        node = await mutator.create_node(
            conversation_id,
            request.parent_id,
            request.role,
            request.content,
            request.thinking_content,
        )
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    except NodeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RootExistsError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if request.make_active:
        await store.set_active_node(conversation_id, node.id)
    return await _node_response(store, node)


@router.delete("/{conversation_id}/nodes/{node_id}")
async def remove_branch(
    conversation_id: str,
    node_id: str,
    mutator: BranchMutator = Depends(get_branch_mutator),
) -> dict:
    try:
        removed = await mutator.remove_branch(conversation_id, node_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    except InvalidEditError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"removedNodeIds": removed}


# -- Generation --


@router.post(
    "/{conversation_id}/messages",
    status_code=status.HTTP_201_CREATED,
    response_model=None,
)
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    store: TreeStore = Depends(get_tree_store),
    gen_service: GenerationService = Depends(get_generation_service),
    settings: Settings = Depends(get_settings),
) -> GenerationResponse | StreamingResponse:
    """Append a user message and stream the model's answer under it."""
    provider = _resolve_provider(request, settings)
    try:
        user_node = await gen_service.prepare_message(
            conversation_id, request.content, parent_id=request.parent_id
        )
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    except NodeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return await _generate(
        gen_service, store, conversation_id, user_node.id, provider,
        request.settings or settings.generation, request.stream,
    )


@router.post(
    "/{conversation_id}/nodes/{node_id}/regenerate",
    status_code=status.HTTP_201_CREATED,
    response_model=None,
)
async def regenerate(
    conversation_id: str,
    node_id: str,
    request: GenerateRequest,
    store: TreeStore = Depends(get_tree_store),
    gen_service: GenerationService = Depends(get_generation_service),
    settings: Settings = Depends(get_settings),
) -> GenerationResponse | StreamingResponse:
    """Generate a new sibling of an existing response."""
    provider = _resolve_provider(request, settings)
    try:
        prompt = await gen_service.prepare_regenerate(conversation_id, node_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    except InvalidEditError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await _generate(
        gen_service, store, conversation_id, prompt.id, provider,
        request.settings or settings.generation, request.stream,
    )


@router.post(
    "/{conversation_id}/nodes/{node_id}/edit",
    status_code=status.HTTP_201_CREATED,
    response_model=None,
)
async def edit_message(
    conversation_id: str,
    node_id: str,
    request: EditMessageRequest,
    store: TreeStore = Depends(get_tree_store),
    gen_service: GenerationService = Depends(get_generation_service),
    settings: Settings = Depends(get_settings),
) -> GenerationResponse | StreamingResponse:
    """Branch an edited copy of a user message and answer it."""
    provider = _resolve_provider(request, settings)
    try:
        edited = await gen_service.prepare_edit(conversation_id, node_id, request.content)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    except InvalidEditError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await _generate(
        gen_service, store, conversation_id, edited.id, provider,
        request.settings or settings.generation, request.stream,
    )


def _resolve_provider(request: GenerateRequest, settings: Settings) -> LLMProvider:
    try:
        return get_provider(request.provider or settings.default_provider)
    except ProviderNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))


async def _generate(
    gen_service: GenerationService,
    store: TreeStore,
    conversation_id: str,
    parent_id: str,
    provider: LLMProvider,
    generation_settings: GenerationSettings,
    stream: bool,
) -> GenerationResponse | StreamingResponse:
    if stream:
        return StreamingResponse(
            _stream_sse(
                gen_service, store, conversation_id, parent_id, provider,
                generation_settings,
            ),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    try:
        attempt = await gen_service.generate(
            conversation_id, parent_id, provider, generation_settings
        )
    except GenerationFailedError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return await _generation_response(store, attempt)


async def _stream_sse(
    gen_service: GenerationService,
    store: TreeStore,
    conversation_id: str,
    parent_id: str,
    provider: LLMProvider,
    generation_settings: GenerationSettings,
) -> AsyncIterator[str]:
    """Async generator that yields SSE-formatted lines."""
    attempt = GenerationAttempt()
    try:
        async for chunk in gen_service.stream(
            conversation_id, parent_id, provider, generation_settings, attempt
        ):
            data = {"type": chunk.type, "text": chunk.text}
            yield f"event: {chunk.type}\ndata: {json_module.dumps(data)}\n\n"
    except GenerationFailedError as e:
        response = await _generation_response(store, attempt)
        error = {**response.model_dump(mode="json", by_alias=True), "error": str(e)}
        yield f"event: error\ndata: {json_module.dumps(error)}\n\n"
        return

    response = await _generation_response(store, attempt)
    data = {"type": "message_stop", **response.model_dump(mode="json", by_alias=True)}
    yield f"event: message_stop\ndata: {json_module.dumps(data)}\n\n"


async def _generation_response(
    store: TreeStore, attempt: GenerationAttempt
) -> GenerationResponse:
    node = await _node_response(store, attempt.node) if attempt.node else None
    return GenerationResponse(
        state=attempt.state.value,
        node=node,
        error=str(attempt.error) if attempt.error else None,
    )


async def _node_response(store: TreeStore, node: Node) -> NodeResponse:
    nodes = await store.get_nodes_for_conversation(node.conversation_id)
    return _node_responses([node], nodes)[0]


def _node_responses(selected: list[Node], all_nodes: list[Node]) -> list[NodeResponse]:
    sibling_info = compute_sibling_info(all_nodes)
    responses = []
    for node in selected:
        info = sibling_info.get(node.id)
        responses.append(NodeResponse(
            **node.model_dump(),
            sibling_index=info.sibling_index if info else 0,
            sibling_count=info.sibling_count if info else 1,
        ))
    return responses
