"""Request and response schemas for conversation and node endpoints."""

from pydantic import Field

from loom.models import ChatRole, Conversation, GenerationSettings, LoomModel, Node

# -- Requests --


class CreateConversationRequest(LoomModel):
    title: str = "New Conversation"


class RenameConversationRequest(LoomModel):
    title: str = Field(min_length=1)


class SetActiveNodeRequest(LoomModel):
    node_id: str


class CreateNodeRequest(LoomModel):
    """Manual node creation (no generation)."""

    content: str
    role: ChatRole = "user"
    parent_id: str | None = None
    thinking_content: str = ""
    make_active: bool = False


class GenerateRequest(LoomModel):
    """Common generation options. Unset settings fall back to server defaults."""

    provider: str | None = None
    settings: GenerationSettings | None = None
    stream: bool = False


class SendMessageRequest(GenerateRequest):
    content: str = Field(min_length=1)
    parent_id: str | None = None


class EditMessageRequest(GenerateRequest):
    content: str = Field(min_length=1)


# -- Responses --


class NodeResponse(Node):
    sibling_index: int = 0
    sibling_count: int = 1


class ConversationDetailResponse(Conversation):
    nodes: list[NodeResponse] = Field(default_factory=list)


class DeletedConversationResponse(Conversation):
    days_remaining: int


class GenerationResponse(LoomModel):
    state: str
    node: NodeResponse | None = None
    error: str | None = None
