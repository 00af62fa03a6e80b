"""Canonical data structures for Loom.

Defined once here, referenced everywhere else. Conversations and nodes are
stored flat (one row per node, linked by parent_id); nested views are rebuilt
on demand by the path builder.

Python attributes are snake_case. The transfer format and the HTTP API use
camelCase aliases so exported files stay readable by the web client.
"""

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ChatRole = Literal["user", "assistant"]

DAY_MS = 24 * 60 * 60 * 1000
RETENTION_MS = 7 * DAY_MS
TITLE_MAX_CHARS = 50


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def title_from_message(content: str) -> str:
    """Default conversation title: the first message, truncated."""
    if len(content) > TITLE_MAX_CHARS:
        return content[:TITLE_MAX_CHARS] + "..."
    return content


class LoomModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Canonical data structures
# ---------------------------------------------------------------------------


class Conversation(LoomModel):
    id: str
    title: str
    created_at: int
    updated_at: int
    active_node_id: str | None = None
    deleted_at: int | None = None  # None means active

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class Node(LoomModel):
    id: str
    conversation_id: str
    parent_id: str | None = None  # None only for the root
    role: ChatRole
    content: str
    thinking_content: str = ""
    created_at: int
    branch_index: int = Field(default=0, ge=0)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class GenerationSettings(LoomModel):
    """Explicit per-call configuration for the model streaming client."""

    model: str = "claude-sonnet-4-5-20250929"
    system_prompt: str | None = "You are Claude, a helpful AI assistant."
    max_tokens: int = 4096
    temperature: float = 1.0
    extended_thinking: bool = False
    thinking_budget: int = 4096


# ---------------------------------------------------------------------------
# Transfer payload
# ---------------------------------------------------------------------------


class TransferConversation(LoomModel):
    """Conversation record as it appears in an export file.

    deletedAt is tolerated on input but never honoured: imports are active.
    """

    id: str
    title: str
    created_at: int
    updated_at: int
    active_node_id: str | None = None


class TransferNode(LoomModel):
    id: str
    conversation_id: str
    parent_id: str | None = None
    role: ChatRole
    content: str
    thinking_content: str = ""
    created_at: int
    branch_index: int = Field(ge=0)


class TransferPayload(LoomModel):
    """Portable snapshot of one conversation and its full node set."""

    conversation: TransferConversation
    nodes: list[TransferNode]
