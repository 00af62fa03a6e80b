"""Abstract model streaming client interface and shared data types."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Literal

from pydantic import BaseModel, Field

from loom.models import GenerationSettings


class GenerationRequest(BaseModel):
    """Everything a provider needs to make an API call."""

    messages: list[dict[str, str]]
    settings: GenerationSettings = Field(default_factory=GenerationSettings)


class GenerationResult(BaseModel):
    """Full response from a provider after generation completes."""

    content: str
    model: str
    thinking_content: str = ""
    finish_reason: str | None = None
    usage: dict[str, int] | None = None
    latency_ms: int | None = None


class StreamChunk(BaseModel):
    """A single delta in a streaming response."""

    type: Literal["text_delta", "thinking_delta", "message_stop"]
    text: str = ""
    is_final: bool = False
    result: GenerationResult | None = None


class LLMProvider(ABC):
    """Abstract interface for model streaming clients.

    Cancellation is cooperative: closing the async iterator returned by
    generate_stream() (or cancelling the task consuming it) must stop the
    underlying request.
    """

    suggested_models: list[str] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., 'anthropic')."""
        ...

    @abstractmethod
    def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        """Send a streaming generation request. Yields chunks, final one last."""
        ...
