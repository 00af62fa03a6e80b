"""Shared test helpers: a controllable clock and scripted providers."""

import asyncio
from collections.abc import AsyncIterator

from loom.models import DAY_MS, Conversation, Node
from loom.providers.base import (
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    StreamChunk,
)
from loom.trees.branching import BranchMutator
from loom.trees.store import TreeStore

T0 = 1_700_000_000_000


class FakeClock:
    """Epoch-ms clock that ticks 1ms per reading and can jump forward."""

    def __init__(self, start: int = T0) -> None:
        self.current = start

    def __call__(self) -> int:
        self.current += 1
        return self.current

    def advance(self, ms: int) -> None:
        self.current += ms

    def advance_days(self, days: float) -> None:
        self.advance(int(days * DAY_MS))


class FakeProvider(LLMProvider):
    """Test provider that streams canned chunks.

    With fail_after set, raises error after that many text chunks instead of
    finishing.
    """

    def __init__(
        self,
        chunks: list[str] | None = None,
        thinking: list[str] | None = None,
        *,
        fail_after: int | None = None,
        error: Exception | None = None,
        name: str = "fake",
    ) -> None:
        self.chunks = ["Fake ", "response"] if chunks is None else chunks
        self.thinking = thinking or []
        self.fail_after = fail_after
        self.error = error or RuntimeError("provider exploded")
        self._name = name
        self.requests: list[GenerationRequest] = []
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        self.requests.append(request)
        try:
            for text in self.thinking:
                yield StreamChunk(type="thinking_delta", text=text)
            for i, text in enumerate(self.chunks):
                if self.fail_after is not None and i == self.fail_after:
                    raise self.error
                yield StreamChunk(type="text_delta", text=text)
            if self.fail_after is not None:
                raise self.error
            yield StreamChunk(
                type="message_stop",
                is_final=True,
                result=GenerationResult(
                    content="".join(self.chunks),
                    thinking_content="".join(self.thinking),
                    model="fake-model",
                    finish_reason="end_turn",
                    usage={"input_tokens": 10, "output_tokens": 5},
                    latency_ms=42,
                ),
            )
        finally:
            self.closed = True


class BlockingProvider(LLMProvider):
    """Streams its chunks, then waits for release() before finishing."""

    def __init__(self, chunks: list[str]) -> None:
        self.chunks = chunks
        self._release = asyncio.Event()
        self.closed = False

    @property
    def name(self) -> str:
        return "blocking"

    def release(self) -> None:
        self._release.set()

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        try:
            for text in self.chunks:
                yield StreamChunk(type="text_delta", text=text)
            await self._release.wait()
            yield StreamChunk(
                type="message_stop",
                is_final=True,
                result=GenerationResult(content="".join(self.chunks), model="blocking-model"),
            )
        finally:
            self.closed = True


async def make_branched_conversation(
    store: TreeStore, mutator: BranchMutator, title: str = "Test"
) -> tuple[Conversation, Node, Node, Node]:
    """Conversation with root "Hello" and two responses, "Hi" and "Hey"."""
    conversation = await store.create_conversation(title)
    root = await mutator.create_node(conversation.id, None, "user", "Hello")
    hi = await mutator.create_node(conversation.id, root.id, "assistant", "Hi")
    hey = await mutator.create_node(conversation.id, root.id, "assistant", "Hey")
    return conversation, root, hi, hey


async def make_linear_conversation(
    store: TreeStore, mutator: BranchMutator, *contents: str
) -> tuple[Conversation, list[Node]]:
    """Alternating user/assistant chain with the playhead on the last node."""
    conversation = await store.create_conversation("Linear")
    nodes: list[Node] = []
    parent_id = None
    for i, content in enumerate(contents):
        role = "user" if i % 2 == 0 else "assistant"
        node = await mutator.create_node(conversation.id, parent_id, role, content)
        nodes.append(node)
        parent_id = node.id
    if nodes:
        await store.set_active_node(conversation.id, nodes[-1].id)
    return await store.get_conversation(conversation.id), nodes
