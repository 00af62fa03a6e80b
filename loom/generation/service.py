"""Generation service: streams a model response into a new branch.

Each call runs one attempt through idle -> streaming -> completed | aborted |
failed. Retention rules:

- completed: the response is stored and the playhead moves to it.
- aborted (cancelled): whatever text arrived is stored and the playhead moves
  to it. Nothing is stored if no text arrived.
- failed: with no text, nothing is stored. With partial text, the partial
  response is kept as a branch but the playhead stays where it was. Either
  way GenerationFailedError is raised.

A node is always persisted before the playhead is moved to it.
"""

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import StrEnum

from loom.models import GenerationSettings, Node, title_from_message
from loom.providers.base import GenerationRequest, GenerationResult, LLMProvider, StreamChunk
from loom.trees.branching import BranchMutator
from loom.trees.paths import PathBuilder, to_messages
from loom.trees.store import NodeNotFoundError, TreeStore

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], Awaitable[None] | None]


class GenerationState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class GenerationAttempt:
    """Live handle on one generation. Cancel it with cancel()."""

    def __init__(self, on_chunk: ChunkCallback | None = None) -> None:
        self.state = GenerationState.IDLE
        self.content = ""
        self.thinking_content = ""
        self.result: GenerationResult | None = None
        self.node: Node | None = None
        self.error: BaseException | None = None
        self._on_chunk = on_chunk
        self._cancel_requested = asyncio.Event()

    def cancel(self) -> None:
        """Request cancellation. Takes effect before the next chunk is accepted."""
        self._cancel_requested.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def finished(self) -> bool:
        return self.state in (
            GenerationState.COMPLETED,
            GenerationState.ABORTED,
            GenerationState.FAILED,
        )

    async def _accept(self, chunk: StreamChunk) -> None:
        if chunk.type == "text_delta":
            self.content += chunk.text
        elif chunk.type == "thinking_delta":
            self.thinking_content += chunk.text
        elif chunk.is_final:
            self.result = chunk.result
        if self._on_chunk is not None:
            maybe_awaitable = self._on_chunk(chunk)
            if inspect.isawaitable(maybe_awaitable):
                await maybe_awaitable


class GenerationService:
    """Orchestrates context assembly, the streaming call, and node persistence."""

    def __init__(self, store: TreeStore, mutator: BranchMutator, paths: PathBuilder) -> None:
        self._store = store
        self._mutator = mutator
        self._paths = paths

    # -- Branch preparation --

    async def prepare_message(
        self, conversation_id: str, content: str, *, parent_id: str | None = None
    ) -> Node:
        """Append a user message to the end of the active path (or parent_id).

        The first message of a conversation becomes its root and its title.
        """
        conversation = await self._store.get_conversation(conversation_id)
        if parent_id is None:
            path = await self._paths.build_linear_path(
                conversation_id, conversation.active_node_id
            )
            parent_id = path[-1].id if path else None

        node = await self._mutator.create_node(conversation_id, parent_id, "user", content)
        if parent_id is None:
            await self._store.rename_conversation(conversation_id, title_from_message(content))
        return node

    async def prepare_regenerate(self, conversation_id: str, assistant_node_id: str) -> Node:
        return await self._mutator.regeneration_parent(conversation_id, assistant_node_id)

    async def prepare_edit(self, conversation_id: str, user_node_id: str, content: str) -> Node:
        return await self._mutator.edit_as_branch(conversation_id, user_node_id, content)

    # -- One-shot flows --

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        provider: LLMProvider,
        settings: GenerationSettings,
        *,
        parent_id: str | None = None,
        attempt: GenerationAttempt | None = None,
    ) -> GenerationAttempt:
        user_node = await self.prepare_message(conversation_id, content, parent_id=parent_id)
        return await self.generate(
            conversation_id, user_node.id, provider, settings, attempt=attempt
        )

    async def regenerate(
        self,
        conversation_id: str,
        assistant_node_id: str,
        provider: LLMProvider,
        settings: GenerationSettings,
        *,
        attempt: GenerationAttempt | None = None,
    ) -> GenerationAttempt:
        """Generate a new sibling of an existing response."""
        prompt = await self.prepare_regenerate(conversation_id, assistant_node_id)
        return await self.generate(
            conversation_id, prompt.id, provider, settings, attempt=attempt
        )

    async def edit_and_regenerate(
        self,
        conversation_id: str,
        user_node_id: str,
        content: str,
        provider: LLMProvider,
        settings: GenerationSettings,
        *,
        attempt: GenerationAttempt | None = None,
    ) -> GenerationAttempt:
        """Branch an edited copy of a user message and answer it."""
        edited = await self.prepare_edit(conversation_id, user_node_id, content)
        return await self.generate(
            conversation_id, edited.id, provider, settings, attempt=attempt
        )

    # -- Core --

    async def generate(
        self,
        conversation_id: str,
        parent_id: str,
        provider: LLMProvider,
        settings: GenerationSettings,
        *,
        attempt: GenerationAttempt | None = None,
    ) -> GenerationAttempt:
        """Stream a response to the path ending at parent_id into a new child.

        Returns the finished attempt. Raises GenerationFailedError when the
        provider fails; attempt.node is set if partial text was retained.
        """
        attempt = attempt or GenerationAttempt()
        parent = await self._store.get_node(parent_id)
        if parent.conversation_id != conversation_id:
            raise NodeNotFoundError(parent_id)

        path = await self._paths.build_linear_path(conversation_id, parent_id)
        request = GenerationRequest(messages=to_messages(path), settings=settings)

        attempt.state = GenerationState.STREAMING
        stream = provider.generate_stream(request)
        consumer = asyncio.create_task(self._consume(stream, attempt))
        cancel_waiter = asyncio.create_task(attempt._cancel_requested.wait())
        try:
            await asyncio.wait(
                {consumer, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            if not consumer.done():
                consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
        except asyncio.CancelledError:
            # The caller's own task was cancelled: treat it as an abort.
            attempt.cancel()
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
            await self._finish_aborted(conversation_id, parent_id, attempt)
            raise
        finally:
            cancel_waiter.cancel()
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        error = None if consumer.cancelled() else consumer.exception()
        if error is not None:
            await self._finish_failed(conversation_id, parent_id, attempt, error)
        elif attempt.cancel_requested and attempt.result is None:
            await self._finish_aborted(conversation_id, parent_id, attempt)
        elif attempt.result is None:
            await self._finish_failed(
                conversation_id, parent_id, attempt,
                RuntimeError("stream ended without a final message"),
            )
        else:
            await self._finish_completed(conversation_id, parent_id, attempt)
        return attempt

    async def stream(
        self,
        conversation_id: str,
        parent_id: str,
        provider: LLMProvider,
        settings: GenerationSettings,
        attempt: GenerationAttempt,
    ) -> AsyncIterator[StreamChunk]:
        """Iterator flavour of generate(): yields text and thinking deltas.

        Closing the iterator early cancels the attempt. Once exhausted,
        inspect attempt.state and attempt.node; GenerationFailedError is
        raised at the end of iteration on failure.
        """
        queue: asyncio.Queue[StreamChunk | None] = asyncio.Queue()
        attempt._on_chunk = queue.put
        task = asyncio.create_task(
            self.generate(conversation_id, parent_id, provider, settings, attempt=attempt)
        )
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while (chunk := await queue.get()) is not None:
                if not chunk.is_final:
                    yield chunk
            await task
        finally:
            if not task.done():
                attempt.cancel()
                await asyncio.gather(task, return_exceptions=True)

    @staticmethod
    async def _consume(stream: AsyncIterator[StreamChunk], attempt: GenerationAttempt) -> None:
        async for chunk in stream:
            if attempt.cancel_requested:
                return
            await attempt._accept(chunk)

    # -- Terminal states --

    async def _finish_completed(
        self, conversation_id: str, parent_id: str, attempt: GenerationAttempt
    ) -> None:
        assert attempt.result is not None
        attempt.node = await self._mutator.create_node(
            conversation_id,
            parent_id,
            "assistant",
            attempt.result.content or attempt.content,
            attempt.result.thinking_content or attempt.thinking_content,
        )
        await self._store.set_active_node(conversation_id, attempt.node.id)
        attempt.state = GenerationState.COMPLETED

    async def _finish_aborted(
        self, conversation_id: str, parent_id: str, attempt: GenerationAttempt
    ) -> None:
        if attempt.content:
            attempt.node = await self._mutator.create_node(
                conversation_id, parent_id, "assistant",
                attempt.content, attempt.thinking_content,
            )
            await self._store.set_active_node(conversation_id, attempt.node.id)
        attempt.state = GenerationState.ABORTED
        logger.info(
            "Generation under %s aborted after %d chars", parent_id, len(attempt.content)
        )

    async def _finish_failed(
        self,
        conversation_id: str,
        parent_id: str,
        attempt: GenerationAttempt,
        error: BaseException,
    ) -> None:
        attempt.error = error
        attempt.state = GenerationState.FAILED
        if attempt.content:
            attempt.node = await self._mutator.create_node(
                conversation_id, parent_id, "assistant",
                attempt.content, attempt.thinking_content,
            )
        logger.warning(
            "Generation under %s failed (%s); partial response %s",
            parent_id, error, "retained" if attempt.node else "discarded",
        )
        raise GenerationFailedError(attempt) from error


class GenerationFailedError(Exception):
    def __init__(self, attempt: GenerationAttempt) -> None:
        self.attempt = attempt
        self.node = attempt.node
        super().__init__(f"Generation failed: {attempt.error}")
