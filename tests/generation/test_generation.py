"""Tests for GenerationService: the attempt state machine and retention rules."""

import asyncio

import pytest

from loom.generation.service import (
    GenerationAttempt,
    GenerationFailedError,
    GenerationState,
)
from loom.models import GenerationSettings
from loom.providers.base import StreamChunk
from tests.fixtures import (
    BlockingProvider,
    FakeProvider,
    make_branched_conversation,
    make_linear_conversation,
)

SETTINGS = GenerationSettings(model="fake-model", system_prompt="Be brief.")
FIVE_CHUNKS = ["one ", "two ", "three ", "four ", "five"]


def _cancel_after(attempt: GenerationAttempt, count: int):
    """on_chunk callback that cancels the attempt after `count` text chunks."""
    seen = 0

    def on_chunk(chunk):
        nonlocal seen
        if chunk.type == "text_delta":
            seen += 1
            if seen == count:
                attempt.cancel()

    return on_chunk


class TestCompleted:
    async def test_persists_node_and_moves_playhead(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        attempt = await gen_service.generate(
            conversation.id, nodes[0].id, FakeProvider(), SETTINGS
        )
        assert attempt.state == GenerationState.COMPLETED
        assert attempt.node.role == "assistant"
        assert attempt.node.content == "Fake response"
        assert attempt.node.parent_id == nodes[0].id
        stored = await store.get_node(attempt.node.id)
        assert stored == attempt.node
        updated = await store.get_conversation(conversation.id)
        assert updated.active_node_id == attempt.node.id

    async def test_sends_path_and_settings(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(
            store, mutator, "u1", "a1", "u2"
        )
        provider = FakeProvider()
        await gen_service.generate(conversation.id, nodes[2].id, provider, SETTINGS)
        request = provider.requests[0]
        assert request.messages == [
            {"role": "user", "content": "u1"},
            {"role": "assistant", "content": "a1"},
            {"role": "user", "content": "u2"},
        ]
        assert request.settings == SETTINGS

    async def test_keeps_thinking(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        provider = FakeProvider(["Answer"], thinking=["Let me ", "think"])
        attempt = await gen_service.generate(conversation.id, nodes[0].id, provider, SETTINGS)
        assert attempt.node.content == "Answer"
        assert attempt.node.thinking_content == "Let me think"

    async def test_on_chunk_sees_every_delta(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        received = []
        attempt = GenerationAttempt(on_chunk=received.append)
        await gen_service.generate(
            conversation.id, nodes[0].id, FakeProvider(), SETTINGS, attempt=attempt
        )
        assert [c.type for c in received] == ["text_delta", "text_delta", "message_stop"]

    async def test_closes_provider_stream(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        provider = FakeProvider()
        await gen_service.generate(conversation.id, nodes[0].id, provider, SETTINGS)
        assert provider.closed


class TestAborted:
    async def test_cancel_after_two_of_five_chunks(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        attempt = GenerationAttempt()
        attempt._on_chunk = _cancel_after(attempt, 2)

        result = await gen_service.generate(
            conversation.id, nodes[0].id, FakeProvider(FIVE_CHUNKS), SETTINGS,
            attempt=attempt,
        )
        assert result.state == GenerationState.ABORTED
        assert result.node.content == "one two "
        assert (await store.get_node(result.node.id)).content == "one two "
        updated = await store.get_conversation(conversation.id)
        assert updated.active_node_id == result.node.id

    async def test_cancel_before_any_text_keeps_nothing(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        attempt = GenerationAttempt()
        attempt.cancel()
        result = await gen_service.generate(
            conversation.id, nodes[0].id, FakeProvider(FIVE_CHUNKS), SETTINGS,
            attempt=attempt,
        )
        assert result.state == GenerationState.ABORTED
        assert result.node is None
        assert await store.count_nodes(conversation.id) == 1
        updated = await store.get_conversation(conversation.id)
        assert updated.active_node_id == nodes[0].id

    async def test_thinking_only_is_not_retained(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        attempt = GenerationAttempt()

        def on_chunk(chunk):
            if chunk.type == "thinking_delta":
                attempt.cancel()

        attempt._on_chunk = on_chunk
        result = await gen_service.generate(
            conversation.id, nodes[0].id,
            FakeProvider(["text"], thinking=["hmm"]), SETTINGS, attempt=attempt,
        )
        assert result.state == GenerationState.ABORTED
        assert result.thinking_content == "hmm"
        assert result.node is None

    async def test_caller_task_cancellation_aborts(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        provider = BlockingProvider(["par", "tial"])
        got_two = asyncio.Event()
        attempt = GenerationAttempt(
            on_chunk=lambda c: got_two.set() if attempt.content == "partial" else None
        )
        task = asyncio.create_task(
            gen_service.generate(
                conversation.id, nodes[0].id, provider, SETTINGS, attempt=attempt
            )
        )
        await got_two.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert attempt.state == GenerationState.ABORTED
        assert attempt.node.content == "partial"
        assert provider.closed

    async def test_external_cancel_while_provider_waits(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        provider = BlockingProvider(["a", "b"])
        got_two = asyncio.Event()
        attempt = GenerationAttempt(
            on_chunk=lambda c: got_two.set() if attempt.content == "ab" else None
        )
        task = asyncio.create_task(
            gen_service.generate(
                conversation.id, nodes[0].id, provider, SETTINGS, attempt=attempt
            )
        )
        await got_two.wait()
        attempt.cancel()
        result = await task
        assert result.state == GenerationState.ABORTED
        assert result.node.content == "ab"


class TestFailed:
    async def test_failure_without_text_stores_nothing(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        with pytest.raises(GenerationFailedError) as exc:
            await gen_service.generate(
                conversation.id, nodes[0].id,
                FakeProvider(FIVE_CHUNKS, fail_after=0), SETTINGS,
            )
        assert exc.value.attempt.state == GenerationState.FAILED
        assert exc.value.node is None
        assert isinstance(exc.value.attempt.error, RuntimeError)
        assert await store.count_nodes(conversation.id) == 1

    async def test_partial_text_kept_but_playhead_stays(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        with pytest.raises(GenerationFailedError) as exc:
            await gen_service.generate(
                conversation.id, nodes[0].id,
                FakeProvider(FIVE_CHUNKS, fail_after=2), SETTINGS,
            )
        node = exc.value.node
        assert node.content == "one two "
        assert (await store.get_node(node.id)).parent_id == nodes[0].id
        updated = await store.get_conversation(conversation.id)
        assert updated.active_node_id == nodes[0].id

    async def test_stream_without_final_message_fails(self, store, mutator, gen_service):
        class Truncated(FakeProvider):
            async def generate_stream(self, request):
                yield StreamChunk(type="text_delta", text="cut")

        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        with pytest.raises(GenerationFailedError) as exc:
            await gen_service.generate(conversation.id, nodes[0].id, Truncated(), SETTINGS)
        assert exc.value.attempt.state == GenerationState.FAILED
        assert exc.value.node.content == "cut"


class TestFlows:
    async def test_first_message_becomes_root_and_title(self, store, gen_service, paths):
        conversation = await store.create_conversation("New Conversation")
        attempt = await gen_service.send_message(
            conversation.id, "What is a loom?", FakeProvider(), SETTINGS
        )
        path = await paths.get_active_path(conversation.id)
        assert [n.role for n in path] == ["user", "assistant"]
        assert path[0].parent_id is None
        assert path[-1].id == attempt.node.id
        assert (await store.get_conversation(conversation.id)).title == "What is a loom?"

    async def test_long_first_message_title_truncated(self, store, gen_service):
        conversation = await store.create_conversation("New Conversation")
        await gen_service.send_message(conversation.id, "x" * 80, FakeProvider(), SETTINGS)
        title = (await store.get_conversation(conversation.id)).title
        assert title == "x" * 50 + "..."

    async def test_follow_up_appends_to_active_path(self, store, gen_service, paths):
        conversation = await store.create_conversation("Chat")
        first = await gen_service.send_message(conversation.id, "Hi", FakeProvider(), SETTINGS)
        second = await gen_service.send_message(
            conversation.id, "More", FakeProvider(), SETTINGS
        )
        path = await paths.get_active_path(conversation.id)
        assert [n.content for n in path] == ["Hi", "Fake response", "More", "Fake response"]
        assert path[2].parent_id == first.node.id
        assert path[-1].id == second.node.id

    async def test_regenerate_adds_sibling(self, store, mutator, gen_service, paths):
        conversation, root, hi, hey = await make_branched_conversation(store, mutator)
        attempt = await gen_service.regenerate(conversation.id, hi.id, FakeProvider(), SETTINGS)
        assert attempt.node.parent_id == root.id
        assert attempt.node.branch_index == 2
        assert [c.id for c in await store.get_children(root.id)] == [hi.id, hey.id, attempt.node.id]
        path = await paths.get_active_path(conversation.id)
        assert path[-1].id == attempt.node.id

    async def test_edit_branches_and_moves_active_path(self, store, mutator, gen_service, paths):
        conversation, nodes = await make_linear_conversation(
            store, mutator, "u1", "a1", "u2", "a2"
        )
        u2, a2 = nodes[2], nodes[3]
        attempt = await gen_service.edit_and_regenerate(
            conversation.id, u2.id, "u2 edited", FakeProvider(), SETTINGS
        )
        path = await paths.get_active_path(conversation.id)
        edited = path[2]
        assert edited.content == "u2 edited"
        assert edited.parent_id == u2.parent_id
        assert edited.branch_index > u2.branch_index
        assert path[-1].id == attempt.node.id
        assert (await store.get_node(u2.id)).content == "u2"
        assert (await store.get_node(a2.id)).parent_id == u2.id

    async def test_stream_yields_deltas_then_finishes(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        attempt = GenerationAttempt()
        chunks = [
            c async for c in gen_service.stream(
                conversation.id, nodes[0].id, FakeProvider(), SETTINGS, attempt
            )
        ]
        assert [c.text for c in chunks] == ["Fake ", "response"]
        assert attempt.state == GenerationState.COMPLETED
        assert attempt.node.content == "Fake response"

    async def test_stream_closed_early_aborts(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        attempt = GenerationAttempt()
        iterator = gen_service.stream(
            conversation.id, nodes[0].id, BlockingProvider(["a", "b"]), SETTINGS, attempt
        )
        assert (await iterator.__anext__()).text == "a"
        assert (await iterator.__anext__()).text == "b"
        await iterator.aclose()
        assert attempt.state == GenerationState.ABORTED
        assert attempt.node.content == "ab"

    async def test_stream_raises_on_failure(self, store, mutator, gen_service):
        conversation, nodes = await make_linear_conversation(store, mutator, "Hello")
        attempt = GenerationAttempt()
        with pytest.raises(GenerationFailedError):
            async for _ in gen_service.stream(
                conversation.id, nodes[0].id,
                FakeProvider(FIVE_CHUNKS, fail_after=1), SETTINGS, attempt,
            ):
                pass
        assert attempt.state == GenerationState.FAILED
