"""Anthropic (Claude) model streaming client, direct API or Amazon Bedrock."""

import time
from collections.abc import AsyncIterator
from typing import Any

from anthropic import AsyncAnthropic, AsyncAnthropicBedrock

from loom.providers.base import (
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    StreamChunk,
)


class AnthropicProvider(LLMProvider):
    """LLM provider backed by the Messages API.

    Works with AsyncAnthropic and AsyncAnthropicBedrock alike; both expose the
    same messages.create() streaming interface.
    """

    suggested_models = [
        "claude-sonnet-4-5-20250929",
        "claude-opus-4-1-20250805",
        "claude-haiku-4-5-20251001",
    ]

    def __init__(
        self,
        client: AsyncAnthropic | AsyncAnthropicBedrock,
        *,
        name: str = "anthropic",
    ) -> None:
        self._client = client
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        params = self._build_params(request)
        start = time.monotonic()
        accumulated_text = ""
        accumulated_thinking = ""
        input_tokens = 0
        output_tokens = 0
        stop_reason: str | None = None
        model = request.settings.model

        stream = await self._client.messages.create(**params, stream=True)
        try:
            async for event in stream:
                if event.type == "message_start":
                    model = event.message.model
                    input_tokens = event.message.usage.input_tokens
                elif event.type == "content_block_delta":
                    delta_type = getattr(event.delta, "type", None)
                    if delta_type == "thinking_delta":
                        accumulated_thinking += event.delta.thinking
                        yield StreamChunk(type="thinking_delta", text=event.delta.thinking)
                    elif delta_type == "text_delta":
                        accumulated_text += event.delta.text
                        yield StreamChunk(type="text_delta", text=event.delta.text)
                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason
                    output_tokens = event.usage.output_tokens
        finally:
            await stream.close()

        latency_ms = int((time.monotonic() - start) * 1000)
        yield StreamChunk(
            type="message_stop",
            is_final=True,
            result=GenerationResult(
                content=accumulated_text,
                thinking_content=accumulated_thinking,
                model=model,
                finish_reason=stop_reason,
                usage={"input_tokens": input_tokens, "output_tokens": output_tokens},
                latency_ms=latency_ms,
            ),
        )

    @staticmethod
    def _build_params(request: GenerationRequest) -> dict[str, Any]:
        """Build kwargs dict for client.messages.create()."""
        settings = request.settings
        params: dict[str, Any] = {
            "model": settings.model,
            "max_tokens": settings.max_tokens,
            "messages": [
                {"role": m["role"], "content": m["content"]} for m in request.messages
            ],
        }
        if settings.system_prompt:
            params["system"] = settings.system_prompt
        if settings.extended_thinking:
            # Temperature is fixed by the API when thinking is enabled
            params["thinking"] = {
                "type": "enabled",
                "budget_tokens": settings.thinking_budget,
            }
        else:
            params["temperature"] = settings.temperature
        return params
