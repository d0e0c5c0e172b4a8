"""
Anthropic backend (Messages API, streamed).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, TypedDict

from anthropic import AsyncAnthropic

from mermaid_fix_agent.adapters.base import (
    BackendEvent,
    ModelBackend,
    ToolDefinition,
    normalize_finish_reason,
)
from mermaid_fix_agent.adapters.transform import to_anthropic_messages
from mermaid_fix_agent.logging import get_logger
from mermaid_fix_agent.models import Message, TokenUsage, ToolCall

logger = get_logger("adapters.anthropic")


class AnthropicInputSchema(TypedDict):
    """Anthropic tool input schema."""

    type: str
    properties: dict[str, Any]
    required: list[str]


class AnthropicTool(TypedDict):
    """Anthropic tool definition."""

    name: str
    description: str
    input_schema: AnthropicInputSchema


class AnthropicBackend(ModelBackend):
    """
    Anthropic Messages backend.

    Text is streamed as it arrives; tool calls are read from the final
    message once the stream completes.

    Example:
        backend = AnthropicBackend(model="claude-3-5-haiku-latest")
    """

    name = "anthropic"

    def __init__(
        self,
        client: AsyncAnthropic | None = None,
        model: str = "claude-3-5-haiku-latest",
        api_key: str | None = None,
        temperature: float | None = 0.3,
        max_output_tokens: int = 4000,
    ) -> None:
        self._client = client
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    @property
    def client(self) -> AsyncAnthropic:
        """Get or create the Anthropic client."""
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self.api_key)
        return self._client

    @staticmethod
    def _to_anthropic_tools(tools: list[ToolDefinition]) -> list[AnthropicTool]:
        return [
            {
                "name": tool["name"],
                "description": tool["description"],
                "input_schema": {
                    "type": tool["parameters"]["type"],
                    "properties": tool["parameters"]["properties"],
                    "required": tool["parameters"].get("required", []),
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _tool_choice(choice: str | None) -> dict[str, str]:
        if choice is None or choice == "auto":
            return {"type": "auto"}
        if choice == "required":
            return {"type": "any"}
        return {"type": "tool", "name": choice}

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
    ) -> AsyncIterator[BackendEvent]:
        request_kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_output_tokens,
            "messages": to_anthropic_messages(messages),
        }
        if system_prompt:
            request_kwargs["system"] = system_prompt
        if self.temperature is not None:
            request_kwargs["temperature"] = self.temperature
        if tools:
            request_kwargs["tools"] = self._to_anthropic_tools(tools)
            request_kwargs["tool_choice"] = self._tool_choice(tool_choice)

        async with self.client.messages.stream(**request_kwargs) as stream:
            async for text in stream.text_stream:
                yield BackendEvent(type="text_delta", text=text)
            final = await stream.get_final_message()

        for block in final.content:
            if block.type == "tool_use":
                arguments = block.input if isinstance(block.input, dict) else {}
                yield BackendEvent(
                    type="tool_call",
                    tool_call=ToolCall(id=block.id, name=block.name, arguments=arguments),
                )

        usage = TokenUsage(
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
        )
        logger.debug("Anthropic call finished: %s (%d tokens)", final.stop_reason, usage.total_tokens)
        yield BackendEvent(
            type="done",
            finish_reason=normalize_finish_reason(final.stop_reason),
            usage=usage,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
