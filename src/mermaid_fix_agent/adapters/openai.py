"""
OpenAI backend (chat completions, streamed).

Also works with any OpenAI-compatible endpoint through ``base_url``.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, TypedDict

import httpx
from openai import AsyncOpenAI

from mermaid_fix_agent.adapters.base import (
    BackendEvent,
    ModelBackend,
    ToolDefinition,
    normalize_finish_reason,
)
from mermaid_fix_agent.adapters.transform import to_openai_messages
from mermaid_fix_agent.logging import get_logger
from mermaid_fix_agent.models import Message, TokenUsage, ToolCall
from mermaid_fix_agent.utils.json_parse import parse_streaming_json

logger = get_logger("adapters.openai")


class OpenAIFunction(TypedDict):
    """OpenAI function definition."""

    name: str
    description: str
    parameters: dict[str, Any]


class OpenAITool(TypedDict):
    """OpenAI tool definition."""

    type: str
    function: OpenAIFunction


class OpenAIBackend(ModelBackend):
    """
    OpenAI chat-completions backend.

    Example:
        backend = OpenAIBackend(model="gpt-4o-mini")
        async for event in backend.stream(messages, system_prompt, tools):
            ...
    """

    name = "openai"
    supports_structured_output = True

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float | None = 0.3,
        max_output_tokens: int | None = 4000,
    ) -> None:
        self._client = client
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    @property
    def client(self) -> AsyncOpenAI:
        """Get or create the OpenAI client."""
        if self._client is None:
            http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(120.0, connect=30.0),
            )
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                http_client=http_client,
            )
        return self._client

    @staticmethod
    def _to_openai_tools(tools: list[ToolDefinition]) -> list[OpenAITool]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["parameters"],
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _tool_choice(choice: str | None) -> Any:
        if choice is None or choice in ("auto", "required", "none"):
            return choice or "auto"
        return {"type": "function", "function": {"name": choice}}

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
    ) -> AsyncIterator[BackendEvent]:
        request_kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages, system_prompt),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.temperature is not None:
            request_kwargs["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            request_kwargs["max_tokens"] = self.max_output_tokens
        if tools:
            request_kwargs["tools"] = self._to_openai_tools(tools)
            request_kwargs["tool_choice"] = self._tool_choice(tool_choice)

        stream = await self.client.chat.completions.create(**request_kwargs)

        finish_reason: str | None = None
        usage = TokenUsage()
        # Track active tool calls: index -> {id, name, args}
        active_tool_calls: dict[int, dict[str, str]] = {}

        async for chunk in stream:
            if chunk.usage:
                usage = TokenUsage(
                    input_tokens=chunk.usage.prompt_tokens or 0,
                    output_tokens=chunk.usage.completion_tokens or 0,
                )
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta

            if delta.content:
                yield BackendEvent(type="text_delta", text=delta.content)

            if delta.tool_calls:
                for tc_delta in delta.tool_calls:
                    entry = active_tool_calls.setdefault(
                        tc_delta.index, {"id": "", "name": "", "args": ""}
                    )
                    if tc_delta.id:
                        entry["id"] = tc_delta.id
                    if tc_delta.function and tc_delta.function.name:
                        entry["name"] = tc_delta.function.name
                    if tc_delta.function and tc_delta.function.arguments:
                        entry["args"] += tc_delta.function.arguments

            if choice.finish_reason is not None:
                finish_reason = choice.finish_reason

        # Tool calls are emitted whole, in index order, once the stream ends
        for idx in sorted(active_tool_calls):
            entry = active_tool_calls[idx]
            yield BackendEvent(
                type="tool_call",
                tool_call=ToolCall(
                    id=entry["id"] or f"call_{idx}",
                    name=entry["name"],
                    arguments=_parse_arguments(entry["args"]),
                ),
            )

        logger.debug("OpenAI call finished: %s (%d tokens)", finish_reason, usage.total_tokens)
        yield BackendEvent(
            type="done",
            finish_reason=normalize_finish_reason(finish_reason),
            usage=usage,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


def _parse_arguments(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.warning("Tool call arguments were not valid JSON; using partial parse")
        return parse_streaming_json(raw)
    return parsed if isinstance(parsed, dict) else {}
