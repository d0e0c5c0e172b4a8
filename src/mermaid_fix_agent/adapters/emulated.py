"""
JSON-in-text tool calling for backends without native tool support.

The model is told to answer with ``{"name": ..., "parameters": {...}}``;
this decorator watches the streamed text and turns such objects into
regular ``tool_call`` events, so the orchestrator cannot tell the
difference.
"""

from __future__ import annotations

import itertools
import json
from collections.abc import AsyncIterator
from typing import Any

from mermaid_fix_agent.adapters.base import BackendEvent, ModelBackend, ToolDefinition
from mermaid_fix_agent.logging import get_logger
from mermaid_fix_agent.models import Message, ToolCall
from mermaid_fix_agent.prompts import JSON_PROTOCOL, PromptTemplateLoader, default_loader
from mermaid_fix_agent.utils.json_parse import parse_json_object

logger = get_logger("adapters.emulated")

TOOL_RESULT_PREFIX = "Tool result:"


class JsonToolCallingBackend(ModelBackend):
    """
    Wraps a backend and emulates tool calling through plain text.

    Example:
        backend = JsonToolCallingBackend(OpenAIBackend(base_url=..., model=...))
    """

    supports_native_tools = False

    def __init__(
        self,
        inner: ModelBackend,
        prompts: PromptTemplateLoader | None = None,
    ) -> None:
        self.inner = inner
        self.prompts = prompts or default_loader()
        self.name = f"{inner.name}+json"
        self.supports_structured_output = inner.supports_structured_output
        self._ids = itertools.count(1)

    def _system_prompt(self, system_prompt: str, tools: list[ToolDefinition] | None) -> str:
        if not tools:
            return system_prompt
        protocol = "\n\n".join(
            self.prompts.render(JSON_PROTOCOL, tool_name=tool["name"]) for tool in tools
        )
        return f"{system_prompt}\n\n{protocol}" if system_prompt else protocol

    @staticmethod
    def to_text_messages(messages: list[Message]) -> list[Message]:
        """Render tool calls and results as plain conversation turns."""
        out: list[Message] = []
        for msg in messages:
            if msg.role == "assistant" and msg.tool_calls:
                content = msg.content.strip() or "\n".join(
                    json.dumps({"name": tc.name, "parameters": tc.arguments}, ensure_ascii=False)
                    for tc in msg.tool_calls
                )
                out.append(Message(role="assistant", content=content))
            elif msg.role == "tool":
                out.append(Message(role="user", content=f"{TOOL_RESULT_PREFIX}\n{msg.content}"))
            else:
                out.append(msg)
        return out

    def _match(self, text: str, tool_names: set[str]) -> ToolCall | None:
        """Return a tool call if ``text`` is exactly one protocol object."""
        stripped = text.strip()
        if not (stripped.startswith("{") and stripped.endswith("}")):
            return None
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            return None
        return self._to_tool_call(payload, tool_names)

    def _to_tool_call(self, payload: Any, tool_names: set[str]) -> ToolCall | None:
        if not isinstance(payload, dict):
            return None
        name = payload.get("name")
        params = payload.get("parameters", payload.get("arguments"))
        if not isinstance(name, str) or not isinstance(params, dict):
            return None
        if tool_names and name not in tool_names:
            logger.warning("Model emitted JSON for unknown tool: %s", name)
        return ToolCall(id=f"emulated_{next(self._ids)}", name=name, arguments=params)

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
    ) -> AsyncIterator[BackendEvent]:
        tool_names = {t["name"] for t in tools or []}
        accumulated = ""
        emitted = 0

        upstream = self.inner.stream(
            self.to_text_messages(messages),
            self._system_prompt(system_prompt, tools),
            tools=None,
        )
        try:
            async for event in upstream:
                if event.type == "text_delta":
                    yield event
                    if not tools:
                        continue
                    accumulated += event.text
                    call = self._match(accumulated, tool_names)
                    if call is not None:
                        emitted += 1
                        accumulated = ""
                        yield BackendEvent(type="tool_call", tool_call=call)
                elif event.type == "done":
                    # A fenced or chatty reply can still hold one call
                    if tools and accumulated.strip():
                        call = self._to_tool_call(parse_json_object(accumulated), tool_names)
                        if call is not None:
                            emitted += 1
                            yield BackendEvent(type="tool_call", tool_call=call)
                    finish_reason = "tool-calls" if emitted else event.finish_reason
                    yield BackendEvent(type="done", finish_reason=finish_reason, usage=event.usage)
                else:
                    yield event
        finally:
            await upstream.aclose()

    async def aclose(self) -> None:
        await self.inner.aclose()
