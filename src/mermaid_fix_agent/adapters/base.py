"""
Base model backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, TypedDict

from mermaid_fix_agent.models import Message, TokenUsage, ToolCall


class ToolDefinition(TypedDict):
    """Provider-neutral tool definition."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON schema for parameters


@dataclass
class BackendEvent:
    """
    One event from a streaming model call.

    Types:
        ``text_delta``  a chunk of assistant text (``text``)
        ``tool_call``   a complete tool call with parsed arguments (``tool_call``)
        ``done``        the call finished (``finish_reason``, ``usage``)
        ``error``       the provider failed mid-stream (``error``)
    """

    type: str
    text: str = ""
    tool_call: ToolCall | None = None
    finish_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None


class ModelBackend(ABC):
    """
    Abstract base class for model providers.

    A backend turns a transcript plus a system prompt into a stream of
    ``BackendEvent``s. It never executes tools; the orchestrator does.

    Example implementation for a custom provider:

        class MyBackend(ModelBackend):
            name = "mine"

            async def stream(self, messages, system_prompt, tools=None, tool_choice=None):
                reply = await my_client.complete(system_prompt, messages)
                yield BackendEvent(type="text_delta", text=reply.text)
                yield BackendEvent(type="done", finish_reason="stop")
    """

    name: str = "backend"
    supports_native_tools: bool = True
    supports_structured_output: bool = False

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
    ) -> AsyncIterator[BackendEvent]:
        """
        Stream one model call.

        Args:
            messages: Conversation transcript (no system messages)
            system_prompt: System prompt for this call
            tools: Tools the model may call
            tool_choice: "auto" (default), "required", or a tool name

        Yields:
            BackendEvent objects, ending with ``done``
        """
        pass

    async def aclose(self) -> None:
        """Release provider resources (HTTP clients and the like)."""
        return None


_FINISH_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "length": "length",
    "max_tokens": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "tool_use": "tool-calls",
    "content_filter": "content-filter",
    "refusal": "content-filter",
}


def normalize_finish_reason(reason: str | None) -> str:
    """Map provider finish reasons onto stop/length/tool-calls/content-filter."""
    if reason is None:
        return "unknown"
    return _FINISH_REASONS.get(reason, reason)
