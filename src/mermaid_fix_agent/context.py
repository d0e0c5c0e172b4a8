"""
Transcript compaction between repair steps.

Only the freshest validator feedback matters to the model, so before each
step the transcript is pruned down to the latest tool result and the
assistant message that triggered it. Everything else (user turns, plain
assistant text) is kept.

Example:
    compactor = LatestToolResultCompactor()
    messages = compactor.compact(transcript)
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod

from mermaid_fix_agent.models import Message

# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """
    Estimate token count from text using chars/4 heuristic.

    Only used for logging; never for decisions.
    """
    return max(1, len(text) // 4)


def estimate_message_tokens(message: Message) -> int:
    """Estimate tokens for one message, including tool call arguments."""
    # Base overhead per message (role, separators)
    tokens = 4
    tokens += estimate_tokens(message.content)

    for tc in message.tool_calls:
        tokens += 4
        tokens += estimate_tokens(tc.name)
        tokens += estimate_tokens(json.dumps(tc.arguments, ensure_ascii=False))

    return tokens


def estimate_messages_tokens(messages: list[Message]) -> int:
    """Estimate total tokens for a list of messages."""
    return sum(estimate_message_tokens(m) for m in messages)


# ---------------------------------------------------------------------------
# Compaction strategies
# ---------------------------------------------------------------------------


class ContextCompactor(ABC):
    """Base class for transcript compaction strategies."""

    @abstractmethod
    def compact(self, messages: list[Message]) -> list[Message]:
        """
        Return a pruned copy of ``messages``. The input is not modified.
        """
        ...


class NoopCompactor(ContextCompactor):
    """Sends the full transcript every step."""

    def compact(self, messages: list[Message]) -> list[Message]:
        return list(messages)


class LatestToolResultCompactor(ContextCompactor):
    """
    Keep only the latest tool result and its triggering assistant message.

    1. Find the last ``tool`` message; without one, nothing changes.
    2. Find the nearest earlier assistant message carrying tool calls (the
       trigger).
    3. Drop every message with tool calls that comes before the trigger.
    4. Drop every ``tool`` message except the last.

    The size of the result is bounded by the non-tool conversation plus one
    assistant/tool pair, however many steps have run.
    """

    def compact(self, messages: list[Message]) -> list[Message]:
        last_tool = _last_index(messages, lambda m: m.role == "tool")
        if last_tool == -1:
            return list(messages)

        trigger = _last_index(
            messages[:last_tool],
            lambda m: m.role == "assistant" and m.has_tool_calls,
        )

        kept: list[Message] = []
        for i, msg in enumerate(messages):
            if msg.role == "tool":
                if i == last_tool:
                    kept.append(msg)
                continue
            if msg.has_tool_calls and i < trigger:
                continue
            kept.append(msg)
        return kept


def _last_index(messages: list[Message], predicate) -> int:
    for i in range(len(messages) - 1, -1, -1):
        if predicate(messages[i]):
            return i
    return -1
