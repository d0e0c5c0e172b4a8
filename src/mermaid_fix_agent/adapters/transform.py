"""Provider message transformation utilities."""
from __future__ import annotations

import hashlib
import json
from typing import Any

from mermaid_fix_agent.models import Message


def normalize_tool_call_id(original_id: str, max_length: int = 64) -> str:
    """Normalize a tool call ID to fit within provider limits.

    OpenAI generates long IDs; Anthropic requires max 64 chars.
    Uses SHA-256 hash prefix if ID exceeds max_length.
    """
    if len(original_id) <= max_length:
        return original_id
    hash_prefix = hashlib.sha256(original_id.encode()).hexdigest()[: max_length - 3]
    return f"tc_{hash_prefix}"


def drop_orphaned_tool_calls(messages: list[Message]) -> list[Message]:
    """Remove tool calls that have no matching tool result.

    After compaction the trigger assistant message can still carry calls
    whose results were dropped. Providers reject those, so they are removed
    here. Assistant messages left with neither text nor calls are skipped.
    """
    result_ids = {m.tool_call_id for m in messages if m.role == "tool" and m.tool_call_id}

    out: list[Message] = []
    for msg in messages:
        if msg.role == "assistant" and msg.tool_calls:
            kept = [tc for tc in msg.tool_calls if tc.id in result_ids]
            if len(kept) != len(msg.tool_calls):
                msg = Message(role="assistant", content=msg.content, tool_calls=kept)
        if msg.role == "assistant" and not msg.content and not msg.tool_calls:
            continue
        out.append(msg)
    return out


def to_openai_messages(messages: list[Message], system_prompt: str = "") -> list[dict[str, Any]]:
    """Build OpenAI chat-completions messages."""
    out: list[dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in drop_orphaned_tool_calls(messages):
        if msg.role == "assistant" and msg.tool_calls:
            out.append(
                {
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                }
            )
        elif msg.role == "tool":
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content,
                }
            )
        else:
            out.append({"role": msg.role, "content": msg.content})
    return out


def to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Build Anthropic messages.

    System messages are dropped (Anthropic takes the system prompt
    separately), tool results become ``tool_result`` blocks in a user turn,
    and consecutive user turns are merged so roles alternate.
    """
    out: list[dict[str, Any]] = []

    def append(role: str, blocks: list[dict[str, Any]]) -> None:
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": blocks})

    for msg in drop_orphaned_tool_calls(messages):
        if msg.role == "system":
            continue

        if msg.role == "assistant":
            blocks: list[dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": normalize_tool_call_id(tc.id),
                        "name": tc.name,
                        "input": tc.arguments,
                    }
                )
            append("assistant", blocks)
        elif msg.role == "tool":
            append(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": normalize_tool_call_id(msg.tool_call_id or ""),
                        "content": msg.content,
                    }
                ],
            )
        else:
            append("user", [{"type": "text", "text": msg.content}])
    return out
