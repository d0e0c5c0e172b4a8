"""Test doubles shared by the test modules."""

from __future__ import annotations

import asyncio
import re
from typing import Any

from mermaid_fix_agent.adapters.base import BackendEvent, ModelBackend
from mermaid_fix_agent.models import Message, TokenUsage, ToolCall
from mermaid_fix_agent.validation import ParseOutcome

BROKEN = "graph TD\nA[Start (run)] --> B[End]"
FIXED = 'graph TD\nA["Start (run)"] --> B[End]'
STILL_BROKEN = "graph TD\nA[Start (again)] --> B[End]"
VALID = "graph TD\nA --> B"

KNOWN_HEADERS = {
    "graph",
    "flowchart",
    "sequenceDiagram",
    "classDiagram",
    "stateDiagram-v2",
    "erDiagram",
    "gantt",
    "pie",
}

_UNQUOTED_PARENS = re.compile(r'\[[^"\]\n]*\([^"\]\n]*\)[^"\]\n]*\]')


def fake_mermaid_parse(code: str) -> ParseOutcome:
    """
    A tiny stand-in for mermaid-cli.

    Accepts a known header followed by lines without unquoted parentheses
    in ``[]`` labels, unbalanced square brackets, or the word ``INVALID``.
    """
    lines = code.split("\n")
    words = lines[0].strip().split()
    header = words[0] if words else ""
    if header not in KNOWN_HEADERS:
        return ParseOutcome.failure(
            f"No diagram type detected matching given configuration for text: {lines[0][:20]}"
        )
    for i, line in enumerate(lines, start=1):
        if "INVALID" in line or _UNQUOTED_PARENS.search(line) or line.count("[") != line.count("]"):
            return ParseOutcome.failure(
                f"Parse error on line {i}:\n{line}\n---^\nExpecting 'SQE', got 'PS'"
            )
    return ParseOutcome.success("flowchart-v2" if header in ("graph", "flowchart") else header)


def tool_turn(
    code: str,
    explanation: str = "Quoted the label",
    call_id: str = "call_1",
    name: str = "mermaidValidator",
    text: str = "",
) -> list[BackendEvent]:
    """One model step that calls the validation tool once."""
    events: list[BackendEvent] = []
    if text:
        events.append(BackendEvent(type="text_delta", text=text))
    events.append(
        BackendEvent(
            type="tool_call",
            tool_call=ToolCall(
                id=call_id,
                name=name,
                arguments={"fixedCode": code, "explanation": explanation},
            ),
        )
    )
    events.append(
        BackendEvent(
            type="done",
            finish_reason="tool-calls",
            usage=TokenUsage(input_tokens=100, output_tokens=20),
        )
    )
    return events


def text_turn(text: str, finish_reason: str = "stop") -> list[BackendEvent]:
    """One model step that only produces text."""
    return [
        BackendEvent(type="text_delta", text=text),
        BackendEvent(
            type="done",
            finish_reason=finish_reason,
            usage=TokenUsage(input_tokens=50, output_tokens=10),
        ),
    ]


class ScriptedBackend(ModelBackend):
    """
    Replays a fixed script of turns, one per ``stream()`` call.

    A turn is a list of ``BackendEvent``s. An ``Exception`` in the list is
    raised at that point; the string ``"hang"`` sleeps forever.
    """

    name = "scripted"

    def __init__(self, *turns: list[Any], structured_output: bool = False) -> None:
        self.turns = list(turns)
        self.supports_structured_output = structured_output
        self.calls: list[dict[str, Any]] = []
        self.streams_closed = 0
        self.closed = False

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools=None,
        tool_choice=None,
    ):
        self.calls.append({
            "messages": list(messages),
            "system_prompt": system_prompt,
            "tools": tools,
            "tool_choice": tool_choice,
        })
        turn = self.turns.pop(0) if self.turns else text_turn("Nothing more to do.")
        try:
            for item in turn:
                if isinstance(item, Exception):
                    raise item
                if item == "hang":
                    await asyncio.sleep(3600)
                    continue
                yield item
        finally:
            self.streams_closed += 1

    async def aclose(self) -> None:
        self.closed = True
