"""
Event system for the repair agent.

Two kinds of events live here:

- ``StreamEvent``: the typed records a repair run yields to its caller
  (text deltas, tool calls and results, errors, finish markers, and the
  final result). The encoder turns these into NDJSON lines.
- Lifecycle hooks on an ``EventBus``: observers registered for
  ``run_start``, ``step_start``, ``step_end``, ``tool_result``,
  ``soundness_mismatch`` and ``run_end``. Handler failures are logged and
  never affect the run.

Example:
    from mermaid_fix_agent.events import EventBus, SOUNDNESS_MISMATCH

    bus = EventBus()

    @bus.on(SOUNDNESS_MISMATCH)
    def alert(event):
        print(f"validator disagreed with itself in run {event.run_id}")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from mermaid_fix_agent.logging import get_logger
from mermaid_fix_agent.models import FinalOutcome, TokenUsage

logger = get_logger("events")


# ---------------------------------------------------------------------------
# Lifecycle hook types
# ---------------------------------------------------------------------------

RUN_START = "run_start"
RUN_END = "run_end"
STEP_START = "step_start"
STEP_END = "step_end"
TOOL_RESULT = "tool_result"
SOUNDNESS_MISMATCH = "soundness_mismatch"


@dataclass
class RunStartEvent:
    """Emitted once the entry code has been checked and the loop begins."""

    run_id: str
    mode: str  # "repair" or "chat"
    max_steps: int
    entry_error: str | None = None


@dataclass
class RunEndEvent:
    """Emitted after the outcome has been resolved."""

    run_id: str
    steps: int
    finish_reason: str
    success: bool
    validated: bool


@dataclass
class StepStartEvent:
    """Emitted before each model round-trip."""

    run_id: str
    step: int
    message_count: int  # after compaction


@dataclass
class StepEndEvent:
    """Emitted after each model round-trip and its tool executions."""

    run_id: str
    step: int
    tool_call_count: int
    validated: bool
    finish_reason: str | None = None


@dataclass
class ToolResultEvent:
    """Emitted after the validation tool returns."""

    run_id: str
    step: int
    tool_call_id: str
    tool_name: str
    result: dict[str, Any]


@dataclass
class SoundnessMismatchEvent:
    """Emitted when an attempt marked validated fails the final re-check."""

    run_id: str
    candidate_code: str
    recheck_error: str | None


# ---------------------------------------------------------------------------
# Stream event type
# ---------------------------------------------------------------------------


@dataclass
class StreamEvent:
    """
    A structured event yielded by a repair run.

    Event types:
        ``text-delta``   model text chunk (``text_delta``, ``accumulated_text``)
        ``tool-call``    validation tool invoked (``tool_name``, ``tool_call_id``, ``args``)
        ``tool-result``  validation tool returned (``tool_name``, ``tool_call_id``, ``result``)
        ``error``        a step failed (``error``)
        ``finish``       the loop ended (``finish_reason``, ``usage``)
        ``result``       the resolved outcome, always last (``outcome``)
    """

    type: str
    step: int = 0
    text_delta: str = ""
    accumulated_text: str = ""
    tool_name: str | None = None
    tool_call_id: str | None = None
    args: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    finish_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    outcome: FinalOutcome | None = None

    def to_dict(self) -> dict[str, Any]:
        """Payload fields for this event type, in wire (camelCase) form."""
        if self.type == "text-delta":
            return {"textDelta": self.text_delta, "accumulatedText": self.accumulated_text}
        if self.type == "tool-call":
            return {
                "toolName": self.tool_name,
                "toolCallId": self.tool_call_id,
                "args": self.args or {},
            }
        if self.type == "tool-result":
            return {
                "toolName": self.tool_name,
                "toolCallId": self.tool_call_id,
                "result": self.result or {},
            }
        if self.type == "error":
            return {"error": self.error}
        if self.type == "finish":
            return {"finishReason": self.finish_reason, "usage": self.usage.to_dict()}
        if self.type == "result" and self.outcome is not None:
            return self.outcome.to_dict()
        return {}


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------

EventHandler = Callable[..., Any]


@dataclass
class _HandlerEntry:
    """Internal: a registered handler with metadata."""

    event: str
    handler: EventHandler
    priority: int = 0  # lower runs first
    source: str = ""


class EventBus:
    """
    Observer registry for run lifecycle hooks.

    Handlers are called in priority order (lower first) and may be sync or
    async. Errors raised by handlers are logged at WARNING.

    Usage:
        bus = EventBus()

        @bus.on("run_end")
        def on_end(event: RunEndEvent):
            print(f"{event.run_id} finished: {event.finish_reason}")

        unsub = bus.on("step_end", lambda e: None)
        unsub()
    """

    def __init__(self) -> None:
        self._handlers: list[_HandlerEntry] = []

    def on(
        self,
        event: str,
        handler: EventHandler | None = None,
        priority: int = 0,
        source: str = "",
    ) -> Callable[[], None] | Callable[[EventHandler], EventHandler]:
        """
        Register an event handler.

        Called with a handler, returns an unsubscribe function. Called
        without one, works as a decorator and returns the function.
        """
        if handler is not None:
            entry = _HandlerEntry(event=event, handler=handler, priority=priority, source=source)
            self._handlers.append(entry)

            def unsubscribe() -> None:
                try:
                    self._handlers.remove(entry)
                except ValueError:
                    pass

            return unsubscribe

        def decorator(fn: EventHandler) -> EventHandler:
            self.on(event, fn, priority=priority, source=source)
            return fn

        return decorator

    def off(self, event: str, handler: EventHandler) -> None:
        """Remove a specific handler for an event."""
        self._handlers = [
            h for h in self._handlers if not (h.event == event and h.handler is handler)
        ]

    def clear(self, event: str | None = None) -> None:
        """Remove all handlers, or all handlers for a specific event."""
        if event is None:
            self._handlers.clear()
        else:
            self._handlers = [h for h in self._handlers if h.event != event]

    async def emit(self, event: str, data: Any = None) -> list[Any]:
        """
        Emit an event and collect handler results.

        Returns:
            List of non-None results from handlers
        """
        relevant = sorted(
            (h for h in self._handlers if h.event == event),
            key=lambda h: h.priority,
        )

        results: list[Any] = []
        for entry in relevant:
            try:
                result = entry.handler(data)
                if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                    result = await result
                if result is not None:
                    results.append(result)
            except Exception as e:
                logger.warning(
                    "Event handler error (event=%s, source=%s): %s",
                    event,
                    entry.source,
                    e,
                )
        return results

    def has_handlers(self, event: str) -> bool:
        """Check if any handlers are registered for an event."""
        return any(h.event == event for h in self._handlers)
