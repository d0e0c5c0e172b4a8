"""
Core data models for the repair agent.

Everything here lives for the duration of a single request. Payloads
render to the camelCase JSON shape the HTTP and NDJSON surfaces use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mermaid_fix_agent.errors import RequestValidationError

# ---------------------------------------------------------------------------
# Token usage
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    """Token counts for one or more backend calls."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def __iadd__(self, other: TokenUsage) -> TokenUsage:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        return self

    def to_dict(self) -> dict[str, int]:
        return {
            "totalTokens": self.total_tokens,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LintFix:
    """Suggested replacement of ``code[start:end]`` with ``text``."""

    start: int
    end: int
    text: str


@dataclass(frozen=True)
class LintError:
    """A heuristic, non-authoritative finding about the diagram source."""

    rule_id: str
    message: str
    hint: str | None = None
    line: int | None = None  # 1-based
    column: int | None = None  # 1-based
    snippet: str | None = None
    fix: LintFix | None = None


@dataclass
class ValidationResult:
    """Verdict of the diagram validator for one piece of source text."""

    is_valid: bool
    error_message: str | None = None
    diagram_type: str | None = None
    is_likely_mermaid: bool = False
    hints: str | None = None  # only populated on failure
    lint_errors: list[LintError] = field(default_factory=list)
    line: int | None = None
    column: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "isValid": self.is_valid,
            "isLikelyMermaid": self.is_likely_mermaid,
        }
        if self.error_message is not None:
            data["error"] = self.error_message
        if self.diagram_type is not None:
            data["diagramType"] = self.diagram_type
        if self.hints is not None:
            data["hints"] = self.hints
        return data


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class Message:
    """A message in the repair transcript."""

    role: str  # "system", "user", "assistant", "tool"
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None  # For tool results
    name: str | None = None  # For tool results

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass(frozen=True)
class RepairAttempt:
    """One candidate proposed through the validation tool. Never edited."""

    candidate_code: str
    explanation: str
    validated: bool
    validation_error: str | None = None
    hints: str | None = None
    step: int = 0
    tool_call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "candidateCode": self.candidate_code,
            "explanation": self.explanation,
            "validated": self.validated,
            "step": self.step,
        }
        if self.validation_error is not None:
            data["validationError"] = self.validation_error
        return data


@dataclass
class ConversationStep:
    """One model round: free text plus any attempts made in it."""

    index: int
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    attempts: list[RepairAttempt] = field(default_factory=list)
    finish_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class FinalOutcome:
    """The resolved result of a repair run."""

    success: bool
    is_complete: bool
    fixed_code: str
    explanation: str
    validated: bool
    attempts: tuple[RepairAttempt, ...] = ()
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"
    steps_count: int = 0
    validation_error: str | None = None
    message: str | None = None
    step: int | None = None  # client step counter; repair runs only

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "isComplete": self.is_complete,
            "fixedCode": self.fixed_code,
            "explanation": self.explanation,
            "validated": self.validated,
            "attempts": [a.to_dict() for a in self.attempts],
            "usage": self.usage.to_dict(),
            "finishReason": self.finish_reason,
            "stepsCount": self.steps_count,
        }
        if self.validation_error is not None:
            data["validationError"] = self.validation_error
        if self.message is not None:
            data["message"] = self.message
        if self.step is not None:
            data["step"] = self.step
        return data


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass
class RepairRequest:
    """Single-shot repair request: ``{code, error, step?, stream?}``."""

    code: str
    error: str | None = None
    step: int = 1
    stream: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> RepairRequest:
        if not isinstance(data, dict):
            raise RequestValidationError("Request body must be a JSON object")

        errors: dict[str, list[str]] = {}
        code = data.get("code")
        if not isinstance(code, str):
            errors["code"] = ["Expected string"]

        error = data.get("error")
        if error is not None and not isinstance(error, str):
            errors["error"] = ["Expected string or null"]

        step = data.get("step", 1)
        if isinstance(step, bool) or not isinstance(step, int):
            errors["step"] = ["Expected integer"]

        stream = data.get("stream", False)
        if not isinstance(stream, bool):
            errors["stream"] = ["Expected boolean"]

        if errors:
            raise RequestValidationError("Invalid repair request", errors)

        return cls(code=code, error=error, step=step, stream=stream)


@dataclass
class ChatRequest:
    """Chat-style repair/generation request: ``{messages, diagramType?, context?}``."""

    messages: list[Message]
    diagram_type: str | None = None
    context: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> ChatRequest:
        if not isinstance(data, dict):
            raise RequestValidationError("Request body must be a JSON object")

        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list) or not raw_messages:
            raise RequestValidationError(
                "Messages are required", {"messages": ["Expected non-empty array"]}
            )

        messages: list[Message] = []
        for i, raw in enumerate(raw_messages):
            if not isinstance(raw, dict):
                raise RequestValidationError(
                    "Invalid message", {f"messages.{i}": ["Expected object"]}
                )
            role = raw.get("role")
            if role not in ("user", "assistant", "system"):
                raise RequestValidationError(
                    "Invalid message role", {f"messages.{i}.role": [f"Unsupported role: {role!r}"]}
                )
            messages.append(Message(role=role, content=_message_text(raw)))

        diagram_type = data.get("diagramType")
        context = data.get("context")
        return cls(
            messages=messages,
            diagram_type=diagram_type if isinstance(diagram_type, str) else None,
            context=context if isinstance(context, str) else None,
        )


def _message_text(raw: dict[str, Any]) -> str:
    """Flatten plain-string content or UI-style ``parts`` into text."""
    content = raw.get("content")
    if isinstance(content, str):
        return content

    parts = raw.get("parts") if content is None else content
    if not isinstance(parts, list):
        return ""
    texts = [
        p.get("text", "")
        for p in parts
        if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str)
    ]
    return "\n".join(texts)


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    """
    Mutable state of a single repair run. Never shared between runs.

    ``attempts`` is append-only; callers see it as a tuple through
    ``attempts_snapshot()``.
    """

    run_id: str
    original_code: str
    mode: str = "repair"  # "repair" or "chat"
    entry_error: str | None = None
    request_step: int = 1
    deadline: float | None = None  # loop.time() value
    tool_call_count: int = 0
    attempts: list[RepairAttempt] = field(default_factory=list)
    steps: list[ConversationStep] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None
    partial_output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def attempts_snapshot(self) -> tuple[RepairAttempt, ...]:
        return tuple(self.attempts)

    @property
    def last_text(self) -> str:
        return self.steps[-1].text if self.steps else ""

    @property
    def transcript_text(self) -> str:
        return "\n\n".join(s.text.strip() for s in self.steps if s.text.strip())
