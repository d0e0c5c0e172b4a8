"""
The validation tool exposed to the model.

The model proposes a candidate through ``mermaidValidator``; the tool runs
the shared validator and reports back. Native and JSON-emulated tool
calling both end up in ``RepairTool.execute``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from mermaid_fix_agent.adapters.base import ToolDefinition
from mermaid_fix_agent.logging import get_logger
from mermaid_fix_agent.models import RepairAttempt, RunContext
from mermaid_fix_agent.validation import DiagramValidator
from mermaid_fix_agent.validation.sanitize import normalize_newlines

logger = get_logger("tools")

DEFAULT_TOOL_NAME = "mermaidValidator"
LINE_FIX_TOOL_NAME = "suggestLineFix"


@dataclass
class ToolResult:
    """Output of one validation tool call."""

    fixed_code: str
    explanation: str
    validated: bool
    validation_error: str | None = None
    hints: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "fixedCode": self.fixed_code,
            "explanation": self.explanation,
            "validated": self.validated,
        }
        if self.validation_error is not None:
            data["validationError"] = self.validation_error
        if self.hints is not None:
            data["hints"] = self.hints
        return data

    def to_text(self) -> str:
        """Serialized form sent back to the model as the tool message."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_attempt(self, step: int, tool_call_id: str | None = None) -> RepairAttempt:
        return RepairAttempt(
            candidate_code=self.fixed_code,
            explanation=self.explanation,
            validated=self.validated,
            validation_error=self.validation_error,
            hints=self.hints,
            step=step,
            tool_call_id=tool_call_id,
        )


class RepairTool:
    """
    Validates a proposed Mermaid fix.

    Arguments are ``{fixedCode, explanation}``. Malformed arguments produce
    a failed result that tells the model what was wrong; they never raise.
    """

    def __init__(self, validator: DiagramValidator, name: str = DEFAULT_TOOL_NAME) -> None:
        self.validator = validator
        self.name = name

    @property
    def description(self) -> str:
        return (
            "Validate and fix Mermaid diagram code. Call this with your corrected "
            "code; the result says whether it parses and, if not, what is still wrong."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "fixedCode": {
                    "type": "string",
                    "description": "The complete corrected Mermaid diagram code.",
                },
                "explanation": {
                    "type": "string",
                    "description": "Short explanation of what was fixed.",
                },
            },
            "required": ["fixedCode", "explanation"],
        }

    def definition(self) -> ToolDefinition:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    async def execute(self, arguments: dict[str, Any], ctx: RunContext | None = None) -> ToolResult:
        if ctx is not None:
            ctx.tool_call_count += 1

        code = arguments.get("fixedCode") if isinstance(arguments, dict) else None
        explanation = arguments.get("explanation") if isinstance(arguments, dict) else None
        if not isinstance(explanation, str):
            explanation = ""

        if not isinstance(code, str):
            logger.warning("Tool called without fixedCode: %r", arguments)
            return ToolResult(
                fixed_code="",
                explanation=explanation,
                validated=False,
                validation_error=(
                    "Invalid tool arguments: 'fixedCode' must be a string containing "
                    "the complete diagram."
                ),
            )

        result = await self.validator.validate(code)
        logger.debug("Tool call validated=%s", result.is_valid)
        return ToolResult(
            fixed_code=code,
            explanation=explanation,
            validated=result.is_valid,
            validation_error=None if result.is_valid else result.error_message,
            hints=result.hints,
        )


def line_fix_definition() -> ToolDefinition:
    """Tool used by the single-line fast path."""
    return {
        "name": LINE_FIX_TOOL_NAME,
        "description": (
            "Suggest a replacement for the single problematic Mermaid line shown. "
            "You may include newlines to split content if needed."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "replacement": {
                    "type": "string",
                    "description": "Replacement text for the problematic line. Newlines allowed.",
                },
                "explanation": {
                    "type": "string",
                    "description": "Brief explanation of the change and why it fixes the error.",
                },
            },
            "required": ["replacement", "explanation"],
        },
    }


def splice_line(lines: list[str], index: int, replacement: str) -> str:
    """Replace ``lines[index]`` with ``replacement`` (which may span lines)."""
    new_lines = normalize_newlines(replacement).split("\n")
    return "\n".join(lines[:index] + new_lines + lines[index + 1 :])
