"""Tests for request parsing and data models."""

from __future__ import annotations

import pytest

from mermaid_fix_agent.errors import RequestValidationError
from mermaid_fix_agent.models import (
    ChatRequest,
    ConversationStep,
    RepairAttempt,
    RepairRequest,
    RunContext,
    TokenUsage,
    ValidationResult,
)


class TestRepairRequest:
    """Tests for RepairRequest.from_dict."""

    def test_minimal(self) -> None:
        request = RepairRequest.from_dict({"code": "graph TD\nA-->B"})
        assert request.code == "graph TD\nA-->B"
        assert request.error is None
        assert request.step == 1
        assert request.stream is False

    def test_full(self) -> None:
        request = RepairRequest.from_dict(
            {"code": "x", "error": "Parse error", "step": 3, "stream": True}
        )
        assert request.error == "Parse error"
        assert request.step == 3
        assert request.stream is True

    def test_field_errors(self) -> None:
        """All bad fields are reported together."""
        with pytest.raises(RequestValidationError) as exc_info:
            RepairRequest.from_dict({"code": 5, "error": 1, "step": "2", "stream": "yes"})

        errors = exc_info.value.field_errors
        assert set(errors) == {"code", "error", "step", "stream"}
        assert exc_info.value.to_dict() == {
            "formErrors": ["Invalid repair request"],
            "fieldErrors": errors,
        }

    def test_bool_step_rejected(self) -> None:
        with pytest.raises(RequestValidationError):
            RepairRequest.from_dict({"code": "x", "step": True})

    def test_not_an_object(self) -> None:
        with pytest.raises(RequestValidationError, match="JSON object"):
            RepairRequest.from_dict(["code"])


class TestChatRequest:
    """Tests for ChatRequest.from_dict."""

    def test_plain_messages(self) -> None:
        request = ChatRequest.from_dict(
            {
                "messages": [
                    {"role": "system", "content": "Be brief."},
                    {"role": "user", "content": "Draw a pie chart"},
                ],
                "diagramType": "pie",
                "context": "Quarterly report",
            }
        )
        assert [m.role for m in request.messages] == ["system", "user"]
        assert request.messages[1].content == "Draw a pie chart"
        assert request.diagram_type == "pie"
        assert request.context == "Quarterly report"

    def test_parts_are_flattened(self) -> None:
        """UI-style parts keep only the text parts, joined by newlines."""
        request = ChatRequest.from_dict(
            {
                "messages": [
                    {
                        "role": "user",
                        "parts": [
                            {"type": "text", "text": "First"},
                            {"type": "image", "url": "x.png"},
                            {"type": "text", "text": "Second"},
                        ],
                    }
                ]
            }
        )
        assert request.messages[0].content == "First\nSecond"

    def test_content_list(self) -> None:
        request = ChatRequest.from_dict(
            {"messages": [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]}
        )
        assert request.messages[0].content == "hi"

    @pytest.mark.parametrize("messages", [None, [], "hello"])
    def test_messages_required(self, messages) -> None:
        with pytest.raises(RequestValidationError) as exc_info:
            ChatRequest.from_dict({"messages": messages})
        assert "messages" in exc_info.value.field_errors

    def test_bad_role(self) -> None:
        with pytest.raises(RequestValidationError) as exc_info:
            ChatRequest.from_dict({"messages": [{"role": "tool", "content": "x"}]})
        assert "messages.0.role" in exc_info.value.field_errors

    def test_non_string_options_ignored(self) -> None:
        request = ChatRequest.from_dict(
            {"messages": [{"role": "user", "content": "x"}], "diagramType": 3, "context": ["a"]}
        )
        assert request.diagram_type is None
        assert request.context is None


class TestTokenUsage:
    def test_add(self) -> None:
        total = TokenUsage(10, 5) + TokenUsage(1, 2)
        assert total == TokenUsage(11, 7)
        assert total.total_tokens == 18

    def test_iadd_in_place(self) -> None:
        usage = TokenUsage()
        same = usage
        usage += TokenUsage(3, 4)
        assert same.to_dict() == {"totalTokens": 7, "inputTokens": 3, "outputTokens": 4}


class TestWireForms:
    """Tests for camelCase serialization."""

    def test_validation_result(self) -> None:
        result = ValidationResult(is_valid=False, error_message="Parse error", hints="- quote it")
        assert result.to_dict() == {
            "isValid": False,
            "isLikelyMermaid": False,
            "error": "Parse error",
            "hints": "- quote it",
        }

    def test_attempt(self) -> None:
        attempt = RepairAttempt(candidate_code="x", explanation="y", validated=True, step=2)
        assert attempt.to_dict() == {
            "candidateCode": "x",
            "explanation": "y",
            "validated": True,
            "step": 2,
        }


class TestRunContext:
    def test_text_views(self) -> None:
        ctx = RunContext(run_id="r", original_code="x")
        assert ctx.last_text == ""
        ctx.steps.append(ConversationStep(index=1, text="  first  "))
        ctx.steps.append(ConversationStep(index=2, text=""))
        ctx.steps.append(ConversationStep(index=3, text="third"))

        assert ctx.last_text == "third"
        assert ctx.transcript_text == "first\n\nthird"

    def test_attempts_snapshot(self) -> None:
        """The snapshot does not change when attempts are added later."""
        ctx = RunContext(run_id="r", original_code="x")
        ctx.attempts.append(RepairAttempt("a", "", False))
        snapshot = ctx.attempts_snapshot()
        ctx.attempts.append(RepairAttempt("b", "", True))

        assert isinstance(snapshot, tuple)
        assert len(snapshot) == 1
