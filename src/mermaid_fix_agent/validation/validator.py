"""
The diagram validator: sanitize, classify, parse, and lint.
"""

from __future__ import annotations

from collections.abc import Iterable

from mermaid_fix_agent.config import RepairConfig
from mermaid_fix_agent.errors import ParserUnavailableError
from mermaid_fix_agent.logging import get_logger
from mermaid_fix_agent.models import ValidationResult
from mermaid_fix_agent.validation.intake import detect_mermaid_intent
from mermaid_fix_agent.validation.lint import format_lint_errors, lint_mermaid
from mermaid_fix_agent.validation.parser import DiagramParser, MermaidCLIParser, ParseOutcome
from mermaid_fix_agent.validation.sanitize import sanitize_mermaid

logger = get_logger("validation")

EMPTY_DIAGRAM_ERROR = "Diagram code is empty"


class DiagramValidator:
    """
    Single source of truth for "is this diagram valid?".

    The parser verdict is authoritative. Lint hints are attached only on
    failure and never change validity. The validator holds no per-call
    state, so one instance can serve many concurrent runs.

    Example:
        validator = DiagramValidator()
        result = await validator.validate("graph TD\\nA-->B")
        if not result.is_valid:
            print(result.error_message)
    """

    def __init__(
        self,
        parser: DiagramParser | None = None,
        max_hints: int = 8,
        disabled_lint_rules: Iterable[str] = (),
    ) -> None:
        self.parser = parser or MermaidCLIParser()
        self.max_hints = max_hints
        self.disabled_lint_rules = frozenset(disabled_lint_rules)

    @classmethod
    def from_config(cls, config: RepairConfig, parser: DiagramParser | None = None) -> DiagramValidator:
        """Build a validator from config, defaulting to mermaid-cli."""
        if parser is None:
            parser = MermaidCLIParser(
                command=config.parser_command,
                timeout=config.parser_timeout_seconds,
            )
        return cls(
            parser=parser,
            max_hints=config.max_hints,
            disabled_lint_rules=config.disabled_lint_rules,
        )

    async def validate(self, raw: str) -> ValidationResult:
        """
        Validate raw diagram text.

        Never raises for bad input; only ``ParserUnavailableError``
        propagates when the parser cannot run at all.
        """
        code = sanitize_mermaid(raw or "")
        if not code:
            return ValidationResult(
                is_valid=False,
                error_message=EMPTY_DIAGRAM_ERROR,
                is_likely_mermaid=False,
            )

        intent = detect_mermaid_intent(code)

        try:
            outcome = await self.parser.parse(code)
        except ParserUnavailableError:
            raise
        except Exception as e:
            logger.warning("Parser crashed: %s", e)
            outcome = ParseOutcome.failure(str(e) or e.__class__.__name__)

        if outcome.ok:
            return ValidationResult(
                is_valid=True,
                diagram_type=outcome.diagram_type or intent.diagram_type_hint,
                is_likely_mermaid=True,
            )

        error = outcome.error or "Unknown parse error"
        lint_errors = lint_mermaid(code, disabled=self.disabled_lint_rules)
        hints = format_lint_errors(lint_errors, self.max_hints) if lint_errors else None
        logger.debug("Validation failed: %s (%d lint findings)", error, len(lint_errors))

        return ValidationResult(
            is_valid=False,
            error_message=f"{error}\n{hints}" if hints else error,
            diagram_type=intent.diagram_type_hint,
            is_likely_mermaid=intent.is_likely_mermaid,
            hints=hints,
            lint_errors=lint_errors,
            line=outcome.line,
            column=outcome.column,
        )
