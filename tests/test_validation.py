"""Tests for diagram validation: sanitize, intake, lint, parser and validator."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from helpers import BROKEN, FIXED, VALID
from mermaid_fix_agent.errors import ParserUnavailableError
from mermaid_fix_agent.validation import (
    EMPTY_DIAGRAM_ERROR,
    CallableParser,
    DiagramValidator,
    MermaidCLIParser,
    ParseOutcome,
    apply_lint_fixes,
    detect_mermaid_intent,
    extract_fenced_block,
    format_lint_errors,
    lint_mermaid,
    sanitize_mermaid,
)
from mermaid_fix_agent.validation import lint as rules
from mermaid_fix_agent.validation.parser import line_from_message


class TestSanitize:
    """Tests for sanitize_mermaid."""

    def test_normalizes_crlf(self) -> None:
        """Should convert CRLF and CR to LF."""
        assert sanitize_mermaid("graph TD\r\nA --> B\rB --> C") == "graph TD\nA --> B\nB --> C"

    def test_strips_bom(self) -> None:
        """Should drop a leading byte order mark."""
        assert sanitize_mermaid("\ufeffgraph TD\nA --> B") == VALID

    def test_unwraps_fence(self) -> None:
        """Should keep only the body of a ```mermaid fence."""
        raw = "Here you go:\n```mermaid\ngraph TD\nA --> B\n```\nThanks"
        assert sanitize_mermaid(raw) == VALID

    def test_unwraps_plain_fence(self) -> None:
        """Should unwrap a fence without a language tag."""
        assert sanitize_mermaid("```\ngraph TD\nA --> B\n```") == VALID

    def test_removes_invisible_characters(self) -> None:
        """Should remove zero-width and bidi control characters."""
        assert sanitize_mermaid("graph\u200b TD\nA --\u200e> B") == VALID

    def test_trims_lines(self) -> None:
        """Should trim whitespace on every line."""
        assert sanitize_mermaid("  graph TD  \n    A --> B   \n\n") == VALID

    def test_empty_input(self) -> None:
        """Whitespace-only input should sanitize to an empty string."""
        assert sanitize_mermaid("  \n\t ") == ""

    def test_extract_fenced_block_none(self) -> None:
        """Text without a fence has no block."""
        assert extract_fenced_block("graph TD") is None


class TestIntake:
    """Tests for detect_mermaid_intent."""

    def test_keyword_header(self) -> None:
        """A diagram keyword on the first line is a strong signal."""
        intent = detect_mermaid_intent("graph TD\nA --> B")
        assert intent.is_likely_mermaid is True
        assert intent.diagram_type_hint == "graph"

    def test_keyword_case_insensitive(self) -> None:
        """Keywords match regardless of case."""
        intent = detect_mermaid_intent("SEQUENCEDIAGRAM\nAlice->>Bob: hi")
        assert intent.is_likely_mermaid is True

    def test_skips_comments(self) -> None:
        """%% comment lines before the header are ignored."""
        intent = detect_mermaid_intent("%% a comment\nsequenceDiagram\nAlice->>Bob: hi")
        assert intent.diagram_type_hint == "sequenceDiagram"

    def test_skips_front_matter_delimiters(self) -> None:
        """--- front matter delimiters are skipped."""
        intent = detect_mermaid_intent("---\nflowchart LR\nA --> B")
        assert intent.diagram_type_hint == "flowchart"

    def test_body_hints_without_header(self) -> None:
        """Structural tokens in the body count even without a header."""
        intent = detect_mermaid_intent("A --> B\nB --> C")
        assert intent.is_likely_mermaid is True
        assert intent.diagram_type_hint is None

    def test_init_directive(self) -> None:
        """An %%{init}%% directive counts as a hint."""
        intent = detect_mermaid_intent("%%{init: {'theme': 'dark'}}%%\nsomething")
        assert intent.is_likely_mermaid is True

    def test_unrelated_prose(self) -> None:
        """Plain prose is not Mermaid."""
        intent = detect_mermaid_intent("Dear team, please review the quarterly report.")
        assert intent.is_likely_mermaid is False
        assert intent.diagram_type_hint is None


class TestLint:
    """Tests for lint rules and formatting."""

    def test_unquoted_parentheses(self) -> None:
        """Parentheses in a [] label should be flagged with a quoting fix."""
        errors = lint_mermaid(BROKEN)

        assert [e.rule_id for e in errors] == [rules.PARENS_UNQUOTED]
        err = errors[0]
        assert err.line == 2
        assert err.column == 2
        assert err.snippet == "A[Start (run)] --> B[End]"
        assert err.fix is not None
        assert err.fix.text == '["Start (run)"]'

    def test_quoted_label_is_clean(self) -> None:
        """A quoted label with parentheses is fine."""
        assert lint_mermaid(FIXED) == []

    def test_nodes_adjacent(self) -> None:
        """Two nodes on a line without an arrow should be flagged."""
        errors = lint_mermaid("graph TD\nA[One] B[Two]")
        assert rules.NODES_ADJACENT in [e.rule_id for e in errors]

    def test_node_concatenation(self) -> None:
        """A label immediately followed by an identifier should be flagged."""
        errors = lint_mermaid("graph TD\nA[One]B[Two]")
        concat = [e for e in errors if e.rule_id == rules.NODE_CONCATENATION]
        assert len(concat) == 1
        assert concat[0].column == 7

    def test_unbalanced_square(self) -> None:
        """Unbalanced brackets are reported without a location."""
        errors = lint_mermaid("graph TD\nA[One --> B")
        unbalanced = [e for e in errors if e.rule_id == rules.UNBALANCED_SQUARE]
        assert len(unbalanced) == 1
        assert unbalanced[0].message == "Unbalanced square detected."
        assert unbalanced[0].line is None

    def test_invalid_id(self) -> None:
        """Node ids with punctuation should be flagged."""
        errors = lint_mermaid("graph TD\nmy-node.1[Bot] --> B")
        invalid = [e for e in errors if e.rule_id == rules.INVALID_ID]
        assert len(invalid) == 1
        assert 'Invalid node id "my-node.1"' in invalid[0].message

    def test_special_chars(self) -> None:
        """Unquoted labels with | < > should be flagged."""
        errors = lint_mermaid("graph TD\nA[x | y] --> B")
        assert rules.LABEL_SPECIAL_CHARS in [e.rule_id for e in errors]

        assert lint_mermaid('graph TD\nA["x | y"] --> B') == []

    def test_disabled_rules(self) -> None:
        """Disabled rule ids are skipped."""
        assert lint_mermaid(BROKEN, disabled=[rules.PARENS_UNQUOTED]) == []

    def test_format_single(self) -> None:
        """Formatted hints carry rule, message, location and hint."""
        text = format_lint_errors(lint_mermaid(BROKEN))
        assert text.startswith("• [label.parentheses-unquoted] Parentheses found")
        assert "@2:2 — Wrap the label in quotes" in text

    def test_format_truncates(self) -> None:
        """Findings beyond max_hints are summarized."""
        errors = lint_mermaid("graph TD\nA[x | y] B[(a)]\nC[One]D")
        assert len(errors) >= 3

        text = format_lint_errors(errors, max_hints=1)
        lines = text.split("\n")
        assert len(lines) == 2
        assert lines[1] == f"…and {len(errors) - 1} more hint(s)."

    def test_apply_fixes(self) -> None:
        """Autofixes should quote the offending label."""
        assert apply_lint_fixes(BROKEN, lint_mermaid(BROKEN)) == FIXED

    def test_apply_fixes_without_fixable_errors(self) -> None:
        """Code is unchanged when nothing is fixable."""
        code = "graph TD\nA[One --> B"
        assert apply_lint_fixes(code, lint_mermaid(code)) == code


class TestParseOutcome:
    """Tests for ParseOutcome helpers."""

    def test_failure_extracts_line(self) -> None:
        """The first 'line N' mention becomes the failure line."""
        outcome = ParseOutcome.failure("Parse error on line 7:\n...")
        assert outcome.ok is False
        assert outcome.line == 7

    def test_line_from_message_none(self) -> None:
        assert line_from_message("Lexical error") is None


class TestCallableParser:
    """Tests for CallableParser."""

    @pytest.mark.asyncio
    async def test_sync_function(self) -> None:
        """Sync functions are called directly."""
        parser = CallableParser(lambda code: ParseOutcome.success("pie"))
        outcome = await parser.parse("pie")
        assert outcome.ok is True
        assert outcome.diagram_type == "pie"

    @pytest.mark.asyncio
    async def test_async_function(self) -> None:
        """Async functions are awaited."""

        async def parse(code: str) -> ParseOutcome:
            return ParseOutcome.failure("Parse error on line 1")

        outcome = await CallableParser(parse).parse("x")
        assert outcome.ok is False
        assert outcome.line == 1

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self) -> None:
        """Exceptions from the function are reported as parse errors."""

        def parse(code: str) -> ParseOutcome:
            raise ValueError("Syntax error in text")

        outcome = await CallableParser(parse).parse("x")
        assert outcome.ok is False
        assert outcome.error == "Syntax error in text"

    @pytest.mark.asyncio
    async def test_unavailable_propagates(self) -> None:
        """ParserUnavailableError is not swallowed."""

        def parse(code: str) -> ParseOutcome:
            raise ParserUnavailableError("no parser")

        with pytest.raises(ParserUnavailableError):
            await CallableParser(parse).parse("x")


def _write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.mark.skipif(os.name != "posix", reason="Uses shell scripts as fake mmdc")
class TestMermaidCLIParser:
    """Tests for MermaidCLIParser with a fake mmdc executable."""

    @pytest.fixture
    def fake_mmdc(self, tmp_path: Path) -> Path:
        return _write_script(
            tmp_path / "fake-mmdc",
            'if grep -q INVALID "$2"; then\n'
            '  echo "Error: Parse error on line 2:" >&2\n'
            '  echo "    at Object.parse (mermaid.js:1:1)" >&2\n'
            "  exit 1\n"
            "fi\n"
            'touch "$4"\n',
        )

    @pytest.mark.asyncio
    async def test_success(self, fake_mmdc: Path) -> None:
        """Exit 0 with an output file means valid."""
        parser = MermaidCLIParser(command=[str(fake_mmdc)])
        outcome = await parser.parse(VALID)
        assert outcome.ok is True

    @pytest.mark.asyncio
    async def test_failure_strips_stack_frames(self, fake_mmdc: Path) -> None:
        """The error message excludes Node stack frames."""
        parser = MermaidCLIParser(command=[str(fake_mmdc)])
        outcome = await parser.parse("graph TD\nINVALID")
        assert outcome.ok is False
        assert outcome.error == "Error: Parse error on line 2:"
        assert outcome.line == 2

    @pytest.mark.asyncio
    async def test_missing_output_is_failure(self, tmp_path: Path) -> None:
        """Exit 0 without an output file is still a failure."""
        script = _write_script(tmp_path / "silent-mmdc", "exit 0\n")
        outcome = await MermaidCLIParser(command=[str(script)]).parse(VALID)
        assert outcome.ok is False
        assert "exit code 0" in (outcome.error or "")

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path) -> None:
        """A hanging parser is killed and reported as a failure."""
        script = _write_script(tmp_path / "slow-mmdc", "exec sleep 5\n")
        parser = MermaidCLIParser(command=[str(script)], timeout=0.2)
        outcome = await parser.parse(VALID)
        assert outcome.ok is False
        assert "timed out" in (outcome.error or "")

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path) -> None:
        """A missing executable raises ParserUnavailableError."""
        parser = MermaidCLIParser(command=[str(tmp_path / "no-such-mmdc")])
        assert parser.is_available() is False
        with pytest.raises(ParserUnavailableError):
            await parser.parse(VALID)


class TestDiagramValidator:
    """Tests for DiagramValidator."""

    @pytest.mark.asyncio
    async def test_valid(self, validator: DiagramValidator) -> None:
        """Valid code passes with a diagram type and no hints."""
        result = await validator.validate(VALID)
        assert result.is_valid is True
        assert result.is_likely_mermaid is True
        assert result.diagram_type == "flowchart-v2"
        assert result.hints is None
        assert result.error_message is None

    @pytest.mark.asyncio
    async def test_invalid_with_hints(self, validator: DiagramValidator) -> None:
        """Failures carry the parser error followed by lint hints."""
        result = await validator.validate(BROKEN)
        assert result.is_valid is False
        assert result.is_likely_mermaid is True
        assert result.diagram_type == "graph"
        assert result.line == 2
        assert result.error_message is not None
        assert result.error_message.startswith("Parse error on line 2:")
        assert result.hints is not None
        assert result.error_message.endswith(result.hints)
        assert [e.rule_id for e in result.lint_errors] == [rules.PARENS_UNQUOTED]

    @pytest.mark.asyncio
    async def test_empty(self, validator: DiagramValidator) -> None:
        """Empty input is invalid and not likely Mermaid."""
        result = await validator.validate("   \n")
        assert result.is_valid is False
        assert result.error_message == EMPTY_DIAGRAM_ERROR
        assert result.is_likely_mermaid is False

    @pytest.mark.asyncio
    async def test_unrelated_text(self, validator: DiagramValidator) -> None:
        """Prose fails and is flagged as not Mermaid."""
        result = await validator.validate("Dear team, please review the report.")
        assert result.is_valid is False
        assert result.is_likely_mermaid is False

    @pytest.mark.asyncio
    async def test_sanitizes_before_parsing(self, validator: DiagramValidator) -> None:
        """Fenced, CRLF input validates like clean input."""
        result = await validator.validate("```mermaid\r\ngraph TD\r\nA --> B\r\n```")
        assert result.is_valid is True

    @pytest.mark.asyncio
    async def test_parser_crash_is_failure(self) -> None:
        """A crashing parser yields a failed result, not an exception."""

        class Crashing(CallableParser):
            async def parse(self, code: str) -> ParseOutcome:
                raise RuntimeError("boom")

        validator = DiagramValidator(parser=Crashing(lambda c: None))
        result = await validator.validate(VALID)
        assert result.is_valid is False
        assert result.error_message == "boom"

    @pytest.mark.asyncio
    async def test_parser_unavailable_propagates(self) -> None:
        """Missing parser infrastructure raises."""

        def parse(code: str) -> ParseOutcome:
            raise ParserUnavailableError("mmdc missing")

        validator = DiagramValidator(parser=CallableParser(parse))
        with pytest.raises(ParserUnavailableError):
            await validator.validate(VALID)

    @pytest.mark.asyncio
    async def test_max_hints(self, parser: CallableParser) -> None:
        """The hint list is capped at max_hints."""
        validator = DiagramValidator(parser=parser, max_hints=1)
        result = await validator.validate("graph TD\nA[x | y] B[(a)]\nC[One]D")
        assert result.hints is not None
        assert "more hint(s)." in result.hints.split("\n")[-1]

    @pytest.mark.asyncio
    async def test_disabled_rules(self, parser: CallableParser) -> None:
        """Disabled lint rules never appear in hints."""
        validator = DiagramValidator(parser=parser, disabled_lint_rules=[rules.PARENS_UNQUOTED])
        result = await validator.validate(BROKEN)
        assert result.is_valid is False
        assert result.hints is None
        assert "•" not in (result.error_message or "")

    @pytest.mark.asyncio
    async def test_to_dict(self, validator: DiagramValidator) -> None:
        """The wire form uses the validator contract keys."""
        ok = (await validator.validate(VALID)).to_dict()
        assert ok == {"isValid": True, "isLikelyMermaid": True, "diagramType": "flowchart-v2"}

        bad = (await validator.validate(BROKEN)).to_dict()
        assert set(bad) == {"isValid", "isLikelyMermaid", "error", "diagramType", "hints"}

    def test_from_config(self, config) -> None:
        """from_config wires the mmdc command and lint settings."""
        config.parser_command = ["npx", "mmdc"]
        config.max_hints = 3
        config.disabled_lint_rules = [rules.INVALID_ID]

        validator = DiagramValidator.from_config(config)

        assert isinstance(validator.parser, MermaidCLIParser)
        assert validator.parser.command == ["npx", "mmdc"]
        assert validator.max_hints == 3
        assert rules.INVALID_ID in validator.disabled_lint_rules
