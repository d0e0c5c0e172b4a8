"""
Heuristic lint rules for Mermaid source.

These turn vague parser failures into concrete hints for the model (and
humans). They are pure string/regex checks, run only after the parser has
rejected the diagram, and never affect validity.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from mermaid_fix_agent.models import LintError, LintFix
from mermaid_fix_agent.validation.sanitize import normalize_newlines

# Rule ids, in priority order
PARENS_UNQUOTED = "label.parentheses-unquoted"
NODES_ADJACENT = "layout.nodes-adjacent"
NODE_CONCATENATION = "layout.node-concatenation"
UNBALANCED_SQUARE = "brackets.unbalanced.square"
UNBALANCED_CURLY = "brackets.unbalanced.curly"
UNBALANCED_PARENS = "brackets.unbalanced.parentheses"
INVALID_ID = "id.invalid"
LABEL_SPECIAL_CHARS = "label.special-chars"

RULE_IDS = (
    PARENS_UNQUOTED,
    NODES_ADJACENT,
    NODE_CONCATENATION,
    UNBALANCED_SQUARE,
    UNBALANCED_CURLY,
    UNBALANCED_PARENS,
    INVALID_ID,
    LABEL_SPECIAL_CHARS,
)

_UNQUOTED_PARENS_LABEL = re.compile(r'\[[^"\]\n]*\([^"\]\n]*\)[^"\]\n]*\]')
_ARROW = re.compile(r"-{1,3}?>|==+>")
_NODE_START = re.compile(r"\b[A-Za-z][\w-]*\s*(?:\[[^\]]*\]|\([^\)]+\)|\{[^}]+\})", re.ASCII)
_CONCATENATED = re.compile(r"\][A-Za-z]")
_ID_BEFORE_LABEL = re.compile(r"\b([^\s\[\(]+)\s*\[")
_VALID_ID = re.compile(r"^[A-Za-z][\w-]*$", re.ASCII)
_LABEL = re.compile(r"\[[^\]]+\]")
_SPECIAL_CHARS = re.compile(r"[|<>]")

_BRACKET_PAIRS = (
    ("[", "]", "square"),
    ("{", "}", "curly"),
    ("(", ")", "parentheses"),
)


def _offset_to_line_col(text: str, offset: int) -> tuple[int, int]:
    """Convert a string offset to a 1-based (line, column)."""
    before = text[:offset]
    line = before.count("\n") + 1
    col = len(before) - before.rfind("\n")
    return line, col


def lint_mermaid(code: str, disabled: Iterable[str] = ()) -> list[LintError]:
    """
    Run all lint rules over ``code``.

    Args:
        code: Diagram source (sanitized or raw)
        disabled: Rule ids to skip

    Returns:
        Findings in rule priority order
    """
    skip = set(disabled)
    text = normalize_newlines(code)
    lines = text.split("\n")
    errors: list[LintError] = []

    # Parentheses in an unquoted [] label
    for m in _UNQUOTED_PARENS_LABEL.finditer(text):
        line, col = _offset_to_line_col(text, m.start())
        label = m.group(0)
        errors.append(
            LintError(
                rule_id=PARENS_UNQUOTED,
                message="Parentheses found inside a [] node label without quotes.",
                hint='Wrap the label in quotes: C["handleFixWithAgent()"].',
                line=line,
                column=col,
                snippet=lines[line - 1],
                fix=LintFix(m.start(), m.end(), '["' + label[1:-1] + '"]'),
            )
        )

    for i, ln in enumerate(lines):
        node_starts = len(_NODE_START.findall(ln))
        if not _ARROW.search(ln) and node_starts >= 2:
            errors.append(
                LintError(
                    rule_id=NODES_ADJACENT,
                    message="Two nodes appear on the same line without an arrow between them.",
                    hint="Insert an edge (e.g., `-->`) or split into separate lines.",
                    line=i + 1,
                    column=1,
                    snippet=ln,
                )
            )

        if _CONCATENATED.search(ln):
            errors.append(
                LintError(
                    rule_id=NODE_CONCATENATION,
                    message=(
                        "A node is immediately followed by an identifier; "
                        "likely two statements merged."
                    ),
                    hint="Add a newline or semicolon between statements.",
                    line=i + 1,
                    column=ln.index("]") + 2,
                    snippet=ln,
                )
            )

    for open_char, close_char, name in _BRACKET_PAIRS:
        if text.count(open_char) != text.count(close_char):
            errors.append(
                LintError(
                    rule_id=f"brackets.unbalanced.{name}",
                    message=f"Unbalanced {name} detected.",
                    hint=f"Check for a missing '{close_char}' or extra '{open_char}'.",
                )
            )

    # Node ids must be plain ASCII; emoji and spaces belong in the label
    for i, ln in enumerate(lines):
        for m in _ID_BEFORE_LABEL.finditer(ln):
            node_id = m.group(1)
            if not _VALID_ID.match(node_id):
                errors.append(
                    LintError(
                        rule_id=INVALID_ID,
                        message=f'Invalid node id "{node_id}".',
                        hint=(
                            "Use an ASCII id like A, step_1, postRequest. "
                            'Put emojis/spaces inside the label: A["\U0001f916 Agent"].'
                        ),
                        line=i + 1,
                        column=m.start() + 1,
                        snippet=ln,
                    )
                )

    for i, ln in enumerate(lines):
        for m in _LABEL.finditer(ln):
            label = m.group(0)
            quoted = label.startswith('["') and label.endswith('"]')
            if _SPECIAL_CHARS.search(label) and not quoted:
                errors.append(
                    LintError(
                        rule_id=LABEL_SPECIAL_CHARS,
                        message="Label contains special characters that can confuse the parser.",
                        hint='Wrap the label in quotes, e.g., A["x | y"].',
                        line=i + 1,
                        column=m.start() + 1,
                        snippet=ln,
                    )
                )

    if skip:
        errors = [e for e in errors if e.rule_id not in skip]
    return errors


def format_lint_errors(errors: list[LintError], max_hints: int | None = None) -> str:
    """
    Render findings as compact bullet lines.

    Each line reads ``• [rule] message @line:col — hint``. When more than
    ``max_hints`` findings exist, a trailing ``…and N more hint(s).`` line
    is added.
    """
    limit = len(errors) if max_hints is None else max_hints
    out: list[str] = []
    for err in errors[:limit]:
        loc = ""
        if err.line:
            loc = f" @{err.line}" + (f":{err.column}" if err.column else "")
        hint = f" — {err.hint}" if err.hint else ""
        out.append(f"• [{err.rule_id}] {err.message}{loc}{hint}")
    if len(errors) > limit:
        out.append(f"…and {len(errors) - limit} more hint(s).")
    return "\n".join(out)


def apply_lint_fixes(code: str, errors: list[LintError]) -> str:
    """Apply every non-overlapping autofix, right to left."""
    text = normalize_newlines(code)
    fixes = sorted((e.fix for e in errors if e.fix is not None), key=lambda f: f.start)

    kept: list[LintFix] = []
    last_end = -1
    for fix in fixes:
        if fix.start >= last_end:
            kept.append(fix)
            last_end = fix.end

    for fix in reversed(kept):
        text = text[: fix.start] + fix.text + text[fix.end :]
    return text
