"""
Diagram validation: normalization, intake heuristic, parsing and lint hints.
"""

from mermaid_fix_agent.validation.intake import MermaidIntent, detect_mermaid_intent
from mermaid_fix_agent.validation.lint import apply_lint_fixes, format_lint_errors, lint_mermaid
from mermaid_fix_agent.validation.parser import (
    CallableParser,
    DiagramParser,
    MermaidCLIParser,
    ParseOutcome,
)
from mermaid_fix_agent.validation.sanitize import extract_fenced_block, sanitize_mermaid
from mermaid_fix_agent.validation.validator import EMPTY_DIAGRAM_ERROR, DiagramValidator

__all__ = [
    "CallableParser",
    "DiagramParser",
    "DiagramValidator",
    "EMPTY_DIAGRAM_ERROR",
    "MermaidCLIParser",
    "MermaidIntent",
    "ParseOutcome",
    "apply_lint_fixes",
    "detect_mermaid_intent",
    "extract_fenced_block",
    "format_lint_errors",
    "lint_mermaid",
    "sanitize_mermaid",
]
