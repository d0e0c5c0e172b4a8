"""
Cheap heuristic for "does this text even try to be a Mermaid diagram?".

Used as a gate in front of the repair loop so unrelated input never costs
a model call. It never decides validity.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

DIAGRAM_KEYWORDS = (
    "flowchart",
    "graph",
    "sequenceDiagram",
    "classDiagram",
    "stateDiagram",
    "stateDiagram-v2",
    "gantt",
    "erDiagram",
    "journey",
    "pie",
    "mindmap",
    "timeline",
    "gitGraph",
    "quadrantChart",
    "xychart-beta",
    "sankeyDiagram",
    "requirementDiagram",
    "c4context",
    "c4component",
    "c4container",
    "c4deployment",
    "blockDiagram",
    "entityRelationshipDiagram",
    "userJourney",
)

_KEYWORD = re.compile(
    r"^(?:" + "|".join(re.escape(k) for k in DIAGRAM_KEYWORDS) + r")\b",
    re.IGNORECASE | re.ASCII,
)

_BODY_HINTS = (
    re.compile(r"-->"),
    re.compile(r"-\.->"),
    re.compile(r"==="),
    re.compile(r":::"),
    re.compile(r"\bsubgraph\b", re.IGNORECASE | re.ASCII),
    re.compile(r"\bparticipant\s+[A-Za-z0-9_]", re.IGNORECASE | re.ASCII),
    re.compile(r"\bstate\s*(?:\{|\w)", re.IGNORECASE | re.ASCII),
    re.compile(r"\bsection\s+[A-Za-z0-9_]", re.IGNORECASE | re.ASCII),
    re.compile(r"\bloop\b", re.IGNORECASE | re.ASCII),
    re.compile(r"\bclick\s+[A-Za-z0-9_]", re.IGNORECASE | re.ASCII),
)


@dataclass(frozen=True)
class MermaidIntent:
    is_likely_mermaid: bool
    diagram_type_hint: str | None = None


def detect_mermaid_intent(code: str) -> MermaidIntent:
    """
    Classify sanitized text as plausibly Mermaid or not.

    The first meaningful line (skipping ``%%`` comments and front matter
    delimiters) is checked for a diagram keyword. Without one, the body is
    scanned for structural tokens or an ``%%{init}%%`` directive.
    """
    for line in code.split("\n"):
        line = line.strip()
        if not line or line.startswith("%%") or line in ("---", "..."):
            continue
        match = _KEYWORD.match(line)
        if match:
            return MermaidIntent(True, match.group(0))
        break

    has_body_hints = any(rx.search(code) for rx in _BODY_HINTS)
    has_init_directive = "%%{" in code and "}%%" in code
    return MermaidIntent(has_body_hints or has_init_directive)
