"""
Normalization of raw diagram text before it reaches the parser.
"""

from __future__ import annotations

import re

_FENCE = re.compile(r"```(?:\s*mermaid)?\s*([\s\S]*?)```", re.IGNORECASE)

# Zero-width and bidi control characters
_INVISIBLES = re.compile("[\u200b-\u200d\ufeff\u2060\u200e\u200f\u202a-\u202e\u2066-\u2069]")


def normalize_newlines(text: str) -> str:
    """Convert CRLF and lone CR line endings to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def extract_fenced_block(text: str) -> str | None:
    """Return the body of the first fenced code block, or None."""
    match = _FENCE.search(text)
    if match and match.group(1):
        return match.group(1)
    return None


def sanitize_mermaid(raw: str) -> str:
    """
    Clean up diagram text pasted from chats, editors or markdown.

    Normalizes line endings, strips a leading BOM, unwraps a fenced
    ```mermaid block, removes invisible characters, and trims every line.
    The result may be empty.
    """
    text = normalize_newlines(raw)
    if text.startswith("\ufeff"):
        text = text[1:]
    text = text.strip()

    fenced = extract_fenced_block(text)
    if fenced is not None:
        text = fenced

    text = _INVISIBLES.sub("", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()
