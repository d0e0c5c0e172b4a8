"""
Configuration for the repair agent.

A ``RepairConfig`` can be loaded from YAML, from environment variables
(including a ``.env`` file), or constructed programmatically.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import find_dotenv, load_dotenv

ToolCallingMode = Literal["native", "json"]

ENV_PREFIX = "MERMAID_FIX_"


@dataclass
class RepairConfig:
    """
    Settings for one repair service instance.

    Example YAML:
        backend: anthropic
        model: claude-3-5-haiku-latest
        max_steps: 6
        timeout_seconds: 30
        disabled_lint_rules:
          - id.invalid
        parser_command: [npx, -y, "@mermaid-js/mermaid-cli"]
    """

    # Backend selection
    backend: str = "openai"  # Registry name: "openai", "anthropic"
    model: str | None = None  # None = backend default (gpt-4o-mini, claude-3-5-haiku-latest)
    api_key: str | None = None  # Defaults to the provider's env var
    base_url: str | None = None
    tool_calling: ToolCallingMode = "native"  # "json" emulates tools in plain text

    # Loop behavior
    max_steps: int = 6
    timeout_seconds: float = 30.0  # Wall-clock ceiling per run
    temperature: float = 0.3
    max_output_tokens: int = 4000
    tool_name: str = "mermaidValidator"
    structured_output: bool = True
    line_fast_path: bool = False

    # Validation
    max_hints: int = 8
    disabled_lint_rules: list[str] = field(default_factory=list)
    parser_command: list[str] = field(default_factory=lambda: ["mmdc"])
    parser_timeout_seconds: float = 20.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepairConfig:
        """Create config from a dictionary. Unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}

        if isinstance(values.get("parser_command"), str):
            values["parser_command"] = values["parser_command"].split()
        if "disabled_lint_rules" in values:
            values["disabled_lint_rules"] = list(values["disabled_lint_rules"] or [])
        if values.get("tool_calling") not in (None, "native", "json"):
            raise ValueError(f"Unsupported tool_calling mode: {values['tool_calling']}")

        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Path | str) -> RepairConfig:
        """Load config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_yaml_string(cls, content: str) -> RepairConfig:
        """Load config from a YAML string."""
        data = yaml.safe_load(content)
        return cls.from_dict(data or {})

    @classmethod
    def from_env(cls, **overrides: Any) -> RepairConfig:
        """
        Create config from environment variables.

        Reads ``.env`` first, then ``MERMAID_FIX_<FIELD>`` variables. The API
        key and base URL fall back to the selected provider's standard
        variables (``OPENAI_API_KEY``, ``OPENAI_BASE_URL``, ``ANTHROPIC_API_KEY``).
        Keyword overrides win over everything.
        """
        load_dotenv(find_dotenv(usecwd=True))

        data: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is not None:
                data[f.name] = _coerce_env(f.name, raw)
        data.update(overrides)

        backend = data.get("backend", cls.backend)
        if not data.get("api_key"):
            data["api_key"] = os.environ.get(_PROVIDER_KEY_VARS.get(backend, ""))
        if not data.get("base_url") and backend == "openai":
            data["base_url"] = os.environ.get("OPENAI_BASE_URL")

        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary."""
        return {
            "backend": self.backend,
            "model": self.model,
            "api_key": self.api_key,
            "base_url": self.base_url,
            "tool_calling": self.tool_calling,
            "max_steps": self.max_steps,
            "timeout_seconds": self.timeout_seconds,
            "temperature": self.temperature,
            "max_output_tokens": self.max_output_tokens,
            "tool_name": self.tool_name,
            "structured_output": self.structured_output,
            "line_fast_path": self.line_fast_path,
            "max_hints": self.max_hints,
            "disabled_lint_rules": list(self.disabled_lint_rules),
            "parser_command": list(self.parser_command),
            "parser_timeout_seconds": self.parser_timeout_seconds,
        }


_PROVIDER_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

_INT_FIELDS = {"max_steps", "max_output_tokens", "max_hints"}
_FLOAT_FIELDS = {"timeout_seconds", "temperature", "parser_timeout_seconds"}
_BOOL_FIELDS = {"structured_output", "line_fast_path"}


def _coerce_env(name: str, raw: str) -> Any:
    """Convert an environment string to the field's type."""
    if name in _INT_FIELDS:
        return int(raw)
    if name in _FLOAT_FIELDS:
        return float(raw)
    if name in _BOOL_FIELDS:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if name == "disabled_lint_rules":
        return [part.strip() for part in raw.split(",") if part.strip()]
    if name == "parser_command":
        return raw.split()
    return raw
