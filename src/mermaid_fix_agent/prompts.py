"""
Prompt templates for the repair agent.

Templates are .md files with optional YAML frontmatter, using ``${name}``
placeholders. Built-in templates ship in ``mermaid_fix_agent/templates``;
files with the same name in extra directories override them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any

import yaml

from mermaid_fix_agent.logging import get_logger

logger = get_logger("prompts")

BUILTIN_DIR = Path(__file__).parent / "templates"

REPAIR_SYSTEM = "repair_system"
REPAIR_USER = "repair_user"
CURRENT_STATE = "current_state"
JSON_PROTOCOL = "json_protocol"
CHAT_SYSTEM = "chat"
LINE_FIX_SYSTEM = "line_fix_system"
LINE_FIX_USER = "line_fix_user"

_VARIABLE = re.compile(r"\$\{(\w+)\}")


@dataclass
class PromptTemplate:
    """A prompt template loaded from a .md file."""

    name: str  # derived from filename (e.g. "chat" from "chat.md")
    content: str  # raw template content (after frontmatter)
    description: str = ""
    file_path: Path = field(default_factory=lambda: Path())
    variables: list[str] = field(default_factory=list)

    def render(self, **values: Any) -> str:
        """Substitute ``${name}`` placeholders; unknown ones are left as-is."""
        return Template(self.content).safe_substitute(
            {k: "" if v is None else str(v) for k, v in values.items()}
        )


class PromptTemplateLoader:
    """
    Loads prompt templates, built-ins first, then overrides.

    Example:
        loader = PromptTemplateLoader(extra_dirs=[Path("./prompts")])
        system = loader.render("repair_system", tool_name="mermaidValidator")
    """

    def __init__(self, extra_dirs: list[Path] | None = None) -> None:
        self.dirs = [BUILTIN_DIR]
        if extra_dirs:
            self.dirs.extend(extra_dirs)
        self._cache: dict[str, PromptTemplate] | None = None

    def load_all(self) -> dict[str, PromptTemplate]:
        """Load all templates; later directories override earlier ones."""
        if self._cache is not None:
            return self._cache

        templates: dict[str, PromptTemplate] = {}
        for directory in self.dirs:
            if not directory.is_dir():
                continue
            for md_file in sorted(directory.glob("*.md")):
                template = self.load_template(md_file)
                if template:
                    if template.name in templates:
                        logger.debug("Overriding prompt template: %s", template.name)
                    templates[template.name] = template

        self._cache = templates
        return templates

    def get(self, name: str) -> PromptTemplate:
        templates = self.load_all()
        if name not in templates:
            raise KeyError(f"Prompt template '{name}' not found")
        return templates[name]

    def render(self, name: str, **values: Any) -> str:
        return self.get(name).render(**values)

    def load_template(self, path: Path) -> PromptTemplate | None:
        """Load a single template from a .md file."""
        try:
            text = path.read_text(encoding="utf-8")
        except OSError:
            return None

        description = ""
        content = text

        # Parse optional YAML frontmatter
        if text.startswith("---"):
            parts = text.split("---", 2)
            if len(parts) >= 3:
                content = parts[2].strip()
                try:
                    frontmatter = yaml.safe_load(parts[1].strip()) or {}
                    description = frontmatter.get("description", "")
                except yaml.YAMLError:
                    pass

        variables: list[str] = []
        for match in _VARIABLE.finditer(content):
            if match.group(1) not in variables:
                variables.append(match.group(1))

        return PromptTemplate(
            name=path.stem,
            content=content,
            description=description,
            file_path=path,
            variables=variables,
        )


_default_loader: PromptTemplateLoader | None = None


def default_loader() -> PromptTemplateLoader:
    """Shared loader for the built-in templates."""
    global _default_loader
    if _default_loader is None:
        _default_loader = PromptTemplateLoader()
    return _default_loader
