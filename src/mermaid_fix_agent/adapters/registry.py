"""
Backend registry: model providers selected by name from configuration.

Example:
    from mermaid_fix_agent.adapters.registry import BackendRegistry

    registry = BackendRegistry.with_defaults()

    # Register a custom provider
    registry.register_factory("local", lambda config: MyBackend(config.model))

    backend = registry.create(RepairConfig(backend="anthropic", api_key="..."))
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from mermaid_fix_agent.adapters.anthropic import AnthropicBackend
from mermaid_fix_agent.adapters.base import ModelBackend
from mermaid_fix_agent.adapters.emulated import JsonToolCallingBackend
from mermaid_fix_agent.adapters.openai import OpenAIBackend
from mermaid_fix_agent.config import RepairConfig
from mermaid_fix_agent.errors import MissingCredentialError
from mermaid_fix_agent.logging import get_logger

logger = get_logger("adapters.registry")

# Type for backend factory functions: (config) -> ModelBackend
BackendFactory = Callable[[RepairConfig], ModelBackend]

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
}


class _BackendEntry:
    """Internal entry holding a factory."""

    __slots__ = ("name", "factory", "source")

    def __init__(self, name: str, factory: BackendFactory, source: str = "") -> None:
        self.name = name
        self.factory = factory
        self.source = source


class BackendRegistry:
    """
    A registry of model backend factories.

    Factories are called once per ``create()``, so every repair run gets
    its own backend instance and nothing leaks between runs.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _BackendEntry] = {}

    @classmethod
    def with_defaults(cls) -> BackendRegistry:
        """Registry with the built-in OpenAI and Anthropic backends."""
        registry = cls()
        registry.register_factory("openai", _create_openai, source="builtin")
        registry.register_factory("anthropic", _create_anthropic, source="builtin")
        return registry

    def register_factory(self, name: str, factory: BackendFactory, source: str = "") -> None:
        """
        Register a backend factory.

        Raises:
            ValueError: If name is empty
        """
        if not name:
            raise ValueError("Backend name must not be empty")
        if name in self._entries:
            logger.debug("Overriding backend factory: %s", name)
        self._entries[name] = _BackendEntry(name=name, factory=factory, source=source)
        logger.debug("Registered backend factory: %s (source=%s)", name, source or "manual")

    def unregister(self, name: str) -> bool:
        """Remove a registered backend. Returns True if it existed."""
        return self._entries.pop(name, None) is not None

    def create(self, config: RepairConfig) -> ModelBackend:
        """
        Build the backend named by ``config.backend``.

        When ``config.tool_calling`` is ``"json"``, the backend is wrapped so
        tools are emulated through plain text.

        Raises:
            KeyError: If the backend is not registered
            MissingCredentialError: If the provider needs a key that is not set
        """
        entry = self._entries.get(config.backend)
        if entry is None:
            available = ", ".join(self._entries.keys()) or "(none)"
            raise KeyError(f"Backend '{config.backend}' not found. Available: {available}")

        backend = entry.factory(config)
        if config.tool_calling == "json":
            backend = JsonToolCallingBackend(backend)
        logger.info("Using backend %s", backend.name)
        return backend

    def has(self, name: str) -> bool:
        return name in self._entries

    def list_backends(self) -> list[str]:
        return list(self._entries.keys())

    def get_info(self, name: str) -> dict[str, Any]:
        entry = self._entries.get(name)
        if entry is None:
            raise KeyError(f"Backend '{name}' not found")
        return {"name": entry.name, "source": entry.source}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __repr__(self) -> str:
        return f"BackendRegistry([{', '.join(self._entries.keys())}])"


def _create_openai(config: RepairConfig) -> ModelBackend:
    if not config.api_key:
        raise MissingCredentialError("Missing OPENAI_API_KEY environment variable")

    return OpenAIBackend(
        model=config.model or DEFAULT_MODELS["openai"],
        api_key=config.api_key,
        base_url=config.base_url,
        temperature=config.temperature,
        max_output_tokens=config.max_output_tokens,
    )


def _create_anthropic(config: RepairConfig) -> ModelBackend:
    if not config.api_key:
        raise MissingCredentialError("Missing ANTHROPIC_API_KEY environment variable")

    return AnthropicBackend(
        model=config.model or DEFAULT_MODELS["anthropic"],
        api_key=config.api_key,
        temperature=config.temperature,
        max_output_tokens=config.max_output_tokens,
    )
