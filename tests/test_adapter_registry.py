"""Tests for the backend registry."""

from __future__ import annotations

import pytest

from helpers import ScriptedBackend
from mermaid_fix_agent.adapters.anthropic import AnthropicBackend
from mermaid_fix_agent.adapters.emulated import JsonToolCallingBackend
from mermaid_fix_agent.adapters.openai import OpenAIBackend
from mermaid_fix_agent.adapters.registry import DEFAULT_MODELS, BackendRegistry
from mermaid_fix_agent.agent import RepairOrchestrator
from mermaid_fix_agent.config import RepairConfig
from mermaid_fix_agent.errors import MissingCredentialError


class TestBackendRegistry:
    """Tests for BackendRegistry."""

    def test_defaults(self) -> None:
        registry = BackendRegistry.with_defaults()
        assert registry.list_backends() == ["openai", "anthropic"]
        assert "openai" in registry
        assert len(registry) == 2
        assert registry.get_info("anthropic") == {"name": "anthropic", "source": "builtin"}

    def test_create_openai(self) -> None:
        """The default model is used when none is configured."""
        backend = BackendRegistry.with_defaults().create(
            RepairConfig(backend="openai", api_key="sk-test")
        )
        assert isinstance(backend, OpenAIBackend)
        assert backend.model == DEFAULT_MODELS["openai"]

    def test_create_anthropic_with_model(self) -> None:
        backend = BackendRegistry.with_defaults().create(
            RepairConfig(backend="anthropic", api_key="sk-ant", model="claude-sonnet-4-5")
        )
        assert isinstance(backend, AnthropicBackend)
        assert backend.model == "claude-sonnet-4-5"

    @pytest.mark.parametrize(
        "backend, variable",
        [("openai", "OPENAI_API_KEY"), ("anthropic", "ANTHROPIC_API_KEY")],
    )
    def test_missing_credential(self, backend: str, variable: str) -> None:
        """A missing key names the environment variable to set."""
        with pytest.raises(MissingCredentialError) as exc_info:
            BackendRegistry.with_defaults().create(RepairConfig(backend=backend))
        assert str(exc_info.value) == f"Missing {variable} environment variable"

    def test_unknown_backend(self) -> None:
        with pytest.raises(KeyError, match="Available: openai, anthropic"):
            BackendRegistry.with_defaults().create(RepairConfig(backend="gemini", api_key="x"))

    def test_json_tool_calling_wraps(self) -> None:
        """tool_calling=json wraps the backend in the text emulation layer."""
        backend = BackendRegistry.with_defaults().create(
            RepairConfig(backend="openai", api_key="sk-test", tool_calling="json")
        )
        assert isinstance(backend, JsonToolCallingBackend)
        assert isinstance(backend.inner, OpenAIBackend)
        assert backend.name == "openai+json"

    def test_custom_factory(self) -> None:
        """Factories run once per create(), so every run gets a fresh backend."""
        registry = BackendRegistry()
        registry.register_factory("scripted", lambda config: ScriptedBackend())

        config = RepairConfig(backend="scripted")
        first = registry.create(config)
        second = registry.create(config)

        assert isinstance(first, ScriptedBackend)
        assert first is not second

    def test_register_empty_name(self) -> None:
        with pytest.raises(ValueError):
            BackendRegistry().register_factory("", lambda config: ScriptedBackend())

    def test_override_and_unregister(self) -> None:
        registry = BackendRegistry.with_defaults()
        registry.register_factory("openai", lambda config: ScriptedBackend(), source="test")

        assert isinstance(registry.create(RepairConfig()), ScriptedBackend)
        assert registry.unregister("openai") is True
        assert registry.unregister("openai") is False
        assert not registry.has("openai")

    def test_orchestrator_from_config(self, validator) -> None:
        registry = BackendRegistry()
        registry.register_factory("scripted", lambda config: ScriptedBackend())
        config = RepairConfig(backend="scripted", tool_name="checkDiagram")

        orchestrator = RepairOrchestrator.from_config(config, registry=registry, validator=validator)

        assert isinstance(orchestrator.backend, ScriptedBackend)
        assert orchestrator.tool.name == "checkDiagram"
        assert orchestrator.validator is validator
