"""Shared pytest fixtures for mermaid-fix-agent tests."""

import pytest

from helpers import fake_mermaid_parse
from mermaid_fix_agent.config import RepairConfig
from mermaid_fix_agent.validation import CallableParser, DiagramValidator


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep real provider keys and .env files out of tests."""
    for var in (
        "OPENAI_API_KEY",
        "OPENAI_BASE_URL",
        "ANTHROPIC_API_KEY",
        "MERMAID_FIX_BACKEND",
        "MERMAID_FIX_MODEL",
        "MERMAID_FIX_API_KEY",
        "MERMAID_FIX_MAX_STEPS",
        "MERMAID_FIX_TOOL_CALLING",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def parser() -> CallableParser:
    """Parser that follows a handful of real Mermaid rules."""
    return CallableParser(fake_mermaid_parse)


@pytest.fixture
def validator(parser: CallableParser) -> DiagramValidator:
    return DiagramValidator(parser=parser)


@pytest.fixture
def config() -> RepairConfig:
    """Config suited to scripted backends."""
    return RepairConfig(
        backend="scripted",
        api_key="test-key",
        max_steps=3,
        timeout_seconds=5.0,
    )
