"""
Model backends.

Each backend streams ``BackendEvent``s from one provider. Tool execution
stays in the orchestrator.
"""

from mermaid_fix_agent.adapters.anthropic import AnthropicBackend
from mermaid_fix_agent.adapters.base import BackendEvent, ModelBackend, ToolDefinition
from mermaid_fix_agent.adapters.emulated import JsonToolCallingBackend
from mermaid_fix_agent.adapters.openai import OpenAIBackend
from mermaid_fix_agent.adapters.registry import BackendRegistry

__all__ = [
    "AnthropicBackend",
    "BackendEvent",
    "BackendRegistry",
    "JsonToolCallingBackend",
    "ModelBackend",
    "OpenAIBackend",
    "ToolDefinition",
]
