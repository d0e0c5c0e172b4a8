"""Utility helpers."""

from mermaid_fix_agent.utils.json_parse import parse_json_object, parse_streaming_json

__all__ = ["parse_json_object", "parse_streaming_json"]
