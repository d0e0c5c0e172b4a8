"""Tests for the JSON helpers used on model output."""

from __future__ import annotations

from mermaid_fix_agent.utils.json_parse import parse_json_object, parse_streaming_json


class TestParseStreamingJson:
    """Tests for parse_streaming_json."""

    def test_empty_string_returns_empty_dict(self) -> None:
        assert parse_streaming_json("") == {}
        assert parse_streaming_json("  \n\t") == {}

    def test_valid_complete_json(self) -> None:
        """Valid complete JSON dict should be returned as-is."""
        result = parse_streaming_json('{"fixedCode": "graph TD", "explanation": "ok"}')
        assert result == {"fixedCode": "graph TD", "explanation": "ok"}

    def test_non_dict_returns_empty_dict(self) -> None:
        assert parse_streaming_json("[1, 2, 3]") == {}
        assert parse_streaming_json('"just a string"') == {}

    def test_truncated_string_value(self) -> None:
        """A value cut mid-string is returned with what has arrived so far."""
        result = parse_streaming_json('{"fixedCode": "graph TD\\nA --')
        assert result == {"fixedCode": "graph TD\nA --"}

    def test_truncated_after_key(self) -> None:
        result = parse_streaming_json('{"fixedCode": "graph TD", "expl')
        assert result.get("fixedCode") == "graph TD"

    def test_garbage_returns_empty_dict(self) -> None:
        assert parse_streaming_json("I will now fix the diagram") == {}


class TestParseJsonObject:
    """Tests for parse_json_object."""

    def test_whole_text(self) -> None:
        assert parse_json_object('{"fixedCode": "x"}') == {"fixedCode": "x"}

    def test_fenced(self) -> None:
        text = 'Here you go:\n```json\n{"fixedCode": "x", "explanation": "y"}\n```\nDone.'
        assert parse_json_object(text) == {"fixedCode": "x", "explanation": "y"}

    def test_braced_span(self) -> None:
        """An object embedded in prose is found."""
        assert parse_json_object('Result: {"fixedCode": "x"} hope that helps') == {"fixedCode": "x"}

    def test_nothing_found(self) -> None:
        assert parse_json_object("") is None
        assert parse_json_object("no json here") is None
        assert parse_json_object("[1, 2]") is None
