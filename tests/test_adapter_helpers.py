"""Tests for the helpers shared by the request adapters."""

import pytest

from toolwire.adapters.base import json_instruction, output_schema, parse_structured_output


class TestOutputSchema:
    """Reading the requested schema out of params."""

    def test_json_schema(self):
        params = {"response_format": {"type": "json_schema", "json_schema": {"name": "o", "schema": {"type": "object"}}}}

        assert output_schema(params) == {"type": "object"}

    def test_json_mode(self):
        assert output_schema({"response_format": {"type": "json_object"}}) == {}

    @pytest.mark.parametrize("params", [None, {}, {"response_format": None}, {"response_format": {"type": "text"}}])
    def test_free_text(self, params):
        assert output_schema(params) is None

    def test_instruction_embeds_schema(self):
        assert '"type": "object"' in json_instruction({"type": "object"})
        assert "schema" not in json_instruction({})


class TestParseStructuredOutput:
    """Finding the JSON value in a reply."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ('{"a": 1}', {"a": 1}),
            ("  [1, 2]\n", [1, 2]),
            ('Here you go:\n```json\n{"a": 1}\n```', {"a": 1}),
            ('```\n{"a": 1}\n```', {"a": 1}),
            ('The result is {"a": {"b": [1]}} as requested.', {"a": {"b": [1]}}),
            ("Skip {broken then [3]", [3]),
        ],
    )
    def test_found(self, text, expected):
        assert parse_structured_output(text) == expected

    @pytest.mark.parametrize("text", ["", "   ", "no json here", '{"x": NaN}'])
    def test_not_found(self, text):
        assert parse_structured_output(text) is None

    def test_deep_nesting_does_not_raise(self):
        assert parse_structured_output("[" * 100_000 + "]" * 100_000) is None
