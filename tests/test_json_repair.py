"""
Unit tests for tolerant JSON parsing.

Covers each repair rule on truncated model output.
"""

import json

import pytest

from story_context.core.json_repair import (
    extract_partial_fields,
    parse_tolerant,
    process_model_field,
    repair,
    strip_fences,
)


class TestParseComplete:
    """Input that decodes without repair."""

    def test_plain_object(self):
        """Test complete JSON decodes as complete."""
        data, complete = parse_tolerant('{"analysis": "a", "response": {"story": "s"}}')
        assert complete
        assert data["response"]["story"] == "s"

    def test_fenced_object(self):
        """Test markdown fences are stripped before decoding."""
        data, complete = parse_tolerant('```json\n{"a": 1}\n```')
        assert complete
        assert data == {"a": 1}

    def test_leading_chatter_ignored(self):
        """Test text before the first brace is ignored."""
        data, complete = parse_tolerant('Here you go: {"a": 1}')
        assert complete
        assert data == {"a": 1}

    def test_bytes_input(self):
        """Test UTF-8 bytes are decoded."""
        data, complete = parse_tolerant('{"s": "café"}'.encode("utf-8"))
        assert complete
        assert data == {"s": "café"}

    @pytest.mark.parametrize("text", ["", "   ", "not json", "[1, 2]"])
    def test_nothing_recoverable(self, text):
        """Test input with no object yields an empty result."""
        assert parse_tolerant(text) == ({}, False)


class TestRepair:
    """Truncated input closed by the repair rules."""

    def test_unterminated_value_string(self):
        """Test an open value string is closed."""
        data, complete = parse_tolerant('{"analysis": "thinking", "response": {"story": "Once upon')
        assert not complete
        assert data == {"analysis": "thinking", "response": {"story": "Once upon"}}

    def test_unterminated_key_removed(self):
        """Test a half-written key is dropped."""
        data, _ = parse_tolerant('{"analysis": "a", "resp')
        assert data == {"analysis": "a"}

    def test_key_without_value(self):
        """Test a key without a value gets null."""
        assert json.loads(repair('{"a":')) == {"a": None}
        assert json.loads(repair('{"a"')) == {"a": None}

    @pytest.mark.parametrize("text,expected", [
        ('{"a": tru', {"a": True}),
        ('{"a": fal', {"a": False}),
        ('{"a": n', {"a": None}),
        ('{"a": 12.', {"a": 12}),
    ])
    def test_truncated_literal(self, text, expected):
        """Test truncated literals are completed."""
        assert json.loads(repair(text)) == expected

    def test_trailing_comma(self):
        """Test trailing commas are removed."""
        assert json.loads(repair('{"a": [1, 2,')) == {"a": [1, 2]}
        assert json.loads(repair('{"a": 1,')) == {"a": 1}

    def test_dangling_escape_dropped(self):
        """Test a dangling backslash is dropped."""
        assert json.loads(repair('{"s": "abc\\')) == {"s": "abc"}

    def test_partial_unicode_escape_dropped(self):
        """Test a partial unicode escape is dropped."""
        assert json.loads(repair('{"s": "caf\\u00e')) == {"s": "caf"}

    def test_nested_containers_closed(self):
        """Test open containers are closed in order."""
        assert json.loads(repair('{"a": {"b": ["x", {"c": "d')) == {"a": {"b": ["x", {"c": "d"}]}}

    def test_early_root_close_reopened(self):
        """Test a stray early close of the root object is undone."""
        data, complete = parse_tolerant('{"analysis":"a"},"response":{"story":"b"}}')
        assert not complete
        assert data == {"analysis": "a", "response": {"story": "b"}}

    def test_complete_text_unchanged(self):
        """Test complete JSON passes through repair unchanged."""
        assert repair('{"a": [1, "x"]}') == '{"a": [1, "x"]}'

    def test_every_prefix_recovers_a_dict(self):
        """Any truncation point yields an object, never an exception."""
        full = json.dumps({"analysis": "plan", "response": {"story": 'He said "hi"\n', "summary": "greeting"}})
        for end in range(1, len(full) + 1):
            data, _ = parse_tolerant(full[:end])
            assert isinstance(data, dict)
        assert parse_tolerant(full) == (json.loads(full), True)


class TestExtraction:
    """Field extraction fallback and helpers."""

    def test_extract_partial_fields(self):
        """Test fields are pulled out of text that will not parse."""
        text = '{"analysis": "plan" "response": {"story": "The \\"door\\" creaks'
        assert extract_partial_fields(text) == {
            "analysis": "plan",
            "response": {"story": 'The "door" creaks'},
        }

    def test_extract_nothing(self):
        """Test extraction from text without fields is empty."""
        assert extract_partial_fields("no fields here") == {}

    def test_strip_fences_missing_closer(self):
        """Test an opening fence without a closer is stripped."""
        assert strip_fences('```json\n{"a": 1}') == '{"a": 1}'

    def test_process_model_field(self):
        """Test literal escapes in a field are unescaped and trimmed."""
        assert process_model_field("  Line\\nTwo\\t\\\"q\\\"  ") == 'Line\nTwo\t"q"'
        assert process_model_field(None) == ""
