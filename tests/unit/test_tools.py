"""
Unit tests for tool declarations and tool-call extraction.

Run with: pytest tests/unit/test_tools.py -v
"""

import json

import pytest

from pocket_llama.errors import ToolCallError, ValidationError
from pocket_llama.tools import ToolCallExtractor, parse_tools


class TestParseTools:
    """Test tool declaration parsing."""

    def test_parse_function_tool(self, weather_tool):
        """Test parsing an OpenAI-style function tool"""
        tools = parse_tools([weather_tool])

        assert list(tools) == ["get_weather"]
        assert tools["get_weather"].description == "Current weather for a city"
        assert tools["get_weather"].parameters["required"] == ["city"]

    def test_non_function_tool(self):
        """Test that a tool without type 'function' is rejected"""
        with pytest.raises(ValidationError) as exc_info:
            parse_tools([{"type": "retrieval"}])
        assert "tools[0]" in str(exc_info.value)

    def test_missing_name(self):
        """Test that a function without a name is rejected"""
        with pytest.raises(ValidationError) as exc_info:
            parse_tools([{"type": "function", "function": {"parameters": {}}}])
        assert "name is required" in str(exc_info.value)

    def test_duplicate_name(self, weather_tool):
        """Test that two tools with one name are rejected"""
        with pytest.raises(ValidationError) as exc_info:
            parse_tools([weather_tool, weather_tool])
        assert "Duplicate tool name: get_weather" in str(exc_info.value)


class TestEnvelopeExtraction:
    """Test extraction of {"tool_calls": [...]} output."""

    def test_envelope(self, weather_tool):
        """Test extracting a call from a bare JSON envelope"""
        extractor = ToolCallExtractor([weather_tool])
        text = '{"tool_calls": [{"name": "get_weather", "arguments": {"city": "Paris"}}]}'

        content, calls = extractor.finalize(text)

        assert content == ""
        assert len(calls) == 1
        assert calls[0].name == "get_weather"
        assert json.loads(calls[0].arguments) == {"city": "Paris"}
        assert calls[0].id.startswith("call_")
        assert calls[0].to_dict()["type"] == "function"

    def test_fenced_block_keeps_surrounding_text(self, weather_tool):
        """Test that a fenced json block is removed from the content"""
        extractor = ToolCallExtractor([weather_tool])
        text = 'Let me check.\n```json\n{"name": "get_weather", "arguments": {"city": "Oslo"}}\n```'

        content, calls = extractor.finalize(text)

        assert content == "Let me check."
        assert calls[0].name == "get_weather"

    def test_string_arguments_are_decoded(self, weather_tool):
        """Test that JSON-encoded string arguments are accepted"""
        extractor = ToolCallExtractor([weather_tool])
        payload = {"tool_calls": [{"function": {"name": "get_weather", "arguments": '{"city": "Rome"}'}}]}

        _, calls = extractor.finalize(json.dumps(payload))

        assert json.loads(calls[0].arguments) == {"city": "Rome"}

    def test_plain_text_has_no_calls(self, weather_tool):
        """Test that ordinary text under tool_choice auto yields no calls"""
        extractor = ToolCallExtractor([weather_tool])
        content, calls = extractor.finalize("It is sunny today.")

        assert content == "It is sunny today."
        assert calls == []

    def test_undeclared_tool_is_ignored(self, weather_tool):
        """Test that calls to unknown tools are skipped"""
        extractor = ToolCallExtractor([weather_tool])
        _, calls = extractor.finalize('{"tool_calls": [{"name": "launch", "arguments": {}}]}')
        assert calls == []

    def test_feed_detects_complete_envelope(self, weather_tool):
        """Test that feed() reports True once the envelope is closed"""
        extractor = ToolCallExtractor([weather_tool])
        text = '{"tool_calls": [{"name": "get_weather", "arguments": {"city": "Lima"}}]} trailing'

        results = [extractor.feed(ch) for ch in text]

        assert results.index(True) == text.index("]}") + 1
        assert not any(results[:text.index("]}") + 1])


class TestArgumentValidation:
    """Test that arguments are checked against the tool parameters."""

    def test_invalid_arguments(self, weather_tool):
        """Test that arguments violating the schema raise ToolCallError"""
        extractor = ToolCallExtractor([weather_tool], diagnostics={"message_count": 2})
        text = '{"tool_calls": [{"name": "get_weather", "arguments": {"city": 42}}]}'

        with pytest.raises(ToolCallError) as exc_info:
            extractor.finalize(text)

        error = exc_info.value
        assert "Arguments for tool 'get_weather'" in error.message
        assert error.diagnostics["message_count"] == 2
        assert error.diagnostics["violations"][0]["path"] == ".city"

    def test_invalid_json_arguments(self, weather_tool):
        """Test that unparseable string arguments raise ToolCallError"""
        extractor = ToolCallExtractor([weather_tool])
        payload = {"tool_calls": [{"name": "get_weather", "arguments": "{city: Paris"}]}

        with pytest.raises(ToolCallError) as exc_info:
            extractor.finalize(json.dumps(payload))
        assert "not valid JSON" in exc_info.value.message


class TestToolChoice:
    """Test tool_choice handling."""

    def test_none_disables_extraction(self, weather_tool):
        """Test that tool_choice 'none' leaves the text untouched"""
        extractor = ToolCallExtractor([weather_tool], tool_choice="none")
        text = '{"tool_calls": [{"name": "get_weather", "arguments": {"city": "Paris"}}]}'

        assert extractor.enabled is False
        assert extractor.finalize(text) == (text, [])

    def test_required_without_call(self, weather_tool):
        """Test that 'required' fails when the model produced no call"""
        extractor = ToolCallExtractor([weather_tool], tool_choice="required")

        with pytest.raises(ToolCallError) as exc_info:
            extractor.finalize("No tools for me.")
        assert "one was required" in exc_info.value.message

    def test_named_choice_must_be_declared(self, weather_tool):
        """Test that forcing an undeclared tool is a validation error"""
        with pytest.raises(ValidationError):
            ToolCallExtractor([weather_tool], tool_choice={"type": "function", "function": {"name": "nope"}})

    def test_named_choice_is_required(self, weather_tool):
        """Test that forcing a declared tool makes a call mandatory"""
        choice = {"type": "function", "function": {"name": "get_weather"}}
        extractor = ToolCallExtractor([weather_tool], tool_choice=choice)
        assert extractor.required is True


class TestNativeExtraction:
    """Test <tool_call> blocks emitted by templates with native tool support."""

    def test_blocks_are_parsed_and_stripped(self, weather_tool):
        """Test that native blocks become calls and disappear from content"""
        extractor = ToolCallExtractor([weather_tool], native=True)
        text = (
            "Checking both.\n"
            '<tool_call>{"name": "get_weather", "arguments": {"city": "Paris"}}</tool_call>\n'
            '<tool_call>{"name": "get_weather", "arguments": {"city": "Tokyo", "days": 2}}</tool_call>'
        )

        for ch in text:
            assert extractor.feed(ch) is False
        content, calls = extractor.finalize(text)

        assert content == "Checking both."
        assert [json.loads(c.arguments)["city"] for c in calls] == ["Paris", "Tokyo"]
        assert calls[0].id != calls[1].id

    def test_streamed_calls_are_kept(self, weather_tool):
        """Test that finalize() returns the calls feed() built, not fresh ones"""
        extractor = ToolCallExtractor([weather_tool], native=True)
        first = '<tool_call>{"name": "get_weather", "arguments": {"city": "Paris"}}</tool_call>'
        second = '<tool_call>{"name": "get_weather", "arguments": {"city": "Oslo"}}</tool_call>'

        for ch in first:
            extractor.feed(ch)
        streamed = extractor.calls
        assert len(streamed) == 1

        _, calls = extractor.finalize(first + second)

        assert calls[0] is streamed[0]
        assert json.loads(calls[1].arguments)["city"] == "Oslo"

    def test_finalize_without_feed(self, weather_tool):
        """Test that finalize() alone still finds every block"""
        extractor = ToolCallExtractor([weather_tool], native=True)
        text = '<tool_call>{"name": "get_weather", "arguments": {"city": "Rome"}}</tool_call>'

        content, calls = extractor.finalize(text)

        assert content == ""
        assert [c.name for c in calls] == ["get_weather"]

    def test_invalid_block_fails_during_streaming(self, weather_tool):
        """Test that a malformed native block raises as soon as it closes"""
        extractor = ToolCallExtractor([weather_tool], native=True)

        with pytest.raises(ToolCallError):
            for ch in "<tool_call>{oops}</tool_call>":
                extractor.feed(ch)
