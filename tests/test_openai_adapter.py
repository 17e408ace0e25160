"""Tests for the OpenAI request adapter."""

import json

import pytest
from openai.types.chat import ChatCompletion

from toolwire.adapters.openai import OpenAIRequestAdapter
from toolwire.errors import ToolProtocolError
from toolwire.params import json_schema_format, normalize_params
from toolwire.stream_utils import aggregate_stream_sync
from toolwire.types import (
    AssistantToolCallMessage,
    CompiledPrompt,
    NamedToolChoice,
    StandardMessage,
    ToolCall,
    ToolDefinition,
    ToolResult,
    ToolResultMessage,
)


@pytest.fixture
def adapter():
    """Create OpenAIRequestAdapter instance for testing."""
    return OpenAIRequestAdapter()


@pytest.fixture
def weather_call():
    return ToolCall(id="call_abc", name="get_weather", arguments={"location": "Tokyo"})


def completion(message, finish_reason="stop", usage=None):
    data = {"choices": [{"index": 0, "message": message, "finish_reason": finish_reason}]}
    if usage:
        data["usage"] = usage
    return data


class TestToolConversion:
    """Definitions, choices and results."""

    def test_definitions_wrapped_in_function_envelope(self, adapter):
        tools = [
            ToolDefinition(name="get_weather", description="Weather", parameters={"type": "object"}),
            ToolDefinition(name="ping", strict=True),
        ]

        assert adapter.convert_tool_definitions(tools) == [
            {
                "type": "function",
                "function": {"name": "get_weather", "description": "Weather", "parameters": {"type": "object"}},
            },
            {"type": "function", "function": {"name": "ping", "strict": True}},
        ]

    @pytest.mark.parametrize("choice", ["auto", "none", "required"])
    def test_choice_verbatim(self, adapter, choice):
        assert adapter.convert_tool_choice(choice) == choice

    @pytest.mark.parametrize(
        "choice",
        [NamedToolChoice("get_weather"), {"name": "get_weather"},
         {"type": "function", "function": {"name": "get_weather"}}],
    )
    def test_named_choice(self, adapter, choice):
        assert adapter.convert_tool_choice(choice) == {
            "type": "function",
            "function": {"name": "get_weather"},
        }

    def test_invalid_choice(self, adapter):
        with pytest.raises(ToolProtocolError):
            adapter.convert_tool_choice("sometimes")

    def test_text_result_verbatim(self, adapter, weather_call):
        message = adapter.convert_tool_result(ToolResult.text(weather_call, "22C and sunny"))

        assert message == {"role": "tool", "tool_call_id": "call_abc", "content": "22C and sunny"}

    def test_string_data_is_json_quoted(self, adapter, weather_call):
        message = adapter.convert_tool_result(ToolResult.data(weather_call, "sunny"))

        assert message["content"] == '"sunny"'

    def test_error_result_prefixed(self, adapter, weather_call):
        message = adapter.convert_tool_result(ToolResult.error(weather_call, "city not found"))

        assert message["content"] == "Error: city not found"
        assert adapter.extract_tool_result(message, kind="error") == "city not found"

    @pytest.mark.parametrize(
        "value",
        [{"temp": 22, "condition": "sunny"}, [1, "two", None], 3.5, 0, True, None, "sunny", ""],
    )
    def test_data_round_trip(self, adapter, weather_call, value):
        message = adapter.convert_tool_result(ToolResult.data(weather_call, value))

        assert adapter.extract_tool_result(message) == value


class TestExtractToolCalls:
    """Reading calls out of a response message."""

    def test_arguments_string_is_parsed(self, adapter):
        message = {
            "role": "assistant",
            "tool_calls": [
                {"id": "call_1", "type": "function",
                 "function": {"name": "calc", "arguments": '{"a": 2, "b": 2}'}},
            ],
        }

        assert adapter.extract_tool_calls(message) == [
            ToolCall(id="call_1", name="calc", arguments={"a": 2, "b": 2})
        ]

    def test_missing_empty_and_duplicate_ids(self, adapter):
        message = {
            "tool_calls": [
                {"function": {"name": "a", "arguments": "{}"}},
                {"id": "", "function": {"name": "b", "arguments": "{}"}},
                {"id": "x", "function": {"name": "c", "arguments": "{}"}},
                {"id": "x", "function": {"name": "d", "arguments": "{}"}},
            ]
        }

        ids = [c.id for c in adapter.extract_tool_calls(message)]

        assert ids == ["call_0", "call_1", "x", "call_2"]

    @pytest.mark.parametrize(
        "provider_ids, expected",
        [
            (["call_1", None], ["call_1", "call_0"]),
            ([None, "call_0"], ["call_1", "call_0"]),
            (["call_0", "call_0", None], ["call_0", "call_1", "call_2"]),
        ],
    )
    def test_synthesized_ids_skip_provider_ids(self, adapter, provider_ids, expected):
        message = {
            "tool_calls": [
                {"id": call_id, "function": {"name": "calc", "arguments": "{}"}}
                for call_id in provider_ids
            ]
        }

        ids = [c.id for c in adapter.extract_tool_calls(message)]

        assert ids == expected
        assert len(set(ids)) == len(ids)

    def test_malformed_arguments_flagged(self, adapter):
        message = {"tool_calls": [{"id": "id1", "function": {"name": "test", "arguments": "{not valid json"}}]}

        [call] = adapter.extract_tool_calls(message)

        assert call.id == "id1"
        assert call.arguments == {}
        assert call.error is not None

    def test_non_finite_arguments_flagged(self, adapter):
        message = {"tool_calls": [{"id": "id1", "function": {"name": "scale", "arguments": '{"by": Infinity}'}}]}

        [call] = adapter.extract_tool_calls(message)

        assert not call.is_valid
        assert call.arguments == {}

    def test_sdk_completion(self, adapter):
        raw = ChatCompletion.model_validate({
            "id": "cmpl-1",
            "object": "chat.completion",
            "created": 0,
            "model": "gpt-4o",
            "choices": [{
                "index": 0,
                "finish_reason": "tool_calls",
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [{
                        "id": "call_9", "type": "function",
                        "function": {"name": "get_weather", "arguments": '{"location": "Paris"}'},
                    }],
                },
            }],
            "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        })

        result = adapter.from_provider(raw)

        assert result.content == ""
        assert result.finish_reason == "tool_calls"
        assert result.tool_calls == [
            ToolCall(id="call_9", name="get_weather", arguments={"location": "Paris"})
        ]
        assert result.usage.total_tokens == 15
        assert result.raw is raw


class TestFromProvider:
    """Complete responses."""

    def test_text_response(self, adapter):
        result = adapter.from_provider(completion({"role": "assistant", "content": "Hello"}))

        assert result.content == "Hello"
        assert result.tool_calls is None
        assert result.finish_reason == "stop"

    def test_length(self, adapter):
        result = adapter.from_provider(completion({"content": "Hel"}, finish_reason="length"))

        assert result.finish_reason == "length"

    def test_tool_calls_override_stop(self, adapter):
        """Some compatible servers report "stop" alongside tool calls."""
        message = {"content": "", "tool_calls": [{"id": "a", "function": {"name": "f", "arguments": "{}"}}]}

        result = adapter.from_provider(completion(message, finish_reason="stop"))

        assert result.finish_reason == "tool_calls"

    def test_no_choices(self, adapter):
        result = adapter.from_provider({"choices": []})

        assert result.content == ""
        assert result.finish_reason == "error"


class TestBuildMessages:
    """History conversion."""

    def test_prompt_and_tool_loop(self, adapter, weather_call):
        prompt = CompiledPrompt(instructions=["You are helpful"], data=["Weather in Tokyo?"])
        history = [
            AssistantToolCallMessage([weather_call]),
            ToolResultMessage(ToolResult.data(weather_call, {"temp": 22}), text="Anything else?"),
        ]

        messages = adapter.build_messages(prompt, history)

        assert messages[0] == {"role": "system", "content": "You are helpful"}
        assert messages[1] == {"role": "user", "content": "Weather in Tokyo?"}
        assert messages[2] == {
            "role": "assistant",
            "content": None,
            "tool_calls": [{
                "id": "call_abc", "type": "function",
                "function": {"name": "get_weather", "arguments": '{"location": "Tokyo"}'},
            }],
        }
        assert messages[3] == {"role": "tool", "tool_call_id": "call_abc", "content": '{"temp": 22}'}
        assert messages[4] == {"role": "user", "content": "Anything else?"}

    def test_text_waits_for_all_tool_messages(self, adapter):
        a = ToolCall(id="a", name="f")
        b = ToolCall(id="b", name="g")
        history = [
            AssistantToolCallMessage([a, b], content="Running both."),
            ToolResultMessage(ToolResult.text(a, "1"), text="note"),
            ToolResultMessage(ToolResult.text(b, "2")),
        ]

        messages = adapter.build_messages(None, history)

        assert messages[0]["content"] == "Running both."
        assert [m["role"] for m in messages] == ["assistant", "tool", "tool", "user"]

    def test_replayed_arguments_are_json_strings(self, adapter):
        call = ToolCall(id="a", name="f", arguments={"nested": {"x": [1, 2]}})

        replay = adapter.assistant_message(AssistantToolCallMessage([call]))

        assert json.loads(replay["tool_calls"][0]["function"]["arguments"]) == call.arguments

    def test_dangling_result_rejected(self, adapter):
        orphan = ToolResult("missing", "f", "text", "x")

        with pytest.raises(ToolProtocolError):
            adapter.build_messages(None, [StandardMessage("user", "hi"), ToolResultMessage(orphan)])


class TestBuildParams:
    """Request parameters."""

    def test_to_provider_basic_functionality(self, adapter):
        """Test basic to_provider functionality."""
        params = normalize_params({"temperature": 0.7, "max_tokens": 100, "stream": True})

        result = adapter.to_provider(None, [StandardMessage("user", "Hello")], params)

        assert result["messages"] == [{"role": "user", "content": "Hello"}]
        assert result["temperature"] == 0.7
        assert result["max_tokens"] == 100
        assert "stream" not in result
        assert "tools" not in result

    def test_tools_and_choice(self, adapter):
        params = normalize_params({
            "tools": [ToolDefinition(name="f")],
            "tool_choice": "required",
        })

        result = adapter.build_params(params)

        assert result["tools"] == [{"type": "function", "function": {"name": "f"}}]
        assert result["tool_choice"] == "required"

    def test_choice_without_tools_dropped(self, adapter):
        result = adapter.build_params(normalize_params({"tool_choice": "auto"}))

        assert "tool_choice" not in result

    def test_none_dropped_and_extras_merged(self, adapter):
        params = normalize_params({"temperature": None, "reasoning_effort": "low"})

        result = adapter.build_params(params)

        assert "temperature" not in result
        assert result["reasoning_effort"] == "low"


class TestStreaming:
    """Chunk folding."""

    def test_interleaved_tool_call_fragments(self, adapter):
        """index 0 and 1 arrive interleaved; both come back reassembled, in order."""
        def tool_delta(*fragments):
            return {"choices": [{"index": 0, "delta": {"tool_calls": list(fragments)}}]}

        chunks = [
            tool_delta({"index": 0, "id": "call_a", "type": "function",
                        "function": {"name": "get_weather", "arguments": '{"location": "To'}}),
            tool_delta({"index": 1, "id": "call_b", "type": "function",
                        "function": {"name": "get_time", "arguments": '{"timezone": '}}),
            tool_delta({"index": 0, "function": {"arguments": 'kyo", "unit": "C"}'}}),
            tool_delta({"index": 1, "function": {"arguments": '"Asia/Tokyo"}'}}),
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
            {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}},
        ]

        state = adapter.stream_state()
        forwarded = [state.feed(chunk) for chunk in chunks]
        result = state.finish()

        assert "".join(forwarded) == ""
        assert result.tool_calls == [
            ToolCall(id="call_a", name="get_weather", arguments={"location": "Tokyo", "unit": "C"}),
            ToolCall(id="call_b", name="get_time", arguments={"timezone": "Asia/Tokyo"}),
        ]
        assert result.finish_reason == "tool_calls"
        assert result.usage.total_tokens == 7

    def test_text_only_stream(self, adapter):
        chunks = [
            {"choices": [{"index": 0, "delta": {"content": "Hel"}}]},
            {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]},
        ]

        result = aggregate_stream_sync(chunks, adapter.stream_state())

        assert result.content == "Hello"
        assert result.tool_calls is None
        assert result.finish_reason == "stop"

    def test_each_stream_gets_fresh_state(self, adapter):
        assert adapter.stream_state() is not adapter.stream_state()


class TestStructuredOutput:
    """response_format passes through and the reply is parsed."""

    @pytest.fixture
    def params(self):
        schema = {"type": "object", "properties": {"x": {"type": "number"}}, "title": "solution"}
        return normalize_params({"response_format": json_schema_format(schema)})

    def test_response_format_sent(self, adapter, params):
        request = adapter.to_provider(None, [StandardMessage("user", "Solve x + 1 = 3")], params)

        assert request["response_format"]["type"] == "json_schema"
        assert request["response_format"]["json_schema"]["name"] == "solution"

    def test_reply_parsed(self, adapter, params):
        raw = completion({"role": "assistant", "content": '{"x": 2}'})

        result = adapter.from_provider(raw, params)

        assert result.structured_output == {"x": 2}
        assert result.content == '{"x": 2}'

    def test_plain_reply_not_parsed(self, adapter):
        raw = completion({"role": "assistant", "content": '{"x": 2}'})

        assert adapter.from_provider(raw, normalize_params({})).structured_output is None

    def test_stream(self, adapter, params):
        chunks = [
            {"choices": [{"index": 0, "delta": {"content": '{"x": '}}]},
            {"choices": [{"index": 0, "delta": {"content": "2}"}, "finish_reason": "stop"}]},
        ]

        result = aggregate_stream_sync(chunks, adapter.stream_state(params))

        assert result.structured_output == {"x": 2}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
