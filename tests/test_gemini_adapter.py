"""Tests for the Gemini request adapter."""

import json

import pytest

from toolwire.adapters.gemini import GeminiRequestAdapter
from toolwire.params import json_schema_format, normalize_params
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
    return GeminiRequestAdapter()


@pytest.fixture
def weather_call():
    return ToolCall(id="x", name="get_weather", arguments={"location": "Rome"})


def response(parts, finish_reason="STOP", usage=None):
    data = {"candidates": [{"content": {"role": "model", "parts": parts}, "finishReason": finish_reason}]}
    if usage:
        data["usageMetadata"] = usage
    return data


class TestToolResultWrapping:
    """functionResponse payloads must be objects."""

    def test_mapping_data_unwrapped(self, adapter, weather_call):
        part = adapter.convert_tool_result(
            ToolResult("x", "get_weather", "data", {"temp": 22, "condition": "sunny"})
        )

        assert part == {"functionResponse": {"name": "get_weather", "response": {"temp": 22, "condition": "sunny"}}}

    def test_string_data_wrapped(self, adapter):
        part = adapter.convert_tool_result(ToolResult("x", "get_weather", "data", "sunny"))

        assert part["functionResponse"]["response"] == {"output": "sunny"}

    @pytest.mark.parametrize("value", [[1, 2], 3, True, None])
    def test_non_mapping_data_wrapped(self, adapter, weather_call, value):
        part = adapter.convert_tool_result(ToolResult.data(weather_call, value))

        assert part["functionResponse"]["response"] == {"output": value}

    def test_text_and_error(self, adapter, weather_call):
        text = adapter.convert_tool_result(ToolResult.text(weather_call, "warm"))
        error = adapter.convert_tool_result(ToolResult.error(weather_call, "no such city"))

        assert text["functionResponse"]["response"] == {"output": "warm"}
        assert error["functionResponse"]["response"] == {"error": "no such city"}
        assert adapter.extract_tool_result(error, kind="error") == "no such city"

    @pytest.mark.parametrize(
        "value", [{"temp": 22}, {}, [1, {"a": 2}], 0, 2.5, False, None, "sunny", ""]
    )
    def test_data_round_trip(self, adapter, weather_call, value):
        part = adapter.convert_tool_result(ToolResult.data(weather_call, value))

        assert adapter.extract_tool_result(part) == value

    def test_bare_output_mapping_unwraps(self, adapter, weather_call):
        """A data mapping shaped like the wrapper reads back as its inner value."""
        part = adapter.convert_tool_result(ToolResult.data(weather_call, {"output": 5}))

        assert part["functionResponse"]["response"] == {"output": 5}
        assert adapter.extract_tool_result(part) == 5

    def test_no_id_in_result(self, adapter, weather_call):
        part = adapter.convert_tool_result(ToolResult.text(weather_call, "warm"))

        assert "id" not in part["functionResponse"]


class TestToolConversion:
    """Definitions and choices."""

    def test_definitions_wrapped_once(self, adapter):
        tools = [
            ToolDefinition(name="a", description="A", parameters={"type": "object"}),
            ToolDefinition(name="b"),
        ]

        assert adapter.convert_tool_definitions(tools) == {
            "functionDeclarations": [
                {"name": "a", "description": "A", "parametersJsonSchema": {"type": "object"}},
                {"name": "b"},
            ]
        }

    @pytest.mark.parametrize(
        "choice, expected",
        [
            ("auto", {"mode": "AUTO"}),
            ("none", {"mode": "NONE"}),
            ("required", {"mode": "ANY"}),
            (NamedToolChoice("get_weather"), {"mode": "ANY", "allowedFunctionNames": ["get_weather"]}),
        ],
    )
    def test_choice(self, adapter, choice, expected):
        assert adapter.convert_tool_choice(choice) == expected

    def test_config(self, adapter):
        params = normalize_params({
            "temperature": 0.2,
            "max_tokens": 256,
            "stop": "END",
            "tools": [ToolDefinition(name="a")],
            "tool_choice": "required",
            "thinkingConfig": {"thinkingBudget": 0},
        })

        config = adapter.build_params(params)

        assert config == {
            "temperature": 0.2,
            "maxOutputTokens": 256,
            "stopSequences": ["END"],
            "tools": [{"functionDeclarations": [{"name": "a"}]}],
            "toolConfig": {"functionCallingConfig": {"mode": "ANY"}},
            "thinkingConfig": {"thinkingBudget": 0},
        }


class TestBuildMessages:
    """History conversion, ordering and signatures."""

    def test_results_follow_call_order(self, adapter):
        first = ToolCall(id="call_0", name="get_weather", arguments={"location": "Rome"})
        second = ToolCall(id="call_1", name="get_time", arguments={"tz": "CET"})
        history = [
            StandardMessage("user", "Weather and time in Rome?"),
            AssistantToolCallMessage([first, second]),
            # Finished in reverse order
            ToolResultMessage(ToolResult.text(second, "15:00")),
            ToolResultMessage(ToolResult.text(first, "sunny")),
        ]

        _, contents = adapter.build_messages(None, history)

        names = [p["functionResponse"]["name"] for p in contents[-1]["parts"]]
        assert names == ["get_weather", "get_time"]
        assert contents[-1]["role"] == "user"

    def test_ids_never_sent(self, adapter):
        call = ToolCall(id="call_secret_7", name="get_weather", arguments={})
        history = [AssistantToolCallMessage([call]), ToolResultMessage(ToolResult.data(call, {"ok": True}))]

        _, contents = adapter.build_messages(None, history)

        assert "call_secret_7" not in json.dumps(contents)

    def test_roles_and_system(self, adapter):
        prompt = CompiledPrompt(instructions=["Be brief."], data=["Hi"])
        history = [StandardMessage("assistant", "Hello!"), StandardMessage("user", "Bye")]

        request = adapter.to_provider(prompt, history, normalize_params({}))

        assert request["config"]["systemInstruction"] == "Be brief."
        assert [c["role"] for c in request["contents"]] == ["user", "model", "user"]
        assert request["contents"][1]["parts"] == [{"text": "Hello!"}]

    def test_thought_signature_round_trip(self, adapter):
        raw = response([
            {"functionCall": {"name": "get_weather", "args": {"location": "Rome"}}, "thoughtSignature": "c2ln"},
        ])

        result = adapter.from_provider(raw)
        replay = adapter.assistant_message(result.assistant_message())

        assert result.tool_calls[0].metadata == {"thoughtSignature": "c2ln"}
        assert replay == {
            "role": "model",
            "parts": [{"functionCall": {"name": "get_weather", "args": {"location": "Rome"}}, "thoughtSignature": "c2ln"}],
        }


class TestFromProvider:
    """Responses and stream chunks."""

    def test_function_calls(self, adapter):
        raw = response(
            [
                {"text": "Let me check."},
                {"functionCall": {"name": "get_weather", "args": {"location": "Rome"}}},
                {"functionCall": {"name": "get_time", "args": {}}},
            ],
            usage={"promptTokenCount": 4, "candidatesTokenCount": 6, "totalTokenCount": 10},
        )

        result = adapter.from_provider(raw)

        assert result.content == "Let me check."
        assert result.finish_reason == "tool_calls"
        assert [(c.id, c.name) for c in result.tool_calls] == [("call_0", "get_weather"), ("call_1", "get_time")]
        assert result.usage.total_tokens == 10

    def test_unrepresentable_args_flagged(self, adapter):
        raw = response([{"functionCall": {"name": "scale", "args": {"by": float("nan")}}}])

        [call] = adapter.from_provider(raw).tool_calls

        assert call.error is not None
        assert call.arguments == {}

    def test_thought_parts_hidden(self, adapter):
        raw = response([{"text": "thinking...", "thought": True}, {"text": "Answer"}])

        assert adapter.from_provider(raw).content == "Answer"

    @pytest.mark.parametrize(
        "reason, expected",
        [("STOP", "stop"), ("MAX_TOKENS", "length"), ("SAFETY", "stop"), ("MALFORMED_FUNCTION_CALL", "error")],
    )
    def test_finish_reasons(self, adapter, reason, expected):
        assert adapter.from_provider(response([{"text": "x"}], reason)).finish_reason == expected

    def test_no_candidates(self, adapter):
        result = adapter.from_provider({"promptFeedback": {"blockReason": "SAFETY"}})

        assert result.content == ""
        assert result.finish_reason == "error"

    def test_stream(self, adapter):
        chunks = [
            response([{"text": "Check"}], finish_reason=None),
            response([{"text": "ing."}], finish_reason=None),
            response([{"functionCall": {"name": "get_weather", "args": {"location": "Rome"}}}]),
        ]

        state = adapter.stream_state()
        text = "".join(state.feed(chunk) for chunk in chunks)
        result = state.finish()

        assert text == "Checking."
        assert result.tool_calls == [ToolCall(id="call_0", name="get_weather", arguments={"location": "Rome"})]
        assert result.finish_reason == "tool_calls"

    @pytest.mark.parametrize(
        "provider_ids, expected",
        [
            (["call_1", None], ["call_1", "call_0"]),
            ([None, "call_0"], ["call_1", "call_0"]),
        ],
    )
    def test_synthesized_ids_skip_provider_ids(self, adapter, provider_ids, expected):
        parts = []
        for call_id in provider_ids:
            call = {"name": "get_weather", "args": {}}
            if call_id:
                call["id"] = call_id
            parts.append({"functionCall": call})

        assert [c.id for c in adapter.extract_tool_calls(parts)] == expected


class TestStructuredOutput:
    """JSON mode and schema-constrained replies."""

    SCHEMA = {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]}

    def test_config(self, adapter):
        params = normalize_params({"response_format": json_schema_format(self.SCHEMA)})

        config = adapter.build_params(params)

        assert config["responseMimeType"] == "application/json"
        assert config["responseJsonSchema"] == self.SCHEMA
        assert "response_format" not in config

    def test_json_mode_without_schema(self, adapter):
        config = adapter.build_params(normalize_params({"response_format": {"type": "json_object"}}))

        assert config["responseMimeType"] == "application/json"
        assert "responseJsonSchema" not in config

    def test_reply_parsed(self, adapter):
        params = normalize_params({"response_format": json_schema_format(self.SCHEMA)})

        result = adapter.from_provider(response([{"text": '{"city": "Rome"}'}]), params)

        assert result.structured_output == {"city": "Rome"}

    def test_stream_reply_parsed(self, adapter):
        params = normalize_params({"response_format": json_schema_format(self.SCHEMA)})
        state = adapter.stream_state(params)

        state.feed(response([{"text": '{"city": '}], finish_reason=None))
        state.feed(response([{"text": '"Rome"}'}]))

        assert state.finish().structured_output == {"city": "Rome"}

    def test_unparseable_reply(self, adapter):
        params = normalize_params({"response_format": {"type": "json_object"}})

        result = adapter.from_provider(response([{"text": "no json here"}]), params)

        assert result.structured_output is None
        assert result.content == "no json here"
