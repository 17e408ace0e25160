"""OpenAI adapter for pure request/response transformations.

Also serves Ollama and other OpenAI-compatible servers.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional, Sequence

from toolwire.adapters.base import (
    as_wire,
    build_tool_calls,
    collect_history,
    decode_call_arguments,
    drop_none,
    output_schema,
    parse_structured_output,
)
from toolwire.errors import ToolProtocolError
from toolwire.response import FinishReason, QueryResult, Usage
from toolwire.stream_utils import ToolCallAccumulator
from toolwire.types import (
    AssistantToolCallMessage,
    ChatMessage,
    CompiledPrompt,
    NamedToolChoice,
    StandardMessage,
    ToolCall,
    ToolDefinition,
    ToolResult,
    ToolResultMessage,
    normalize_tool_choice,
)

ERROR_PREFIX = "Error: "

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "stop",
}


def _usage_from(raw: Optional[Mapping[str, Any]]) -> Optional[Usage]:
    if not raw:
        return None
    return Usage(
        prompt_tokens=raw.get("prompt_tokens") or 0,
        completion_tokens=raw.get("completion_tokens") or 0,
        total_tokens=raw.get("total_tokens") or 0,
    )


class OpenAIStreamState:
    """Folds ``ChatCompletionChunk``s into a QueryResult. One per stream."""

    def __init__(self, structured: bool = False) -> None:
        self._structured = structured
        self._text: list[str] = []
        self._calls = ToolCallAccumulator()
        self._finish_reason: Optional[str] = None
        self._usage: Optional[Usage] = None

    def feed(self, chunk: Any) -> str:
        data = as_wire(chunk)
        if data.get("usage"):
            self._usage = _usage_from(data["usage"])

        choices = data.get("choices") or []
        if not choices:
            return ""
        choice = choices[0]
        if choice.get("finish_reason"):
            self._finish_reason = choice["finish_reason"]

        delta = choice.get("delta") or {}
        for fragment in delta.get("tool_calls") or []:
            function = fragment.get("function") or {}
            self._calls.add_fragment(
                fragment.get("index", 0),
                id=fragment.get("id"),
                name=function.get("name"),
                arguments=function.get("arguments"),
            )

        text = delta.get("content") or ""
        if text:
            self._text.append(text)
        return text

    def finish(self) -> QueryResult:
        calls = self._calls.finalize()
        if calls:
            finish_reason: FinishReason = "tool_calls"
        else:
            finish_reason = _FINISH_REASONS.get(self._finish_reason or "stop", "stop")
        content = "".join(self._text)
        structured = None
        if self._structured and not calls:
            structured = parse_structured_output(content)
        return QueryResult(
            content=content,
            tool_calls=calls or None,
            finish_reason=finish_reason,
            usage=self._usage,
            structured_output=structured,
        )


class OpenAIRequestAdapter:
    """Adapter for converting between the intermediate format and OpenAI format."""

    # --- tools ----------------------------------------------------------------

    def convert_tool_definitions(self, tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
        converted = []
        for tool in tools:
            function: dict[str, Any] = {"name": tool.name}
            if tool.description is not None:
                function["description"] = tool.description
            if tool.parameters is not None:
                function["parameters"] = dict(tool.parameters)
            if tool.strict is not None:
                function["strict"] = tool.strict
            converted.append({"type": "function", "function": function})
        return converted

    def convert_tool_choice(self, choice: Any) -> Any:
        choice = normalize_tool_choice(choice)
        if isinstance(choice, NamedToolChoice):
            return {"type": "function", "function": {"name": choice.name}}
        return choice

    def extract_tool_calls(self, message: Any) -> list[ToolCall]:
        """
        Tool calls of one assistant message (``choices[0].message``).

        Argument strings that are not valid JSON give a ToolCall with
        ``error`` set rather than dropping the call.
        """
        return self._message_tool_calls(message)

    def _message_tool_calls(self, message: Any) -> list[ToolCall]:
        data = as_wire(message) or {}
        entries = []
        for tc in data.get("tool_calls") or []:
            function = tc.get("function") or {}
            arguments, error = decode_call_arguments(function.get("name"), function.get("arguments"))
            entries.append((
                tc.get("id"),
                dict(
                    name=function.get("name") or "",
                    arguments=arguments,
                    error=error,
                ),
            ))
        return build_tool_calls(entries)

    def convert_tool_result(self, result: ToolResult) -> dict[str, Any]:
        if result.kind == "text":
            content = result.value
        elif result.kind == "data":
            content = json.dumps(result.value, ensure_ascii=False)
        elif result.kind == "error":
            content = ERROR_PREFIX + result.value
        else:
            raise ToolProtocolError(f"Unknown ToolResult kind: {result.kind!r}")
        return {"role": "tool", "tool_call_id": result.tool_call_id, "content": content}

    def extract_tool_result(self, message: Mapping[str, Any], kind: str = "data") -> Any:
        """Reverse of ``convert_tool_result`` for a ``role: tool`` message."""
        content = message.get("content") or ""
        if kind == "data":
            return json.loads(content)
        if kind == "error" and content.startswith(ERROR_PREFIX):
            return content[len(ERROR_PREFIX):]
        return content

    # --- request --------------------------------------------------------------

    def assistant_message(self, message: AssistantToolCallMessage) -> dict[str, Any]:
        """Replay of an assistant turn that issued tool calls."""
        return {
            "role": "assistant",
            # content must be null rather than "" when only tool calls are present
            "content": message.content or None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
                }
                for call in message.tool_calls
            ],
        }

    def build_messages(
        self, prompt: Optional[CompiledPrompt], messages: Sequence[ChatMessage] = ()
    ) -> list[dict[str, Any]]:
        openai_messages: list[dict[str, Any]] = []
        # Free text sent with tool results must wait until the run of tool messages ends
        pending_text: list[str] = []

        def flush() -> None:
            if pending_text:
                openai_messages.append({"role": "user", "content": "\n\n".join(pending_text)})
                pending_text.clear()

        for msg in collect_history(prompt, messages):
            if isinstance(msg, ToolResultMessage):
                openai_messages.append(self.convert_tool_result(msg.result))
                if msg.text:
                    pending_text.append(msg.text)
                continue
            flush()
            if isinstance(msg, AssistantToolCallMessage):
                openai_messages.append(self.assistant_message(msg))
            elif isinstance(msg, StandardMessage):
                openai_messages.append({"role": msg.role, "content": msg.content})
        flush()
        return openai_messages

    def build_params(self, params: Mapping[str, Any]) -> dict[str, Any]:
        base_params = dict(params)
        base_params.pop("stream", None)
        extras = base_params.pop("extra", None) or {}

        tools = base_params.pop("tools", None) or []
        tool_choice = base_params.pop("tool_choice", None)
        if tools:
            base_params["tools"] = self.convert_tool_definitions(tools)
            if tool_choice is not None:
                base_params["tool_choice"] = self.convert_tool_choice(tool_choice)

        base_params = drop_none(base_params)
        for k, v in extras.items():
            base_params.setdefault(k, v)
        return base_params

    def to_provider(
        self,
        prompt: Optional[CompiledPrompt],
        messages: Sequence[ChatMessage],
        params: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Request kwargs for ``chat.completions.create`` (minus model/stream)."""
        return {"messages": self.build_messages(prompt, messages), **self.build_params(params)}

    # --- response -------------------------------------------------------------

    def from_provider(self, raw: Any, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        """Convert a ``ChatCompletion`` to a QueryResult."""
        data = as_wire(raw) or {}
        choices = data.get("choices") or []
        if not choices:
            return QueryResult(content="", finish_reason="error", usage=_usage_from(data.get("usage")), raw=raw)

        choice = choices[0]
        message = choice.get("message") or {}
        calls = self._message_tool_calls(message)
        if calls:
            finish_reason: FinishReason = "tool_calls"
        else:
            finish_reason = _FINISH_REASONS.get(choice.get("finish_reason") or "stop", "stop")

        content = message.get("content") or ""
        structured = None
        if output_schema(params) is not None and not calls:
            structured = parse_structured_output(content)
        return QueryResult(
            content=content,
            tool_calls=calls or None,
            finish_reason=finish_reason,
            usage=_usage_from(data.get("usage")),
            raw=raw,
            structured_output=structured,
        )

    def stream_state(self, params: Optional[Mapping[str, Any]] = None) -> OpenAIStreamState:
        return OpenAIStreamState(output_schema(params) is not None)
