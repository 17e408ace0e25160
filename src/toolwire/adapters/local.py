"""
Adapter for local inference runtimes served over an OpenAI-compatible API
(mlx-lm, llama.cpp, vLLM, LM Studio).

Most of these models have no structured tool channel. When the runtime
declares the model's tool-call delimiters, tools are sent natively and the
chat template renders them; otherwise the tool list is injected into the
system instructions as text. Either way the reply comes back as text and
calls are recovered with ``parse_tool_calls``. Tool results go back as user
text.

``tool_choice`` "none" suppresses tools entirely. "required" and a named
choice cannot be enforced on free text and behave like "auto".
"""

from __future__ import annotations

import dataclasses
import json
from typing import Any, Mapping, Optional, Sequence

from toolwire.adapters.base import (
    collect_history,
    json_instruction,
    output_schema,
    parse_structured_output,
)
from toolwire.adapters.openai import ERROR_PREFIX, OpenAIRequestAdapter, OpenAIStreamState
from toolwire.errors import ToolProtocolError
from toolwire.response import QueryResult
from toolwire.tool_parser import (
    RuntimeHints,
    format_tool_call_as_text,
    format_tool_definitions_as_text,
    parse_tool_calls,
)
from toolwire.types import (
    AssistantToolCallMessage,
    ChatMessage,
    CompiledPrompt,
    StandardMessage,
    ToolCall,
    ToolDefinition,
    ToolResult,
    ToolResultMessage,
    normalize_tool_choice,
)


def _parses_tools(params: Optional[Mapping[str, Any]]) -> bool:
    if not params or not params.get("tools"):
        return False
    choice = params.get("tool_choice")
    return choice is None or normalize_tool_choice(choice) != "none"


class LocalStreamState(OpenAIStreamState):
    """OpenAI chunk folding, then a free-text parse of the whole reply."""

    def __init__(self, hints: RuntimeHints, parse: bool, structured: bool = False) -> None:
        super().__init__()
        self._hints = hints
        self._parse = parse
        self._structured_reply = structured

    def finish(self) -> QueryResult:
        result = super().finish()
        if self._parse and not result.tool_calls:
            parsed = parse_tool_calls(result.content, self._hints)
            if parsed.tool_calls:
                result.content = parsed.content
                result.tool_calls = parsed.tool_calls
                result.finish_reason = "tool_calls"
        if self._structured_reply and not result.tool_calls:
            result.structured_output = parse_structured_output(result.content)
        return result


class LocalRequestAdapter(OpenAIRequestAdapter):
    """Adapter for local runtimes, driven by the runtime's reported hints."""

    def __init__(self, hints: Optional[RuntimeHints] = None) -> None:
        self.hints = hints or RuntimeHints()

    # --- tools ----------------------------------------------------------------

    def tools_as_text(self, tools: Sequence[ToolDefinition]) -> str:
        return format_tool_definitions_as_text(tools, self.hints.special_tokens, self.hints)

    def extract_tool_calls(self, text: str) -> list[ToolCall]:
        """Tool calls found in the model's raw text."""
        return parse_tool_calls(text, self.hints).tool_calls

    def _result_body(self, result: ToolResult) -> str:
        if result.kind == "text":
            return result.value
        if result.kind == "data":
            return json.dumps(result.value, ensure_ascii=False)
        if result.kind == "error":
            return ERROR_PREFIX + result.value
        raise ToolProtocolError(f"Unknown ToolResult kind: {result.kind!r}")

    def convert_tool_result(self, result: ToolResult) -> str:
        """
        The result as user text.

        Wrapped in the runtime's response delimiters when it declares them,
        otherwise headed by a ``[name result]`` line.
        """
        body = self._result_body(result)
        if self.hints.response_start and self.hints.response_end:
            return f"{self.hints.response_start}\n{body}\n{self.hints.response_end}"
        return f"[{result.name} result]\n{body}"

    def extract_tool_result(self, text: str, kind: str = "data") -> Any:
        """Reverse of ``convert_tool_result``."""
        start, end = self.hints.response_start, self.hints.response_end
        if start and end and text.startswith(start) and text.endswith(end):
            body = text[len(start):-len(end)].strip("\n")
        else:
            body = text.split("\n", 1)[1] if "\n" in text else ""
        if kind == "data":
            return json.loads(body)
        if kind == "error" and body.startswith(ERROR_PREFIX):
            return body[len(ERROR_PREFIX):]
        return body

    # --- request --------------------------------------------------------------

    def assistant_message(self, message: AssistantToolCallMessage) -> dict[str, Any]:
        """Replay a tool-calling turn in the syntax the model is asked to use."""
        calls = [
            format_tool_call_as_text(call, self.hints.special_tokens, self.hints)
            for call in message.tool_calls
        ]
        text = "\n".join(filter(None, [message.content, *calls]))
        return {"role": "assistant", "content": text}

    def inject_tools(
        self, prompt: Optional[CompiledPrompt], tools: Sequence[ToolDefinition]
    ) -> CompiledPrompt:
        """Append the tool list to the prompt's instructions."""
        return self.append_instruction(prompt, self.tools_as_text(tools))

    def append_instruction(self, prompt: Optional[CompiledPrompt], text: str) -> CompiledPrompt:
        element = {"type": "text", "content": text}
        if prompt is None:
            return CompiledPrompt(instructions=[element])
        return dataclasses.replace(prompt, instructions=[*prompt.instructions, element])

    def build_messages(
        self, prompt: Optional[CompiledPrompt], messages: Sequence[ChatMessage] = ()
    ) -> list[dict[str, Any]]:
        local_messages: list[dict[str, Any]] = []
        results: list[str] = []

        def flush() -> None:
            if results:
                local_messages.append({"role": "user", "content": "\n\n".join(results)})
                results.clear()

        for msg in collect_history(prompt, messages):
            if isinstance(msg, ToolResultMessage):
                results.append(self.convert_tool_result(msg.result))
                if msg.text:
                    results.append(msg.text)
                continue
            if isinstance(msg, StandardMessage) and msg.role == "user" and results:
                results.append(msg.content)
                flush()
                continue
            flush()
            if isinstance(msg, AssistantToolCallMessage):
                local_messages.append(self.assistant_message(msg))
            else:
                local_messages.append({"role": msg.role, "content": msg.content})
        flush()
        return local_messages

    def build_params(self, params: Mapping[str, Any]) -> dict[str, Any]:
        base_params = dict(params)
        if not self.hints.has_native_tool_support or not _parses_tools(params):
            base_params.pop("tools", None)
        # Not enforceable on free text
        base_params.pop("tool_choice", None)
        base_params.pop("parallel_tool_calls", None)
        # Asked for in the instructions instead
        base_params.pop("response_format", None)
        return super().build_params(base_params)

    def to_provider(
        self,
        prompt: Optional[CompiledPrompt],
        messages: Sequence[ChatMessage],
        params: Mapping[str, Any],
    ) -> dict[str, Any]:
        if _parses_tools(params) and not self.hints.has_native_tool_support:
            prompt = self.inject_tools(prompt, params["tools"])
        schema = output_schema(params)
        if schema is not None:
            prompt = self.append_instruction(prompt, json_instruction(schema))
        return {"messages": self.build_messages(prompt, messages), **self.build_params(params)}

    # --- response -------------------------------------------------------------

    def from_provider(self, raw: Any, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        result = super().from_provider(raw)
        if _parses_tools(params) and not result.tool_calls:
            parsed = parse_tool_calls(result.content, self.hints)
            if parsed.tool_calls:
                result.content = parsed.content
                result.tool_calls = parsed.tool_calls
                result.finish_reason = "tool_calls"
        if output_schema(params) is not None and not result.tool_calls:
            result.structured_output = parse_structured_output(result.content)
        return result

    def stream_state(self, params: Optional[Mapping[str, Any]] = None) -> LocalStreamState:
        return LocalStreamState(self.hints, _parses_tools(params), output_schema(params) is not None)
