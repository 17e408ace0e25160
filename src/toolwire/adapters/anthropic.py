"""Anthropic adapter for pure request/response transformations."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional, Sequence

from toolwire.adapters.base import (
    as_wire,
    build_tool_calls,
    collect_history,
    decode_call_arguments,
    drop_none,
    json_instruction,
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

_logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "refusal": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}

# Accepted by OpenAI-style APIs only
_UNSUPPORTED_KEYS = ("frequency_penalty", "presence_penalty", "seed")


def ephemeral(text: str) -> dict[str, Any]:
    """Return a text block marked for Anthropic's 5-minute *ephemeral* prompt cache."""
    return {
        "type": "text",
        "text": text,
        "cache_control": {"type": "ephemeral"},
    }


def _usage_from(raw: Optional[Mapping[str, Any]]) -> Optional[Usage]:
    if not raw:
        return None
    prompt = raw.get("input_tokens") or 0
    completion = raw.get("output_tokens") or 0
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


def _block_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return "".join(
        block.get("text", "") for block in content or [] if block.get("type") == "text"
    )


class AnthropicStreamState:
    """Folds raw message-stream events into a QueryResult. One per stream."""

    def __init__(self, structured: bool = False) -> None:
        self._structured = structured
        self._text: list[str] = []
        self._calls = ToolCallAccumulator()
        self._stop_reason: Optional[str] = None
        self._usage: Optional[Usage] = None

    def feed(self, event: Any) -> str:
        data = as_wire(event)
        etype = data.get("type")

        if etype == "message_start":
            self._usage = _usage_from((data.get("message") or {}).get("usage"))
        elif etype == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                initial = block.get("input")
                self._calls.add_fragment(
                    data.get("index", 0),
                    id=block.get("id"),
                    name=block.get("name"),
                    arguments=json.dumps(initial) if initial else None,
                )
            elif block.get("type") == "text" and block.get("text"):
                self._text.append(block["text"])
                return block["text"]
        elif etype == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                text = delta.get("text") or ""
                self._text.append(text)
                return text
            if delta.get("type") == "input_json_delta":
                self._calls.add_fragment(data.get("index", 0), arguments=delta.get("partial_json"))
        elif etype == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                self._stop_reason = delta["stop_reason"]
            usage = data.get("usage") or {}
            if usage.get("output_tokens") is not None:
                self._usage = self._usage or Usage()
                self._usage.completion_tokens = usage["output_tokens"]
                self._usage.total_tokens = self._usage.prompt_tokens + usage["output_tokens"]
        return ""

    def finish(self) -> QueryResult:
        calls = self._calls.finalize()
        if calls:
            finish_reason: FinishReason = "tool_calls"
        else:
            finish_reason = _STOP_REASONS.get(self._stop_reason or "end_turn", "stop")
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


class AnthropicRequestAdapter:
    """Adapter for converting between the intermediate format and Anthropic format."""

    # --- tools ----------------------------------------------------------------

    def convert_tool_definitions(self, tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": {"type": "object", **(tool.parameters or {})},
            }
            for tool in tools
        ]

    def convert_tool_choice(self, choice: Any) -> dict[str, Any]:
        choice = normalize_tool_choice(choice)
        if isinstance(choice, NamedToolChoice):
            return {"type": "tool", "name": choice.name}
        if choice == "required":
            return {"type": "any"}
        return {"type": choice}

    def extract_tool_calls(self, content: Sequence[Any]) -> list[ToolCall]:
        """Tool calls from the ``tool_use`` blocks of a message's content."""
        entries = []
        for block in content or []:
            block = as_wire(block)
            if block.get("type") != "tool_use":
                continue
            arguments, error = decode_call_arguments(block.get("name"), block.get("input"))
            entries.append((
                block.get("id"),
                dict(
                    name=block.get("name") or "",
                    arguments=arguments,
                    error=error,
                ),
            ))
        return build_tool_calls(entries)

    def convert_tool_result(self, result: ToolResult) -> dict[str, Any]:
        """A ``tool_result`` content block."""
        block: dict[str, Any] = {"type": "tool_result", "tool_use_id": result.tool_call_id}
        if result.kind == "text":
            block["content"] = result.value
        elif result.kind == "data":
            block["content"] = json.dumps(result.value, ensure_ascii=False)
        elif result.kind == "error":
            block["content"] = result.value
            block["is_error"] = True
        else:
            raise ToolProtocolError(f"Unknown ToolResult kind: {result.kind!r}")
        return block

    def extract_tool_result(self, block: Mapping[str, Any], kind: str = "data") -> Any:
        """Reverse of ``convert_tool_result``."""
        content = _block_text(block.get("content"))
        if kind == "data":
            return json.loads(content)
        return content

    # --- request --------------------------------------------------------------

    def assistant_message(self, message: AssistantToolCallMessage) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        if message.content:
            content.append({"type": "text", "text": message.content})
        content.extend(
            {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
            for call in message.tool_calls
        )
        return {"role": "assistant", "content": content}

    def build_messages(
        self, prompt: Optional[CompiledPrompt], messages: Sequence[ChatMessage] = ()
    ) -> tuple[str, list[dict[str, Any]]]:
        """
        Returns ``(system, messages)``.

        Consecutive tool results become one user message. Its ``tool_result``
        blocks come first, any accompanying text after, since the API rejects
        a result turn that starts with text.
        """
        system_parts: list[str] = []
        anthropic_messages: list[dict[str, Any]] = []
        results: list[dict[str, Any]] = []
        texts: list[dict[str, Any]] = []

        def flush() -> None:
            if results:
                anthropic_messages.append({"role": "user", "content": results + texts})
                results.clear()
                texts.clear()

        for msg in collect_history(prompt, messages):
            if isinstance(msg, ToolResultMessage):
                results.append(self.convert_tool_result(msg.result))
                if msg.text:
                    texts.append({"type": "text", "text": msg.text})
                continue
            if isinstance(msg, StandardMessage) and msg.role == "user" and results:
                # Fold into the result turn to keep user/assistant alternation
                texts.append({"type": "text", "text": msg.content})
                flush()
                continue
            flush()
            if isinstance(msg, AssistantToolCallMessage):
                anthropic_messages.append(self.assistant_message(msg))
            elif msg.role == "system":
                system_parts.append(msg.content)
            else:
                anthropic_messages.append({"role": msg.role, "content": msg.content})
        flush()
        return "\n\n".join(system_parts), anthropic_messages

    def build_params(self, params: Mapping[str, Any]) -> dict[str, Any]:
        base_params = dict(params)
        base_params.pop("stream", None)
        extras = base_params.pop("extra", None) or {}
        # No native JSON mode; to_provider asks for it in the system prompt
        base_params.pop("response_format", None)

        for key in _UNSUPPORTED_KEYS:
            if base_params.pop(key, None) is not None:
                _logger.debug("Dropping %s: not supported by Anthropic", key)

        if base_params.get("max_tokens") is None:
            base_params["max_tokens"] = DEFAULT_MAX_TOKENS

        stop = base_params.pop("stop", None)
        if stop:
            base_params["stop_sequences"] = stop if isinstance(stop, list) else [stop]

        user = base_params.pop("user", None)
        if user:
            base_params["metadata"] = {"user_id": user}

        tools = base_params.pop("tools", None) or []
        tool_choice = base_params.pop("tool_choice", None)
        parallel = base_params.pop("parallel_tool_calls", None)
        if tools:
            base_params["tools"] = self.convert_tool_definitions(tools)
            if tool_choice is not None or parallel is False:
                choice = self.convert_tool_choice(tool_choice or "auto")
                if parallel is False and choice["type"] != "none":
                    choice["disable_parallel_tool_use"] = True
                base_params["tool_choice"] = choice

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
        """Request kwargs for ``messages.create`` (minus model/stream)."""
        system, anthropic_messages = self.build_messages(prompt, messages)
        request: dict[str, Any] = {"messages": anthropic_messages, **self.build_params(params)}
        schema = output_schema(params)
        if schema is not None:
            system = "\n\n".join(filter(None, [system, json_instruction(schema)]))
        if system:
            request["system"] = system
        return request

    # --- response -------------------------------------------------------------

    def from_provider(self, raw: Any, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        """Convert a ``Message`` to a QueryResult."""
        data = as_wire(raw) or {}
        content = data.get("content") or []
        calls = self.extract_tool_calls(content)
        if calls:
            finish_reason: FinishReason = "tool_calls"
        else:
            finish_reason = _STOP_REASONS.get(data.get("stop_reason") or "end_turn", "stop")

        text = _block_text(content)
        structured = None
        if output_schema(params) is not None and not calls:
            structured = parse_structured_output(text)
        return QueryResult(
            content=text,
            tool_calls=calls or None,
            finish_reason=finish_reason,
            usage=_usage_from(data.get("usage")),
            raw=raw,
            structured_output=structured,
        )

    def stream_state(self, params: Optional[Mapping[str, Any]] = None) -> AnthropicStreamState:
        return AnthropicStreamState(output_schema(params) is not None)
