"""Gemini adapter for pure request/response transformations.

Targets the native ``generateContent`` API (google-genai). Requests are built
as camelCase dicts, which the SDK validates into its own types.

Gemini correlates calls and results by position, not id: ids on ToolCall are
for our bookkeeping only and never appear in outbound payloads, and results
are sent back in the order the calls were issued.
"""

from __future__ import annotations

import logging
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
    order_tool_results,
)

_logger = logging.getLogger(__name__)

THOUGHT_SIGNATURE = "thoughtSignature"

_FINISH_REASONS: dict[str, FinishReason] = {
    "FINISH_REASON_UNSPECIFIED": "error",
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "stop",
    "RECITATION": "stop",
    "LANGUAGE": "error",
    "OTHER": "error",
    "BLOCKLIST": "error",
    "PROHIBITED_CONTENT": "error",
    "MALFORMED_FUNCTION_CALL": "error",
}

# params key -> GenerateContentConfig field
_CONFIG_KEYS = {
    "temperature": "temperature",
    "top_p": "topP",
    "max_tokens": "maxOutputTokens",
    "seed": "seed",
    "presence_penalty": "presencePenalty",
    "frequency_penalty": "frequencyPenalty",
}


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _usage_from(raw: Optional[Mapping[str, Any]]) -> Optional[Usage]:
    if not raw:
        return None
    return Usage(
        prompt_tokens=raw.get("promptTokenCount") or 0,
        completion_tokens=raw.get("candidatesTokenCount") or 0,
        total_tokens=raw.get("totalTokenCount") or 0,
    )


def _candidate_parts(data: Mapping[str, Any]) -> tuple[list[dict[str, Any]], Optional[str]]:
    candidates = data.get("candidates") or []
    if not candidates:
        return [], None
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    reason = candidate.get("finishReason")
    return parts, _enum_value(reason) if reason is not None else None


def _visible_text(parts: Sequence[Mapping[str, Any]]) -> str:
    return "".join(p["text"] for p in parts if p.get("text") and not p.get("thought"))


class GeminiStreamState:
    """
    Folds ``GenerateContentResponse`` chunks into a QueryResult.

    Gemini sends each function call whole, so calls are collected as parts
    and converted once at the end.
    """

    def __init__(self, adapter: "GeminiRequestAdapter", structured: bool = False) -> None:
        self._adapter = adapter
        self._structured = structured
        self._text: list[str] = []
        self._call_parts: list[dict[str, Any]] = []
        self._finish_reason: Optional[str] = None
        self._usage: Optional[Usage] = None

    def feed(self, chunk: Any) -> str:
        data = as_wire(chunk)
        if data.get("usageMetadata"):
            self._usage = _usage_from(data["usageMetadata"])
        parts, reason = _candidate_parts(data)
        if reason:
            self._finish_reason = reason
        self._call_parts.extend(p for p in parts if p.get("functionCall"))
        text = _visible_text(parts)
        if text:
            self._text.append(text)
        return text

    def finish(self) -> QueryResult:
        calls = self._adapter.extract_tool_calls(self._call_parts)
        if calls:
            finish_reason: FinishReason = "tool_calls"
        else:
            finish_reason = _FINISH_REASONS.get(self._finish_reason or "STOP", "error")
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


class GeminiRequestAdapter:
    """Adapter for converting between the intermediate format and Gemini format."""

    # --- tools ----------------------------------------------------------------

    def convert_tool_definitions(self, tools: Sequence[ToolDefinition]) -> dict[str, Any]:
        declarations = []
        for tool in tools:
            declaration: dict[str, Any] = {"name": tool.name}
            if tool.description:
                declaration["description"] = tool.description
            if tool.parameters is not None:
                declaration["parametersJsonSchema"] = dict(tool.parameters)
            declarations.append(declaration)
        return {"functionDeclarations": declarations}

    def convert_tool_choice(self, choice: Any) -> dict[str, Any]:
        choice = normalize_tool_choice(choice)
        if isinstance(choice, NamedToolChoice):
            return {"mode": "ANY", "allowedFunctionNames": [choice.name]}
        return {"mode": {"auto": "AUTO", "none": "NONE", "required": "ANY"}[choice]}

    def extract_tool_calls(self, parts: Sequence[Any]) -> list[ToolCall]:
        """Tool calls from the ``functionCall`` parts of a candidate."""
        entries = []
        for part in parts or []:
            part = as_wire(part)
            fc = part.get("functionCall")
            if not fc:
                continue
            metadata = None
            if part.get(THOUGHT_SIGNATURE):
                metadata = {THOUGHT_SIGNATURE: part[THOUGHT_SIGNATURE]}
            arguments, error = decode_call_arguments(fc.get("name"), fc.get("args"))
            entries.append((
                fc.get("id"),
                dict(
                    name=fc.get("name") or "",
                    arguments=arguments,
                    metadata=metadata,
                    error=error,
                ),
            ))
        return build_tool_calls(entries)

    def convert_tool_result(self, result: ToolResult) -> dict[str, Any]:
        """
        A ``functionResponse`` part.

        ``response`` must be an object: a mapping ``data`` value goes through
        as is, anything else is wrapped as ``{"output": value}`` (errors as
        ``{"error": message}``). ``data`` None becomes ``{"output": None}``.
        """
        if result.kind == "data":
            if isinstance(result.value, Mapping):
                response = dict(result.value)
            else:
                response = {"output": result.value}
        elif result.kind == "text":
            response = {"output": result.value}
        elif result.kind == "error":
            response = {"error": result.value}
        else:
            raise ToolProtocolError(f"Unknown ToolResult kind: {result.kind!r}")
        return {"functionResponse": {"name": result.name, "response": response}}

    def extract_tool_result(self, part: Mapping[str, Any], kind: str = "data") -> Any:
        """
        Reverse of ``convert_tool_result``.

        A response whose only key is ``output`` is unwrapped, so a ``data``
        mapping that is itself exactly ``{"output": x}`` comes back as ``x``.
        """
        response = part["functionResponse"]["response"]
        if kind == "error":
            return response.get("error")
        if set(response) == {"output"}:
            return response["output"]
        return response

    # --- request --------------------------------------------------------------

    def assistant_message(self, message: AssistantToolCallMessage) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        if message.content:
            parts.append({"text": message.content})
        for call in message.tool_calls:
            part: dict[str, Any] = {"functionCall": {"name": call.name, "args": call.arguments}}
            if call.metadata:
                part.update(call.metadata)
            parts.append(part)
        return {"role": "model", "parts": parts}

    def build_messages(
        self, prompt: Optional[CompiledPrompt], messages: Sequence[ChatMessage] = ()
    ) -> tuple[str, list[dict[str, Any]]]:
        """Returns ``(system_instruction, contents)``."""
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        issued: list[ToolCall] = []
        results: list[ToolResult] = []
        texts: list[dict[str, Any]] = []

        def flush() -> None:
            if results:
                parts = [self.convert_tool_result(r) for r in order_tool_results(issued, results)]
                contents.append({"role": "user", "parts": parts + texts})
                results.clear()
                texts.clear()

        for msg in collect_history(prompt, messages):
            if isinstance(msg, ToolResultMessage):
                results.append(msg.result)
                if msg.text:
                    texts.append({"text": msg.text})
                continue
            if isinstance(msg, StandardMessage) and msg.role == "user" and results:
                texts.append({"text": msg.content})
                flush()
                continue
            flush()
            if isinstance(msg, AssistantToolCallMessage):
                issued = list(msg.tool_calls)
                contents.append(self.assistant_message(msg))
            elif msg.role == "system":
                system_parts.append(msg.content)
            else:
                role = "model" if msg.role == "assistant" else "user"
                contents.append({"role": role, "parts": [{"text": msg.content}]})
        flush()
        return "\n\n".join(system_parts), contents

    def build_params(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """``GenerateContentConfig`` fields, camelCase."""
        config: dict[str, Any] = {}
        for key, field_name in _CONFIG_KEYS.items():
            if params.get(key) is not None:
                config[field_name] = params[key]

        stop = params.get("stop")
        if stop:
            config["stopSequences"] = stop if isinstance(stop, list) else [stop]

        tools = params.get("tools") or []
        if tools:
            config["tools"] = [self.convert_tool_definitions(tools)]
            if params.get("tool_choice") is not None:
                config["toolConfig"] = {
                    "functionCallingConfig": self.convert_tool_choice(params["tool_choice"])
                }

        schema = output_schema(params)
        if schema is not None:
            config["responseMimeType"] = "application/json"
            if schema:
                config["responseJsonSchema"] = schema

        for key in ("user", "parallel_tool_calls"):
            if params.get(key) is not None:
                _logger.debug("Dropping %s: not supported by Gemini", key)

        config = drop_none(config)
        for k, v in (params.get("extra") or {}).items():
            config.setdefault(k, v)
        return config

    def to_provider(
        self,
        prompt: Optional[CompiledPrompt],
        messages: Sequence[ChatMessage],
        params: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Request kwargs for ``models.generate_content`` (minus model)."""
        system, contents = self.build_messages(prompt, messages)
        config = self.build_params(params)
        if system:
            config["systemInstruction"] = system
        return {"contents": contents, "config": config}

    # --- response -------------------------------------------------------------

    def from_provider(self, raw: Any, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        """Convert a ``GenerateContentResponse`` to a QueryResult."""
        data = as_wire(raw) or {}
        parts, reason = _candidate_parts(data)
        calls = self.extract_tool_calls(parts)
        if calls:
            finish_reason: FinishReason = "tool_calls"
        elif not data.get("candidates"):
            finish_reason = "error"
        else:
            finish_reason = _FINISH_REASONS.get(reason or "STOP", "error")

        content = _visible_text(parts)
        structured = None
        if output_schema(params) is not None and not calls:
            structured = parse_structured_output(content)
        return QueryResult(
            content=content,
            tool_calls=calls or None,
            finish_reason=finish_reason,
            usage=_usage_from(data.get("usageMetadata")),
            raw=raw,
            structured_output=structured,
        )

    def stream_state(self, params: Optional[Mapping[str, Any]] = None) -> GeminiStreamState:
        return GeminiStreamState(self, output_schema(params) is not None)
