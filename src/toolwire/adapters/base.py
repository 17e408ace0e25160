"""Helpers shared by the request adapters."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping, Optional, Sequence

from toolwire.stream_utils import decode_arguments
from toolwire.types import ChatMessage, CompiledPrompt, prompt_to_messages, validate_history
from toolwire.types.tool import ToolCall, reject_json_constant, strict_json_loads, unique_call_ids

__all__ = [
    "as_wire",
    "collect_history",
    "drop_none",
    "build_tool_calls",
    "decode_call_arguments",
    "output_schema",
    "json_instruction",
    "parse_structured_output",
]

_logger = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n?```", re.DOTALL)
_JSON_START_RE = re.compile(r"[{\[]")


def as_wire(raw: Any) -> Any:
    """
    Return *raw* in its wire (JSON-like) shape.

    SDK responses are pydantic models; plain dicts are already wire-shaped.
    """
    if raw is None or isinstance(raw, (dict, list, str, int, float, bool)):
        return raw
    dump = getattr(raw, "model_dump", None)
    if dump is not None:
        return dump(by_alias=True, exclude_none=True)
    return raw


def collect_history(
    prompt: Optional[CompiledPrompt], messages: Sequence[ChatMessage] = ()
) -> list[ChatMessage]:
    """Prompt messages followed by prior turns, validated as one history."""
    history = prompt_to_messages(prompt) if prompt is not None else []
    history.extend(messages)
    validate_history(history)
    return history


def drop_none(params: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


def build_tool_calls(entries: Sequence[tuple[Optional[str], dict[str, Any]]]) -> list[ToolCall]:
    """
    ToolCalls from ``(provider_id, fields)`` pairs of one response.

    Missing and repeated ids are replaced so every call id is unique.
    """
    ids = unique_call_ids(provider_id for provider_id, _ in entries)
    return [ToolCall(id=call_id, **fields) for call_id, (_, fields) in zip(ids, entries)]


def decode_call_arguments(name: str, raw: Any) -> tuple[dict[str, Any], Optional[str]]:
    """Arguments for a ToolCall, or ``({}, error)`` when *raw* can't be decoded."""
    try:
        return decode_arguments(raw), None
    except ValueError as exc:
        _logger.warning("Malformed arguments for tool call %s: %.200r", name, raw)
        return {}, f"Invalid tool call arguments: {exc}"


def output_schema(params: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
    """
    JSON schema asked for by the ``response_format`` param.

    ``{}`` for plain JSON mode, None when the reply is free text.
    """
    response_format = (params or {}).get("response_format")
    if not isinstance(response_format, Mapping):
        return None
    if response_format.get("type") == "json_object":
        return {}
    if response_format.get("type") == "json_schema":
        return dict((response_format.get("json_schema") or {}).get("schema") or {})
    return None


def json_instruction(schema: Mapping[str, Any]) -> str:
    """System text asking for JSON, for providers without a native JSON mode."""
    text = (
        "You must respond with valid JSON. Output only the JSON value, "
        "no additional text or markdown formatting."
    )
    if schema:
        text += "\nThe JSON must match this schema:\n" + json.dumps(schema, ensure_ascii=False)
    return text


def parse_structured_output(text: str) -> Any:
    """
    The JSON value in a model reply, or None if there isn't one.

    Tries the whole reply, then a fenced code block, then the first object or
    array embedded in the text.
    """
    text = (text or "").strip()
    if not text:
        return None

    candidates = [text]
    fence = _JSON_FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1))
    for candidate in candidates:
        try:
            return strict_json_loads(candidate)
        except (ValueError, RecursionError):
            pass

    decoder = json.JSONDecoder(parse_constant=reject_json_constant)
    for start in _JSON_START_RE.finditer(text):
        try:
            return decoder.raw_decode(text, start.start())[0]
        except RecursionError:
            break
        except ValueError:
            continue

    _logger.warning("No JSON found in structured reply: %.200r", text)
    return None
