"""
Compiled prompt consumed by the drivers.

The template engine that produces it lives elsewhere; drivers only read it.
Elements are plain strings or dicts with a ``type`` key (``text``, ``message``,
``section``/``subsection``, ``material``, ``chunk``; anything else is dumped as
JSON).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Sequence, Union

from toolwire.types.chat import (
    AssistantToolCallMessage,
    ChatMessage,
    StandardMessage,
    ToolResultMessage,
)
from toolwire.types.tool import ToolCall, ToolResult

__all__ = ["CompiledPrompt", "Element", "render_elements", "prompt_to_messages"]

Element = Union[str, dict[str, Any]]


@dataclass(frozen=True, slots=True)
class CompiledPrompt:
    instructions: Sequence[Element] = ()
    data: Sequence[Element] = ()
    output: Sequence[Element] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


def _content_to_str(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Attachments: keep the text parts only
        return "\n".join(
            att["text"] for att in content
            if isinstance(att, dict) and att.get("type") == "text" and att.get("text")
        )
    return json.dumps(content, ensure_ascii=False)


def _render_element(element: Element) -> str:
    if isinstance(element, str):
        return element

    el_type = element.get("type")
    if el_type == "text":
        return element.get("content", "")
    if el_type in ("section", "subsection"):
        lines = []
        if element.get("title"):
            lines.append(("## " if el_type == "section" else "### ") + element["title"])
        for item in element.get("items", []):
            rendered = _render_element(item) if isinstance(item, (str, dict)) else ""
            if rendered:
                lines.append(rendered)
        return "\n".join(lines)
    if el_type == "material":
        return f"# {element.get('title', '')}\n{_content_to_str(element.get('content', ''))}"
    if el_type == "chunk":
        if element.get("index") is not None and element.get("total") is not None:
            header = f"[Chunk {element['index'] + 1}/{element['total']} of {element.get('partOf', '')}]"
        else:
            header = f"[Chunk of {element.get('partOf', '')}]"
        return f"{header}\n{_content_to_str(element.get('content', ''))}"
    if el_type == "message":
        return f"{element.get('role', 'user')}: {_content_to_str(element.get('content', ''))}"
    return json.dumps(element, ensure_ascii=False)


def render_elements(elements: Sequence[Element]) -> str:
    """Flatten non-message elements into one text block."""
    return "\n".join(
        text for text in (_render_element(el) for el in elements) if text
    )


def _message_from_element(element: dict[str, Any]) -> ChatMessage:
    role = element.get("role", "user")
    content = _content_to_str(element.get("content", ""))
    if role == "tool":
        call_id = element.get("tool_call_id") or element.get("toolCallId")
        name = element.get("name") or call_id
        return ToolResultMessage(ToolResult(call_id, name, "text", content))
    raw_calls = element.get("tool_calls") or element.get("toolCalls")
    if role == "assistant" and raw_calls:
        calls = [
            call if isinstance(call, ToolCall)
            else ToolCall(id=call["id"], name=call["name"], arguments=dict(call.get("arguments") or {}))
            for call in raw_calls
        ]
        return AssistantToolCallMessage(calls, content)
    return StandardMessage(role, content)


def _is_message(element: Element) -> bool:
    return isinstance(element, dict) and element.get("type") == "message"


def prompt_to_messages(prompt: CompiledPrompt) -> list[ChatMessage]:
    """
    Convert a compiled prompt into chat messages.

    Instructions become one system message; data and output each become a user
    message. Message elements are lifted out in place, keeping their roles.
    """
    messages: list[ChatMessage] = []

    def collect(elements: Sequence[Element], role: str) -> None:
        pending: list[Element] = []
        for element in elements:
            if _is_message(element):
                text = render_elements(pending)
                if text:
                    messages.append(StandardMessage(role, text))
                pending = []
                messages.append(_message_from_element(element))
            else:
                pending.append(element)
        text = render_elements(pending)
        if text:
            messages.append(StandardMessage(role, text))

    collect(prompt.instructions, "system")
    collect(prompt.data, "user")
    collect(prompt.output, "user")
    return messages
