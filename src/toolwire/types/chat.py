"""Chat message union used for multi-turn tool loops."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional, Sequence, Union

from toolwire.errors import ToolProtocolError
from toolwire.types.tool import ToolCall, ToolResult

__all__ = [
    "StandardMessage",
    "AssistantToolCallMessage",
    "ToolResultMessage",
    "ChatMessage",
    "validate_history",
    "order_tool_results",
]


@dataclass(slots=True)
class StandardMessage:
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(slots=True)
class AssistantToolCallMessage:
    """Assistant turn that issued tool calls, replayed as conversation history."""

    tool_calls: list[ToolCall]
    content: str = ""
    role: Literal["assistant"] = field(default="assistant", init=False)


@dataclass(slots=True)
class ToolResultMessage:
    """One tool result, with optional free text sent in the same turn."""

    result: ToolResult
    text: Optional[str] = None
    role: Literal["tool"] = field(default="tool", init=False)


ChatMessage = Union[StandardMessage, AssistantToolCallMessage, ToolResultMessage]


def validate_history(messages: Sequence[ChatMessage]) -> None:
    """
    Check that every tool result answers a call issued earlier in *messages*.

    Ids are only unique within one response (``call_0`` comes back every
    turn from providers that don't issue ids), so an id may be reused once
    its earlier call has been answered.

    Raises:
        ToolProtocolError: on a dangling or duplicated result, an id issued
            twice while still unanswered, or an unknown message type.
    """
    unanswered: set[str] = set()
    answered: set[str] = set()
    for msg in messages:
        if isinstance(msg, AssistantToolCallMessage):
            for call in msg.tool_calls:
                if call.id in unanswered:
                    raise ToolProtocolError(f"Duplicate tool call id {call.id!r} in history")
                unanswered.add(call.id)
                answered.discard(call.id)
        elif isinstance(msg, ToolResultMessage):
            call_id = msg.result.tool_call_id
            if call_id in answered:
                raise ToolProtocolError(f"Tool call {call_id!r} answered twice")
            if call_id not in unanswered:
                raise ToolProtocolError(
                    f"Tool result refers to unknown tool call id {call_id!r}"
                )
            unanswered.remove(call_id)
            answered.add(call_id)
        elif not isinstance(msg, StandardMessage):
            raise ToolProtocolError(f"Unsupported chat message: {msg!r}")


def order_tool_results(
    calls: Sequence[ToolCall], results: Iterable[ToolResult]
) -> list[ToolResult]:
    """
    Return *results* in the order their calls were issued.

    Tools run in parallel finish in any order; position-correlated providers
    need the results back in call order. Results for calls not in *calls*
    keep their relative order at the end.
    """
    position = {call.id: i for i, call in enumerate(calls)}
    indexed = list(enumerate(results))
    indexed.sort(key=lambda item: (position.get(item[1].tool_call_id, len(position)), item[0]))
    return [result for _, result in indexed]
