from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Literal, Optional, Union

from toolwire.types import AssistantToolCallMessage, StandardMessage, ToolCall

__all__ = ["FinishReason", "Usage", "QueryResult", "StreamResult"]

FinishReason = Literal["stop", "length", "error", "tool_calls"]


@dataclass(slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class QueryResult:
    """Unified response object for all LLM providers."""

    content: str
    tool_calls: list[ToolCall] | None = None
    finish_reason: FinishReason = "stop"
    usage: Optional[Usage] = None
    raw: Any = None
    error: Optional[str] = None
    # Parsed JSON reply when a response_format or output schema was requested
    structured_output: Any = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def raise_for_error(self) -> None:
        if self.is_error:
            raise RuntimeError(self.error)

    def assistant_message(self) -> Union[AssistantToolCallMessage, StandardMessage]:
        """History entry for this response, to send back on the next turn."""
        if self.tool_calls:
            return AssistantToolCallMessage(list(self.tool_calls), self.content)
        return StandardMessage("assistant", self.content)


@dataclass
class StreamResult:
    """
    A live text stream plus the aggregated result.

    ``stream`` yields text only and can be consumed once. ``result`` resolves
    when the provider stream is drained, whether or not ``stream`` was read.
    """

    stream: AsyncIterator[str]
    result: Awaitable[QueryResult]
