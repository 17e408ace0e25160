"""Shared streaming utilities for LLM providers."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, AsyncIterable, Iterable, Optional, Protocol

from toolwire.errors import ToolProtocolError
from toolwire.response import QueryResult
from toolwire.types.tool import (
    ToolCall,
    ensure_json_serializable,
    strict_json_loads,
    unique_call_ids,
)

__all__ = [
    "AccumulatorState",
    "ToolCallAccumulator",
    "StreamState",
    "decode_arguments",
    "aggregate_stream",
    "aggregate_stream_sync",
]

_logger = logging.getLogger(__name__)


class AccumulatorState(StrEnum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FINALIZED = "finalized"


def decode_arguments(raw: Any) -> dict[str, Any]:
    """
    Turn a provider argument payload into a mapping.

    Native mappings are copied through; strings are parsed as JSON (an empty
    string means no arguments).

    Raises:
        ValueError: if the string is not strict JSON or does not decode to an
            object, or a mapping holds values JSON cannot represent.
    """
    if raw is None:
        return {}
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = strict_json_loads(raw)
        except RecursionError as exc:
            raise ValueError("arguments nest too deeply") from exc
        if not isinstance(parsed, dict):
            raise ValueError(f"arguments decode to {type(parsed).__name__}, not an object")
        return parsed
    if hasattr(raw, "items"):
        arguments = dict(raw.items())
        ensure_json_serializable(arguments, "arguments")
        return arguments
    raise ValueError(f"unsupported arguments payload: {type(raw).__name__}")


@dataclass(slots=True)
class _PendingCall:
    id: Optional[str]
    name: str
    arguments_buffer: str
    metadata: Optional[dict[str, Any]] = None


class ToolCallAccumulator:
    """
    Reassembles tool calls delivered in fragments.

    Fragments are matched by index, never by id: only the first fragment for an
    index is guaranteed to carry the id. Buffers are parsed once, at
    ``finalize``. A buffer that is still not valid JSON by then yields a
    ToolCall with ``error`` set; the other calls are unaffected.

    One instance per stream.
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PendingCall] = {}
        self.state = AccumulatorState.IDLE

    def __len__(self) -> int:
        return len(self._calls)

    def add_fragment(
        self,
        index: int,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        if self.state is AccumulatorState.FINALIZED:
            raise ToolProtocolError("Fragment received after the stream was finalized")
        self.state = AccumulatorState.ACCUMULATING

        pending = self._calls.get(index)
        if pending is None:
            self._calls[index] = _PendingCall(
                id=id or None,
                name=name or "",
                arguments_buffer=arguments or "",
                metadata=metadata,
            )
            return

        if id and not pending.id:
            pending.id = id
        if name:
            # Some servers stream the name in pieces as well
            pending.name += name
        if arguments:
            pending.arguments_buffer += arguments
        if metadata:
            pending.metadata = {**(pending.metadata or {}), **metadata}

    def finalize(self) -> list[ToolCall]:
        """Parse every buffered call, in index order."""
        if self.state is AccumulatorState.FINALIZED:
            raise ToolProtocolError("Accumulator already finalized")
        self.state = AccumulatorState.FINALIZED

        pending_calls = [self._calls[index] for index in sorted(self._calls)]
        ids = unique_call_ids(pending.id for pending in pending_calls)

        calls: list[ToolCall] = []
        for call_id, pending in zip(ids, pending_calls):
            try:
                arguments = decode_arguments(pending.arguments_buffer)
                error = None
            except ValueError as exc:
                _logger.warning(
                    "Tool call %s (%s) has unparseable arguments: %r",
                    call_id, pending.name, pending.arguments_buffer[:200],
                )
                arguments = {}
                error = f"Invalid tool call arguments: {exc}"

            calls.append(
                ToolCall(
                    id=call_id,
                    name=pending.name,
                    arguments=arguments,
                    metadata=pending.metadata,
                    error=error,
                )
            )
        return calls


class StreamState(Protocol):
    """Per-stream state handed out by an adapter's ``stream_state()``."""

    def feed(self, chunk: Any) -> str:
        """Consume one provider chunk; return the text to forward (may be empty)."""
        ...

    def finish(self) -> QueryResult:
        """Finalize after the provider stream ended."""
        ...


async def aggregate_stream(chunks: AsyncIterable[Any], state: StreamState) -> QueryResult:
    """
    Pure function that drains a provider stream into a single QueryResult.

    Args:
        chunks: Async iterable of provider chunks
        state: A fresh stream state from the provider's adapter

    Returns:
        The aggregated QueryResult
    """
    async for chunk in chunks:
        state.feed(chunk)
    return state.finish()


def aggregate_stream_sync(chunks: Iterable[Any], state: StreamState) -> QueryResult:
    """
    Synchronous wrapper around the async aggregation function.

    Args:
        chunks: Synchronous iterable of provider chunks
        state: A fresh stream state from the provider's adapter

    Returns:
        The aggregated QueryResult
    """
    async def async_gen_wrapper():
        for chunk in chunks:
            yield chunk

    return asyncio.run(aggregate_stream(async_gen_wrapper(), state))
