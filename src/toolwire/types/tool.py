"""
Provider-neutral dataclasses for client-side tool use.

Everything provider-specific lives in the adapters.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, Optional, Union

from toolwire.errors import ToolProtocolError

__all__ = [
    "ToolDefinition",
    "NamedToolChoice",
    "ToolChoice",
    "ToolCall",
    "ToolResult",
    "ToolResultKind",
    "normalize_tool_choice",
    "ensure_json_serializable",
    "synthesize_call_id",
    "unique_call_ids",
    "reject_json_constant",
    "strict_json_loads",
]

_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

ToolResultKind = Literal["text", "data", "error"]
_RESULT_KINDS = ("text", "data", "error")


def ensure_json_serializable(value: Any, what: str = "value") -> None:
    """Raise ToolProtocolError unless *value* serialises to strict JSON.

    Cycles and non-finite floats are rejected, since every adapter must be able
    to serialise the value losslessly.
    """
    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError, RecursionError) as exc:
        raise ToolProtocolError(f"{what} is not JSON-serializable: {exc}") from exc


def reject_json_constant(name: str) -> Any:
    """``parse_constant`` hook: NaN and Infinity are not JSON."""
    raise ValueError(f"{name} is not a valid JSON value")


def strict_json_loads(text: str) -> Any:
    return json.loads(text, parse_constant=reject_json_constant)


def synthesize_call_id(index: int) -> str:
    """Sequential id for providers that don't supply one (``call_0``, ``call_1``, ...)."""
    return f"call_{index}"


def unique_call_ids(ids: Iterable[Optional[str]]) -> list[str]:
    """
    Final ids for the calls of one response, in order.

    The first use of a non-empty provider id is kept. Missing and repeated ids
    get the next ``call_<n>`` that no kept id already uses.
    """
    ids = list(ids)
    kept: set[str] = set()
    keep: list[bool] = []
    for call_id in ids:
        keep.append(bool(call_id) and call_id not in kept)
        if keep[-1]:
            kept.add(call_id)

    assigned: list[str] = []
    counter = 0
    for call_id, is_kept in zip(ids, keep):
        if is_kept:
            assigned.append(call_id)
            continue
        while synthesize_call_id(counter) in kept:
            counter += 1
        assigned.append(synthesize_call_id(counter))
        counter += 1
    return assigned


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """A function the model may call. Created once by the caller, read-only after."""

    name: str
    description: Optional[str] = None
    parameters: Optional[Mapping[str, Any]] = None
    strict: Optional[bool] = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not _TOOL_NAME_RE.match(self.name):
            raise ToolProtocolError(
                f"Invalid tool name {self.name!r}: expected 1-64 chars of [A-Za-z0-9_-]"
            )


@dataclass(frozen=True, slots=True)
class NamedToolChoice:
    """Force the model to call exactly this tool."""

    name: str


ToolChoice = Union[Literal["auto", "none", "required"], NamedToolChoice]


def normalize_tool_choice(choice: Any) -> ToolChoice:
    """
    Accept the forms callers commonly pass and return a ToolChoice.

    ``"auto" | "none" | "required"``, a NamedToolChoice, ``{"name": ...}`` or the
    OpenAI shape ``{"type": "function", "function": {"name": ...}}``.
    """
    if isinstance(choice, NamedToolChoice):
        return choice
    if choice in ("auto", "none", "required"):
        return choice
    if isinstance(choice, Mapping):
        func = choice.get("function")
        if isinstance(func, Mapping) and func.get("name"):
            return NamedToolChoice(func["name"])
        if choice.get("name"):
            return NamedToolChoice(choice["name"])
    raise ToolProtocolError(f"Unsupported tool choice: {choice!r}")


@dataclass(slots=True)
class ToolCall:
    """A model-agnostic request emitted by the LLM to call a local tool.

    ``metadata`` is opaque provider continuation state; adapters copy it back
    on the next turn and nothing else looks inside. ``error`` is set when the
    argument payload could not be decoded, in which case ``arguments`` is empty.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    metadata: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise ToolProtocolError("ToolCall.id must be a non-empty string")
        if not isinstance(self.arguments, dict):
            raise ToolProtocolError(
                f"ToolCall.arguments must be a mapping, got {type(self.arguments).__name__}"
            )
        ensure_json_serializable(self.arguments, "ToolCall.arguments")

    @property
    def is_valid(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Payload to send back to the LLM after the tool finished running.

    ``kind`` decides how adapters treat ``value``:

    * ``text``  - a string handed to the provider verbatim
    * ``data``  - any JSON value; adapters serialise or wrap it
    * ``error`` - a string describing the failure
    """

    tool_call_id: str               # must match the call id
    name: str
    kind: ToolResultKind
    value: Any

    def __post_init__(self) -> None:
        if not self.tool_call_id:
            raise ToolProtocolError("ToolResult.tool_call_id must be non-empty")
        if self.kind not in _RESULT_KINDS:
            raise ToolProtocolError(f"Unknown ToolResult kind: {self.kind!r}")
        if self.kind == "data":
            ensure_json_serializable(self.value, "ToolResult data value")
        elif not isinstance(self.value, str):
            raise ToolProtocolError(
                f"ToolResult of kind {self.kind!r} needs a str value, "
                f"got {type(self.value).__name__}"
            )

    @classmethod
    def text(cls, call: ToolCall, value: str) -> "ToolResult":
        return cls(call.id, call.name, "text", value)

    @classmethod
    def data(cls, call: ToolCall, value: Any) -> "ToolResult":
        return cls(call.id, call.name, "data", value)

    @classmethod
    def error(cls, call: ToolCall, message: str) -> "ToolResult":
        return cls(call.id, call.name, "error", message)
