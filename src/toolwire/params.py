"""
Query parameter normalization for toolwire.

Public API
- Users pass a dict to `params` on `llm.query` or `llm.stream_query`.

Contract
- Standard keys work across providers:
  temperature: float
  max_tokens: int
  top_p: float
  stream: bool
  tools: list[ToolDefinition]
  tool_choice: "auto" | "none" | "required" | NamedToolChoice | {"name": ...}
  stop: str | list[str]
  seed: int
  response_format: {"type": "json_object"} | {"type": "json_schema", "json_schema": {...}}

- A prompt whose metadata holds an "outputSchema" gets a json_schema
  response_format unless the caller passed one.

- Provider specific keys go under `extra` and pass through unchanged.
  Examples:
    extra.reasoning_effort: "low" | "medium" | "high"   (OpenAI)
    extra.top_k: int                                   (Anthropic, Gemini)
    extra.thinkingConfig: dict                         (Gemini)

Unknown top-level keys are moved into extra.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from toolwire.errors import ToolProtocolError
from toolwire.types import ToolDefinition

STANDARD_KEYS = {
    "temperature",
    "max_tokens",
    "top_p",
    "stream",
    "tools",
    "tool_choice",
    "stop",
    "user",
    "frequency_penalty",
    "presence_penalty",
    "parallel_tool_calls",
    "seed",
    "response_format",
}

_SCHEMA_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _check_tools(tools: Any) -> list[ToolDefinition]:
    tools = list(tools or [])
    for tool in tools:
        if not isinstance(tool, ToolDefinition):
            raise ToolProtocolError(
                f"params['tools'] must hold ToolDefinition objects, got {type(tool).__name__}"
            )
    return tools


def normalize_params(params: dict | None) -> dict:
    """
    Normalize a user-supplied params dict to a single internal shape.

    Returns a dict with only standard keys plus an `extra` dict.
    Defaults:
      stream defaults to False
      tools defaults to []
      extra defaults to {}
    Rules:
      - Keys not in STANDARD_KEYS are moved into extra
      - If the caller already passed an `extra` dict it is merged last
      - None values are kept so adapters can decide to drop them

    Example
    -------
    >>> normalize_params({
    ...   "temperature": 0.2,
    ...   "top_k": 40,
    ...   "extra": {"reasoning_effort": "high"}
    ... })
    {'temperature': 0.2, 'stream': False, 'tools': [],
     'extra': {'top_k': 40, 'reasoning_effort': 'high'}}
    """
    if params is None:
        return {"stream": False, "tools": [], "extra": {}}
    if not isinstance(params, dict):
        raise TypeError(f"params must be a dict, got {type(params).__name__}")

    std: dict = {}
    extra: dict = {}

    user_extra = params.get("extra") or {}
    if user_extra and not isinstance(user_extra, dict):
        raise TypeError("params['extra'] must be a dict")

    for key, value in params.items():
        if key == "extra":
            continue
        if key in STANDARD_KEYS:
            std[key] = value
        else:
            extra[key] = value

    std.setdefault("stream", False)
    std["tools"] = _check_tools(std.get("tools"))

    # Moved unknowns first, then user-provided extra wins
    std["extra"] = {**extra, **user_extra}

    return std


def merge_params(defaults: dict | None, overrides: dict | None) -> dict:
    """
    Shallow-merge client defaults with per-call overrides, then normalize.

    Rules:
      - Top-level keys are overwritten by overrides
      - `extra` is merged with overrides winning per key
    """
    base: dict = dict(defaults or {})
    if overrides:
        base_extra = dict(base.get("extra") or {})
        over_extra = dict(overrides.get("extra") or {})

        for k, v in overrides.items():
            if k != "extra":
                base[k] = v

        base["extra"] = {**base_extra, **over_extra}

    return normalize_params(base)


def json_schema_format(schema: Mapping[str, Any]) -> dict:
    """
    ``response_format`` asking for JSON that matches *schema*.

    The schema's ``title`` names it when it is a valid identifier, else "output".
    """
    title = schema.get("title")
    name = title if isinstance(title, str) and _SCHEMA_NAME_RE.match(title) else "output"
    return {"type": "json_schema", "json_schema": {"name": name, "schema": dict(schema)}}
