"""
Tool-call recovery for runtimes that only return free text.

Local runtimes hand back one string. Tool calls inside it are found by trying
a fixed list of strategies in order; the first one that yields at least one
call wins:

1. delimiters declared by the model's chat template
2. delimiters of a known tool-parser format
3. special tokens (paired, then a single marker token)
4. ```` ```json:toolCall ```` fenced blocks
5. any JSON object shaped like ``{"name": ..., "arguments": {...}}``

Each span found by 1-4 is parsed as JSON, then as a pythonic call
``[fn(a=1)]``, then as one of two XML vocabularies. Parsing never raises;
malformed spans are dropped.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, NamedTuple, Optional, Sequence, Union

from toolwire.types.tool import (
    ToolCall,
    ToolDefinition,
    reject_json_constant,
    strict_json_loads,
    synthesize_call_id,
)

__all__ = [
    "SpecialToken",
    "SpecialTokenPair",
    "RuntimeHints",
    "ToolCallParseResult",
    "TOOL_CALL_TOKEN_KEYS",
    "KNOWN_TOOL_PARSER_DELIMITERS",
    "CODE_BLOCK_LABEL",
    "STRATEGIES",
    "parse_tool_calls",
    "coerce_value",
    "format_tool_definitions_as_text",
]

_logger = logging.getLogger(__name__)
_logger.addHandler(logging.NullHandler())

# Special-token keys that may hold a start/end pair for tool calls
TOOL_CALL_TOKEN_KEYS: tuple[str, ...] = (
    "tool_call",
    "tool_call_explicit",
    "tool_call_xml",
    "tool_calls_section",
    "function_call_tags",
    "longcat_tool_call",
    "minimax_tool_call",
)

# Single marker token: everything after it is the call payload
TOOL_CALLS_MARKER_KEY = "tool_calls_marker"

# An empty end delimiter means marker-style
KNOWN_TOOL_PARSER_DELIMITERS: dict[str, tuple[str, str]] = {
    "json_tools": ("<tool_call>", "</tool_call>"),
    "pythonic": ("<|tool_call_start|>", "<|tool_call_end|>"),
    "function_gemma": ("<start_function_call>", "<end_function_call>"),
    "mistral": ("[TOOL_CALLS]", ""),
    "kimi_k2": ("<|tool_calls_section_begin|>", "<|tool_calls_section_end|>"),
    "longcat": ("<longcat_tool_call>", "</longcat_tool_call>"),
    "glm47": ("<tool_call>", "</tool_call>"),
    "qwen3_coder": ("<tool_call>", "</tool_call>"),
    "minimax_m2": ("<minimax:tool_call>", "</minimax:tool_call>"),
}

CODE_BLOCK_LABEL = "json:toolCall"
_CODE_BLOCK_RE = re.compile(r"```" + re.escape(CODE_BLOCK_LABEL) + r"\s*\n(.*?)```", re.DOTALL)

_CALL_EXAMPLE = '{"name": "tool_name", "arguments": {"param": "value"}}'


@dataclass(frozen=True, slots=True)
class SpecialToken:
    text: str
    id: Optional[int] = None


@dataclass(frozen=True, slots=True)
class SpecialTokenPair:
    start: SpecialToken
    end: SpecialToken


def _token_from_info(raw: Any) -> Union[SpecialToken, SpecialTokenPair, None]:
    if isinstance(raw, str):
        return SpecialToken(raw)
    if not isinstance(raw, Mapping):
        return None
    if "start" in raw and "end" in raw:
        start, end = _token_from_info(raw["start"]), _token_from_info(raw["end"])
        if isinstance(start, SpecialToken) and isinstance(end, SpecialToken):
            return SpecialTokenPair(start, end)
        return None
    if isinstance(raw.get("text"), str):
        return SpecialToken(raw["text"], raw.get("id"))
    return None


@dataclass(frozen=True, slots=True)
class RuntimeHints:
    """What the local runtime reports about its tool-call syntax."""

    call_start: Optional[str] = None
    call_end: Optional[str] = None
    tool_parser_type: Optional[str] = None
    response_start: Optional[str] = None
    response_end: Optional[str] = None
    special_tokens: Mapping[str, Union[SpecialToken, SpecialTokenPair]] = field(default_factory=dict)

    @property
    def has_native_tool_support(self) -> bool:
        return bool(self.call_start)

    @classmethod
    def from_runtime_info(cls, info: Mapping[str, Any] | None) -> "RuntimeHints":
        """
        Build hints from a runtime capability report.

        Expected (all optional)::

            {"special_tokens": {"tool_call": {"start": {"text": ...}, "end": {"text": ...}}},
             "features": {"chat_template": {"tool_call_format": {
                 "call_start": ..., "call_end": ..., "tool_parser_type": ...,
                 "response_start": ..., "response_end": ...}}}}
        """
        info = info or {}
        features = info.get("features") or {}
        template = features.get("chat_template") or {}
        fmt = template.get("tool_call_format") or {}

        tokens = {}
        for key, raw in (info.get("special_tokens") or {}).items():
            token = _token_from_info(raw)
            if token is not None:
                tokens[key] = token

        return cls(
            call_start=fmt.get("call_start"),
            call_end=fmt.get("call_end"),
            tool_parser_type=fmt.get("tool_parser_type"),
            response_start=fmt.get("response_start"),
            response_end=fmt.get("response_end"),
            special_tokens=tokens,
        )


@dataclass(slots=True)
class ToolCallParseResult:
    """Text with the tool-call spans removed, and the calls found in it."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)


class _ParsedCall(NamedTuple):
    name: str
    arguments: dict[str, Any]


class _Delimiters(NamedTuple):
    start: str
    end: str  # "" for a single marker token


# ---------------------------------------------------------------------------
# Span interior parsing
# ---------------------------------------------------------------------------

_NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")


def coerce_value(value: Optional[str]) -> Any:
    """
    Convert a literal from pythonic or XML call syntax.

    ``true/false/True/False`` -> bool, ``null/None`` -> None, numbers -> int or
    float, anything else stays a string.
    """
    if value is None or value in ("None", "null"):
        return None
    if value in ("True", "true"):
        return True
    if value in ("False", "false"):
        return False
    if _NUMBER_RE.match(value):
        try:
            if re.fullmatch(r"[+-]?\d+", value):
                return int(value)
            number = float(value)
        except ValueError:
            # Past the int digit limit
            return value
        if number == number and number not in (float("inf"), float("-inf")):
            return number
    return value


def _json_arguments(source: Mapping[str, Any]) -> Optional[dict[str, Any]]:
    raw = source.get("arguments")
    if raw is None:
        raw = source.get("parameters")
    if raw is None:
        return {}
    if isinstance(raw, str):
        # Double-encoded, OpenAI style
        try:
            raw = strict_json_loads(raw)
        except (ValueError, RecursionError):
            return {}
        return raw if isinstance(raw, dict) else {}
    if isinstance(raw, dict):
        return raw
    return None


def _normalize_json_call(obj: Any) -> Optional[_ParsedCall]:
    if not isinstance(obj, dict):
        return None
    # {"name": ...}, {"function": {"name": ...}}, {"tool": {"name": ...}}
    for source in (obj, obj.get("function"), obj.get("tool")):
        if isinstance(source, dict) and isinstance(source.get("name"), str) and source["name"]:
            arguments = _json_arguments(source)
            if arguments is None:
                return None
            return _ParsedCall(source["name"], arguments)
    return None


def _parse_json_payload(content: str) -> list[_ParsedCall]:
    try:
        parsed = strict_json_loads(content)
    except (ValueError, RecursionError):
        return []
    items = parsed if isinstance(parsed, list) else [parsed]
    return [call for call in map(_normalize_json_call, items) if call is not None]


_PYTHONIC_RE = re.compile(r"^\[(\w+)\((.*)\)\]$", re.DOTALL)
_PYTHONIC_ARG_RE = re.compile(
    r"""(\w+)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|'((?:[^'\\]|\\.)*)'|([^,)]+?))\s*(?:,|$)"""
)


def _parse_pythonic(content: str) -> list[_ParsedCall]:
    match = _PYTHONIC_RE.match(content)
    if not match:
        return []
    arguments: dict[str, Any] = {}
    for arg in _PYTHONIC_ARG_RE.finditer(match.group(2).strip()):
        if arg.group(2) is not None:
            value = arg.group(2)
        elif arg.group(3) is not None:
            value = arg.group(3)
        else:
            value = arg.group(4).strip()
        arguments[arg.group(1)] = coerce_value(value)
    return [_ParsedCall(match.group(1), arguments)]


# (call pattern, parameter pattern)
_XML_VOCABULARIES = (
    (
        re.compile(r"<function=([\w.]+)>(.*?)</function>", re.DOTALL),
        re.compile(r"<parameter=(\w+)>(.*?)</parameter>", re.DOTALL),
    ),
    (
        re.compile(r'<invoke\s+name="([\w.]+)">(.*?)</invoke>', re.DOTALL),
        re.compile(r'<parameter\s+name="(\w+)">(.*?)</parameter>', re.DOTALL),
    ),
)


def _parse_xml(content: str) -> list[_ParsedCall]:
    for call_re, param_re in _XML_VOCABULARIES:
        calls = [
            _ParsedCall(
                match.group(1),
                {p.group(1): coerce_value(p.group(2).strip()) for p in param_re.finditer(match.group(2))},
            )
            for match in call_re.finditer(content)
        ]
        if calls:
            return calls
    return []


_INTERIOR_PARSERS: tuple[Callable[[str], list[_ParsedCall]], ...] = (
    _parse_json_payload,
    _parse_pythonic,
    _parse_xml,
)


def _parse_interior(content: str) -> list[_ParsedCall]:
    for parser in _INTERIOR_PARSERS:
        calls = parser(content)
        if calls:
            return calls
    _logger.debug("Dropping unparseable tool call span: %.100r", content)
    return []


def _to_tool_calls(parsed: Iterable[_ParsedCall]) -> list[ToolCall]:
    return [
        ToolCall(id=synthesize_call_id(i), name=call.name, arguments=call.arguments)
        for i, call in enumerate(parsed)
    ]


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------

def _extract_delimited(text: str, delimiters: _Delimiters) -> ToolCallParseResult:
    if not delimiters.end:
        return _extract_after_marker(text, delimiters.start)

    pattern = re.compile(
        re.escape(delimiters.start) + r"(.*?)" + re.escape(delimiters.end), re.DOTALL
    )
    parsed: list[_ParsedCall] = []
    for match in pattern.finditer(text):
        parsed.extend(_parse_interior(match.group(1).strip()))

    if not parsed:
        return ToolCallParseResult(text)
    return ToolCallParseResult(pattern.sub("", text).strip(), _to_tool_calls(parsed))


def _extract_after_marker(text: str, marker: str) -> ToolCallParseResult:
    index = text.find(marker)
    if index == -1:
        return ToolCallParseResult(text)
    parsed = _parse_json_payload(text[index + len(marker):].strip())
    if not parsed:
        return ToolCallParseResult(text)
    return ToolCallParseResult(text[:index].strip(), _to_tool_calls(parsed))


def _extract_code_blocks(text: str, _: None) -> ToolCallParseResult:
    parsed: list[_ParsedCall] = []
    for match in _CODE_BLOCK_RE.finditer(text):
        parsed.extend(_parse_interior(match.group(1).strip()))
    if not parsed:
        return ToolCallParseResult(text)
    return ToolCallParseResult(_CODE_BLOCK_RE.sub("", text).strip(), _to_tool_calls(parsed))


def _generic_call_shape(obj: Any) -> Optional[_ParsedCall]:
    if not isinstance(obj, dict) or not isinstance(obj.get("name"), str) or not obj["name"]:
        return None
    for key in ("arguments", "parameters"):
        if isinstance(obj.get(key), dict):
            return _ParsedCall(obj["name"], obj[key])
    return None


_OPENERS_RE = re.compile(r"[\s{\[]+")


def _extract_generic_json(text: str, _: None) -> ToolCallParseResult:
    decoder = json.JSONDecoder(parse_constant=reject_json_constant)
    parsed: list[_ParsedCall] = []
    spans: list[tuple[int, int]] = []

    pos = 0
    while True:
        start = text.find("{", pos)
        if start == -1:
            break
        try:
            obj, end = decoder.raw_decode(text, start)
        except RecursionError:
            # Too deep; skip the whole run of openers
            pos = _OPENERS_RE.match(text, start).end()
            continue
        except ValueError:
            pos = start + 1
            continue
        call = _generic_call_shape(obj)
        if call is None:
            # The object may still contain a call further in
            pos = start + 1
            continue
        parsed.append(call)
        spans.append((start, end))
        pos = end

    if not parsed:
        return ToolCallParseResult(text)

    pieces, last = [], 0
    for start, end in spans:
        pieces.append(text[last:start])
        last = end
    pieces.append(text[last:])
    return ToolCallParseResult("".join(pieces).strip(), _to_tool_calls(parsed))


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------

def _detect_template_delimiters(hints: Optional[RuntimeHints]) -> list[_Delimiters]:
    if hints and hints.call_start and hints.call_end:
        return [_Delimiters(hints.call_start, hints.call_end)]
    return []


def _detect_named_format(hints: Optional[RuntimeHints]) -> list[_Delimiters]:
    if hints and hints.tool_parser_type in KNOWN_TOOL_PARSER_DELIMITERS:
        return [_Delimiters(*KNOWN_TOOL_PARSER_DELIMITERS[hints.tool_parser_type])]
    return []


def _detect_special_tokens(hints: Optional[RuntimeHints]) -> list[_Delimiters]:
    if not hints:
        return []
    found = []
    for key in TOOL_CALL_TOKEN_KEYS:
        token = hints.special_tokens.get(key)
        if isinstance(token, SpecialTokenPair):
            found.append(_Delimiters(token.start.text, token.end.text))
    marker = hints.special_tokens.get(TOOL_CALLS_MARKER_KEY)
    if isinstance(marker, SpecialToken) and marker.text:
        found.append(_Delimiters(marker.text, ""))
    return found


def _always(hints: Optional[RuntimeHints]) -> list[None]:
    return [None]


class Strategy(NamedTuple):
    name: str
    detect: Callable[[Optional[RuntimeHints]], Sequence[Any]]
    extract: Callable[[str, Any], ToolCallParseResult]


# Order matters: the first strategy that yields a call wins.
STRATEGIES: tuple[Strategy, ...] = (
    Strategy("template_delimiters", _detect_template_delimiters, _extract_delimited),
    Strategy("named_format", _detect_named_format, _extract_delimited),
    Strategy("special_tokens", _detect_special_tokens, _extract_delimited),
    Strategy("code_block", _always, _extract_code_blocks),
    Strategy("generic_json", _always, _extract_generic_json),
)


def parse_tool_calls(text: str, hints: Optional[RuntimeHints] = None) -> ToolCallParseResult:
    """
    Detect and parse tool calls in raw model output.

    Args:
        text: The model's complete output
        hints: Delimiters and special tokens reported by the runtime, if any

    Returns:
        ToolCallParseResult whose ``content`` has the matched spans removed
        and trimmed. With no calls found, ``content`` is *text* unchanged.
        Ids are ``call_0, call_1, ...`` in source order.
    """
    for strategy in STRATEGIES:
        for candidate in strategy.detect(hints):
            result = strategy.extract(text, candidate)
            if result.tool_calls:
                _logger.debug(
                    "Parsed %d tool call(s) via %s", len(result.tool_calls), strategy.name
                )
                return result
    return ToolCallParseResult(text)


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

def _call_delimiters(
    special_tokens: Optional[Mapping[str, Union[SpecialToken, SpecialTokenPair]]],
    hints: Optional[RuntimeHints],
) -> Optional[_Delimiters]:
    if hints and hints.call_start and hints.call_end:
        return _Delimiters(hints.call_start, hints.call_end)
    for key in TOOL_CALL_TOKEN_KEYS:
        token = (special_tokens or {}).get(key)
        if isinstance(token, SpecialTokenPair):
            return _Delimiters(token.start.text, token.end.text)
    return None


def format_tool_call_as_text(
    call: ToolCall,
    special_tokens: Optional[Mapping[str, Union[SpecialToken, SpecialTokenPair]]] = None,
    hints: Optional[RuntimeHints] = None,
) -> str:
    """Render one call in the syntax ``format_tool_definitions_as_text`` asks for."""
    payload = json.dumps({"name": call.name, "arguments": call.arguments}, ensure_ascii=False)
    delimiters = _call_delimiters(special_tokens, hints)
    if delimiters:
        return f"{delimiters.start}\n{payload}\n{delimiters.end}"
    return f"```{CODE_BLOCK_LABEL}\n{payload}\n```"


def _describe_type(schema: Mapping[str, Any]) -> str:
    type_ = schema.get("type") or "any"
    if isinstance(type_, list):
        return " | ".join(str(t) for t in type_)
    return str(type_)


def format_tool_definitions_as_text(
    tools: Sequence[ToolDefinition],
    special_tokens: Optional[Mapping[str, Union[SpecialToken, SpecialTokenPair]]] = None,
    hints: Optional[RuntimeHints] = None,
) -> str:
    """
    Describe *tools* as plain text for models without native tool support.

    The trailing instruction uses the runtime's delimiters when it has any,
    otherwise the fenced ``json:toolCall`` block. Both are what
    ``parse_tool_calls`` looks for.
    """
    lines = ["## Available Tools", ""]

    for tool in tools:
        lines.append(f"### {tool.name}")
        if tool.description:
            lines.append(tool.description)
        if tool.parameters:
            properties = tool.parameters.get("properties")
            if isinstance(properties, Mapping):
                required = tool.parameters.get("required") or []
                lines.append("Parameters:")
                for name, schema in properties.items():
                    schema = schema if isinstance(schema, Mapping) else {}
                    req = " (required)" if name in required else ""
                    desc = f": {schema['description']}" if schema.get("description") else ""
                    lines.append(f"- {name}: {_describe_type(schema)}{req}{desc}")
            else:
                lines.append(f"Parameters: {json.dumps(tool.parameters, ensure_ascii=False)}")
        lines.append("")

    lines.append("To call a tool, respond with:")
    delimiters = _call_delimiters(special_tokens, hints)
    if delimiters:
        lines.extend([delimiters.start, _CALL_EXAMPLE, delimiters.end])
    else:
        lines.extend([f"```{CODE_BLOCK_LABEL}", _CALL_EXAMPLE, "```"])

    return "\n".join(lines)
