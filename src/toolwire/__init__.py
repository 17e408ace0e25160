"""
toolwire - provider-neutral tool calling across LLM drivers.
"""

import logging

from .client import (
    BaseAsyncLLM,
    OpenAILLM,
    OllamaLLM,
    LocalLLM,
    AnthropicLLM,
    GeminiLLM,
    create_llm,
)
from .errors import ToolProtocolError, ToolwireError
from .response import QueryResult, StreamResult, Usage
from .tool_parser import RuntimeHints, format_tool_definitions_as_text, parse_tool_calls
from .types import (
    AssistantToolCallMessage,
    ChatMessage,
    CompiledPrompt,
    NamedToolChoice,
    StandardMessage,
    ToolCall,
    ToolChoice,
    ToolDefinition,
    ToolResult,
    ToolResultMessage,
    order_tool_results,
)
from .provider import Provider, get_api_key
from .adapters.anthropic import ephemeral

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "BaseAsyncLLM",
    "OpenAILLM",
    "OllamaLLM",
    "LocalLLM",
    "AnthropicLLM",
    "GeminiLLM",
    "create_llm",
    "ToolProtocolError",
    "ToolwireError",
    "QueryResult",
    "StreamResult",
    "Usage",
    "RuntimeHints",
    "format_tool_definitions_as_text",
    "parse_tool_calls",
    "AssistantToolCallMessage",
    "ChatMessage",
    "CompiledPrompt",
    "NamedToolChoice",
    "StandardMessage",
    "ToolCall",
    "ToolChoice",
    "ToolDefinition",
    "ToolResult",
    "ToolResultMessage",
    "order_tool_results",
    "Provider",
    "get_api_key",
    "ephemeral",
]
