from .tool import (
    NamedToolChoice,
    ToolCall,
    ToolChoice,
    ToolDefinition,
    ToolResult,
    ToolResultKind,
    normalize_tool_choice,
)
from .chat import (
    AssistantToolCallMessage,
    ChatMessage,
    StandardMessage,
    ToolResultMessage,
    order_tool_results,
    validate_history,
)
from .prompt import CompiledPrompt, prompt_to_messages

__all__ = [
    "NamedToolChoice",
    "ToolCall",
    "ToolChoice",
    "ToolDefinition",
    "ToolResult",
    "ToolResultKind",
    "normalize_tool_choice",
    "AssistantToolCallMessage",
    "ChatMessage",
    "StandardMessage",
    "ToolResultMessage",
    "order_tool_results",
    "validate_history",
    "CompiledPrompt",
    "prompt_to_messages",
]
