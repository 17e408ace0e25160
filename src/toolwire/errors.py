"""
Error types for toolwire, and translation of noisy provider tracebacks into
short, loggable messages.
"""

from __future__ import annotations

import logging
from typing import Optional

from anthropic import APIError as AnthropicAPIError
from anthropic import APIConnectionError as AnthropicConnectionError
from anthropic import RateLimitError as AnthropicRateLimitError
from openai import APIError as OpenAIAPIError
from openai import APIConnectionError as OpenAIConnectionError
from openai import RateLimitError as OpenAIRateLimitError

__all__ = ["ToolwireError", "ToolProtocolError", "classify_error"]


class ToolwireError(RuntimeError):
    """Public driver-level exception.

    Attributes:
        original_exc: The underlying provider exception.
    """

    original_exc: Exception

    def __init__(self, message: str, original_exc: Exception) -> None:
        super().__init__(message)
        self.original_exc = original_exc
        self.__cause__ = original_exc


class ToolProtocolError(ValueError):
    """Raised when a tool call, tool result or history breaks an invariant
    of the intermediate format (missing id, dangling result, bad JSON value)."""


RATE_LIMIT_ERRORS: tuple[type[Exception], ...] = (
    OpenAIRateLimitError,
    AnthropicRateLimitError,
)

CONN_ERRORS: tuple[type[Exception], ...] = (
    OpenAIConnectionError,
    AnthropicConnectionError,
    TimeoutError,
    ConnectionError,
)

API_ERRORS: tuple[type[Exception], ...] = (
    OpenAIAPIError,
    AnthropicAPIError,
)

# Fallback mapping on the exception class name, for SDKs we don't import
# directly (google-genai, httpx).
ERROR_TYPE_PATTERNS = {
    "ConnectError": "Connection error",
    "ConnectionError": "Connection error",
    "RemoteProtocolError": "Connection error",
    "TimeoutException": "Connection error",
    "HTTPError": "HTTP error",
    "ClientError": "API error",
    "ServerError": "API error",
    "APIError": "API error",
}


def classify_error(exception: Exception, logger: Optional[logging.Logger] = None) -> str:
    """
    Classifies an exception and returns an appropriate error message.

    Args:
        exception: The caught exception
        logger: Logger for recording the error

    Returns:
        Formatted error message string
    """
    log = logger or logging.getLogger("toolwire.errors")
    error_type = type(exception).__name__
    error_message = str(exception)

    # Rate limits and connection errors subclass APIError, so check them first.
    if isinstance(exception, RATE_LIMIT_ERRORS):
        msg = f"Rate limit error: {error_message}"
        log.warning(msg)
        return msg

    if isinstance(exception, CONN_ERRORS):
        msg = f"Connection error: {error_message}"
        log.error(msg)
        return msg

    if isinstance(exception, API_ERRORS):
        status_info = getattr(exception, "status_code", "unknown")
        msg = f"API error ({status_info}): {error_message}"
        log.error(msg)
        return msg

    for pattern, prefix in ERROR_TYPE_PATTERNS.items():
        if pattern in error_type:
            msg = f"{prefix}: {error_message}"
            log.error(msg)
            return msg

    msg = f"{error_type}: {error_message}"
    log.exception(msg)  # stack trace for anything we can't classify
    return msg
