"""
LLM drivers with unified query() and stream_query() methods.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import (
    Any,
    AsyncIterator,
    Mapping,
    Optional,
    Protocol,
    Self,
    Sequence,
    Union,
)

from anthropic import AsyncAnthropic
from google import genai
from google.genai import types as genai_types
from openai import AsyncOpenAI

from toolwire.adapters import (
    AnthropicRequestAdapter,
    GeminiRequestAdapter,
    LocalRequestAdapter,
    OpenAIRequestAdapter,
)
from toolwire.errors import ToolwireError, classify_error
from toolwire.params import json_schema_format, merge_params
from toolwire.provider import LOCAL_API_KEY, Provider, get_api_key, get_base_url
from toolwire.response import QueryResult, StreamResult
from toolwire.stream_utils import StreamState
from toolwire.tool_parser import RuntimeHints
from toolwire.types import ChatMessage, CompiledPrompt

__all__ = [
    "RequestAdapter",
    "BaseAsyncLLM",
    "OpenAILLM",
    "OllamaLLM",
    "LocalLLM",
    "AnthropicLLM",
    "GeminiLLM",
    "create_llm",
]

_END_OF_STREAM = object()


class RequestAdapter(Protocol):
    """Protocol for adapting between the intermediate format and a provider's wire format."""

    def to_provider(
        self,
        prompt: Optional[CompiledPrompt],
        messages: Sequence[ChatMessage],
        params: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Convert a prompt, prior turns and normalized params to request kwargs."""
        ...

    def from_provider(self, raw: Any, params: Optional[Mapping[str, Any]] = None) -> QueryResult:
        """Convert a complete provider response to a QueryResult."""
        ...

    def stream_state(self, params: Optional[Mapping[str, Any]] = None) -> StreamState:
        """Fresh state for folding one provider stream into a QueryResult."""
        ...


class BaseAsyncLLM(ABC):
    """
    Abstract base class for async-first LLM drivers.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        self.model = model
        self.logger = logger or logging.getLogger(__name__)
        self.name = name or self.__class__.__name__
        self.default_params = dict(params or {})

    @abstractmethod
    async def _chat_impl(
        self,
        request: dict[str, Any],
        stream: bool,
    ) -> Union[Any, AsyncIterator[Any]]:
        """
        Send one request built by the adapter.

        Returns:
            The raw provider response, or an async iterator of raw chunks when
            *stream* is true.
        """
        ...

    @property
    @abstractmethod
    def adapter(self) -> RequestAdapter:
        """Request adapter for this provider."""
        ...

    def _prepare(
        self,
        prompt: Optional[CompiledPrompt],
        messages: Sequence[ChatMessage],
        params: dict[str, Any] | None,
        stream: bool,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        final_params = merge_params(self.default_params, params)
        final_params["stream"] = stream
        schema = prompt.metadata.get("outputSchema") if prompt is not None else None
        if schema and not final_params.get("response_format"):
            final_params["response_format"] = json_schema_format(schema)
        # Raises ToolProtocolError on a malformed history, before anything is sent
        request = self.adapter.to_provider(prompt, messages, final_params)
        return final_params, request

    async def query(
        self,
        prompt: Optional[CompiledPrompt] = None,
        *,
        messages: Sequence[ChatMessage] = (),
        params: dict[str, Any] | None = None,
    ) -> QueryResult:
        """
        Send a request and return the complete response.

        Transport and API failures don't raise: they come back as a
        QueryResult with ``finish_reason="error"`` and ``error`` set.
        """
        final_params, request = self._prepare(prompt, messages, params, stream=False)

        try:
            raw = await self._chat_impl(request, stream=False)
            return self.adapter.from_provider(raw, final_params)
        except Exception as exc:
            return self._wrap_error(exc)

    async def stream_query(
        self,
        prompt: Optional[CompiledPrompt] = None,
        *,
        messages: Sequence[ChatMessage] = (),
        params: dict[str, Any] | None = None,
    ) -> StreamResult:
        """
        Send a streaming request.

        ``stream`` yields text only; tool calls are available from ``result``
        once the provider stream is drained. On failure both ``stream`` and
        ``result`` raise ToolwireError.
        """
        final_params, request = self._prepare(prompt, messages, params, stream=True)
        state = self.adapter.stream_state(final_params)
        queue: asyncio.Queue[Any] = asyncio.Queue()

        async def pump() -> QueryResult:
            try:
                chunks = await self._chat_impl(request, stream=True)
                async for chunk in chunks:
                    text = state.feed(chunk)
                    if text:
                        queue.put_nowait(text)
                result = state.finish()
                self._log(f"Stream finished ({result.finish_reason})", logging.DEBUG)
                return result
            except Exception as exc:
                raise ToolwireError(classify_error(exc, self.logger), exc) from exc
            finally:
                queue.put_nowait(_END_OF_STREAM)

        task = asyncio.create_task(pump())

        async def text_stream() -> AsyncIterator[str]:
            while True:
                item = await queue.get()
                if item is _END_OF_STREAM:
                    break
                yield item
            await task

        return StreamResult(stream=text_stream(), result=task)

    def _wrap_error(self, exc: Exception) -> QueryResult:
        """Wrap exception into an error result."""
        msg = classify_error(exc, self.logger)
        return QueryResult(content="", finish_reason="error", error=str(msg))

    def _log(self, message: str, level: int = logging.INFO) -> None:
        self.logger.log(level, f"[{self.name}] {message}")

    # --- lifecycle ---------------------------------------------------------
    async def aclose(self) -> None:
        """
        Close underlying async HTTP clients to avoid cleanup after the loop closes.
        Safe to call multiple times.
        """
        client = getattr(self, "_client", None)
        close = getattr(client, "aclose", None) or getattr(client, "close", None)
        if close:
            outcome = close()
            if inspect.isawaitable(outcome):
                await outcome

    async def __aenter__(self) -> "BaseAsyncLLM":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class OpenAILLM(BaseAsyncLLM):
    """
    OpenAI LLM implementation (async-only).

    Use ``OpenAILLM.from_client`` when you already have an ``AsyncOpenAI`` instance.
    """

    provider_label = "OpenAI"
    # Sampler options the SDK doesn't know; sent in the request body as is
    extra_body_keys: tuple[str, ...] = ("top_k", "min_p", "repeat_penalty", "num_ctx")
    stream_usage = True

    def __init__(
        self,
        model: str,
        *,
        api_key: str,
        timeout: float = 60.0,
        max_retries: int = 2,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        base_url: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(model=model, api_key=api_key, logger=logger, name=name, params=params)
        self.api_key = api_key
        self._client = AsyncOpenAI(
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
            base_url=base_url,
        )
        self._adapter = self._make_adapter()

    def _configure(self) -> None:
        """Set up state the adapter depends on. Runs before ``_make_adapter``."""

    def _make_adapter(self) -> OpenAIRequestAdapter:
        return OpenAIRequestAdapter()

    @classmethod
    def from_client(
        cls,
        model: str,
        client: AsyncOpenAI,
        *,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Self:
        """
        Build a driver around an already-configured ``AsyncOpenAI`` client.

        Remaining keyword arguments go to ``_configure``.
        """
        if not isinstance(client, AsyncOpenAI):
            raise TypeError(
                f"{cls.__name__}.from_client expects AsyncOpenAI; got {type(client).__name__}"
            )

        self = cls.__new__(cls)  # bypass __init__
        BaseAsyncLLM.__init__(
            self, model=model, api_key=client.api_key or "", logger=logger, name=name, params=params
        )
        self.api_key = client.api_key or ""
        self._client = client
        self._configure(**kwargs)
        self._adapter = self._make_adapter()
        return self

    @property
    def adapter(self) -> RequestAdapter:
        return self._adapter

    async def _chat_impl(
        self,
        request: dict[str, Any],
        stream: bool,
    ) -> Any:
        """Core implementation for chat-completions requests."""
        args = {"model": self.model, "stream": stream, **request}

        extra_body = {}
        for k in self.extra_body_keys:
            if k in args:
                extra_body[k] = args.pop(k)
        if extra_body:
            args["extra_body"] = {**args.get("extra_body", {}), **extra_body}
        if stream and self.stream_usage:
            args.setdefault("stream_options", {"include_usage": True})

        self._log(
            f"Sending request to {self.provider_label} model {self.model} (Stream: {stream})"
        )
        return await self._client.chat.completions.create(**args)


class OllamaLLM(OpenAILLM):
    """
    Ollama through its OpenAI-compatible endpoint.

    Recent Ollama models return structured tool calls, so the OpenAI adapter
    is used unchanged.
    """

    provider_label = "Ollama"
    stream_usage = False

    def __init__(
        self,
        model: str,
        *,
        api_key: str = LOCAL_API_KEY,
        base_url: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            model, api_key=api_key, base_url=base_url or get_base_url(Provider.OLLAMA), **kwargs
        )


class LocalLLM(OpenAILLM):
    """
    Local inference server with free-text tool calls.

    *hints* (or the *runtime_info* capability report they are built from)
    describe the model's tool-call delimiters; see ``LocalRequestAdapter``.
    """

    provider_label = "local runtime"
    stream_usage = False

    def __init__(
        self,
        model: str,
        *,
        api_key: str = LOCAL_API_KEY,
        base_url: Optional[str] = None,
        hints: Optional[RuntimeHints] = None,
        runtime_info: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        self._configure(hints, runtime_info)
        super().__init__(
            model, api_key=api_key, base_url=base_url or get_base_url(Provider.LOCAL), **kwargs
        )

    def _configure(
        self,
        hints: Optional[RuntimeHints] = None,
        runtime_info: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.hints = hints or RuntimeHints.from_runtime_info(runtime_info)

    def _make_adapter(self) -> LocalRequestAdapter:
        return LocalRequestAdapter(self.hints)

    async def query(
        self,
        prompt: Optional[CompiledPrompt] = None,
        *,
        messages: Sequence[ChatMessage] = (),
        params: dict[str, Any] | None = None,
    ) -> QueryResult:
        """Runs through the stream, so both paths parse the same text."""
        streamed = await self.stream_query(prompt, messages=messages, params=params)
        try:
            async for _ in streamed.stream:
                pass
            return await streamed.result
        except ToolwireError as exc:
            return QueryResult(content="", finish_reason="error", error=str(exc))


class AnthropicLLM(BaseAsyncLLM):
    """
    Anthropic LLM implementation (async-only).

    Use ``AnthropicLLM.from_client`` when you already have an ``AsyncAnthropic`` instance.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str,
        timeout: float = 60.0,
        max_retries: int = 2,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        base_url: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(model=model, api_key=api_key, logger=logger, name=name, params=params)
        self.api_key = api_key
        self._client = AsyncAnthropic(
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
            base_url=base_url,
        )
        self._adapter = AnthropicRequestAdapter()

    @classmethod
    def from_client(
        cls,
        model: str,
        client: AsyncAnthropic,
        *,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Self:
        """
        Wrap an existing ``AsyncAnthropic`` client.
        """
        if not isinstance(client, AsyncAnthropic):
            raise TypeError(
                f"AnthropicLLM.from_client expects AsyncAnthropic; got {type(client).__name__}"
            )

        self = cls.__new__(cls)  # bypass __init__
        BaseAsyncLLM.__init__(
            self, model=model, api_key=client.api_key or "", logger=logger, name=name, params=params
        )
        self.api_key = client.api_key or ""
        self._client = client
        self._adapter = AnthropicRequestAdapter()
        return self

    @property
    def adapter(self) -> RequestAdapter:
        return self._adapter

    async def _chat_impl(
        self,
        request: dict[str, Any],
        stream: bool,
    ) -> Any:
        """Core implementation for Anthropic messages requests."""
        args = {"model": self.model, **request}

        self._log(f"Sending request to Anthropic model {self.model} (Stream: {stream})")

        if stream:
            # Raw events; the adapter's stream state does the folding
            return await self._client.messages.create(**args, stream=True)
        return await self._client.messages.create(**args)


class GeminiLLM(BaseAsyncLLM):
    """
    Gemini LLM implementation over the native API (google-genai).

    Use ``GeminiLLM.from_client`` when you already have a ``genai.Client``.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str,
        timeout: float = 60.0,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        base_url: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(model=model, api_key=api_key, logger=logger, name=name, params=params)
        self.api_key = api_key
        self._client = genai.Client(
            api_key=api_key,
            http_options=genai_types.HttpOptions(timeout=int(timeout * 1000), base_url=base_url),
        )
        self._adapter = GeminiRequestAdapter()

    @classmethod
    def from_client(
        cls,
        model: str,
        client: genai.Client,
        *,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Self:
        """
        Wrap an existing ``genai.Client``.
        """
        if not isinstance(client, genai.Client):
            raise TypeError(
                f"GeminiLLM.from_client expects genai.Client; got {type(client).__name__}"
            )

        self = cls.__new__(cls)  # bypass __init__
        BaseAsyncLLM.__init__(self, model=model, logger=logger, name=name, params=params)
        self.api_key = ""
        self._client = client
        self._adapter = GeminiRequestAdapter()
        return self

    @property
    def adapter(self) -> RequestAdapter:
        return self._adapter

    async def _chat_impl(
        self,
        request: dict[str, Any],
        stream: bool,
    ) -> Any:
        """Core implementation for generateContent requests."""
        self._log(f"Sending request to Gemini model {self.model} (Stream: {stream})")

        models = self._client.aio.models
        if stream:
            return await models.generate_content_stream(model=self.model, **request)
        return await models.generate_content(model=self.model, **request)

    async def aclose(self) -> None:
        close = getattr(self._client.aio, "aclose", None)
        if close:
            await close()


# Factory for creating LLM instances

_LLM_REGISTRY: dict[Provider, type[BaseAsyncLLM]] = {
    Provider.OPENAI: OpenAILLM,
    Provider.ANTHROPIC: AnthropicLLM,
    Provider.GEMINI: GeminiLLM,
    Provider.OLLAMA: OllamaLLM,
    Provider.LOCAL: LocalLLM,
}


def create_llm(
    provider: Provider,
    model: str,
    *,
    api_key: str | None = None,
    client: AsyncOpenAI | AsyncAnthropic | genai.Client | None = None,
    logger: logging.Logger | None = None,
    **provider_kwargs: Any,
) -> BaseAsyncLLM:
    """
    Factory for creating any supported LLM.

    Args:
        provider: Which provider to use (OPENAI, ANTHROPIC, GEMINI, OLLAMA, LOCAL).
        model: Model identifier (e.g. "gemini-2.5-flash").
        api_key: Overrides automatic lookup; if omitted, pulled from env.
            Local providers need none.
        client: Optional pre-configured client instance to use.
            - For Provider.OPENAI, OLLAMA, LOCAL: an AsyncOpenAI instance
            - For Provider.ANTHROPIC: an AsyncAnthropic instance
            - For Provider.GEMINI: a google.genai.Client instance
            If not provided, the relevant client with the default configuration will be used.
        logger: Optional custom logger.
        **provider_kwargs: Any extra args to pass through (timeout, max_retries,
            base_url, params, and hints/runtime_info for LOCAL).
    """
    try:
        llm_cls = _LLM_REGISTRY[Provider(provider)]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unsupported provider: {provider}") from exc

    if client is not None:  # use caller-supplied client verbatim
        return llm_cls.from_client(model, client, logger=logger, **provider_kwargs)

    key = api_key or get_api_key(Provider(provider))
    return llm_cls(model, api_key=key, logger=logger, **provider_kwargs)
