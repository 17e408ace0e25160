from __future__ import annotations

import argparse
import asyncio
import logging

from toolwire import (
    ChatMessage,
    CompiledPrompt,
    Provider,
    StandardMessage,
    ToolCall,
    ToolDefinition,
    ToolResult,
    ToolResultMessage,
    create_llm,
)

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

# One definition for every provider; the adapters reshape it
WEATHER_TOOL = ToolDefinition(
    name="get_weather",
    description="Get the current weather in a given location",
    parameters={
        "type": "object",
        "properties": {
            "location": {
                "type": "string",
                "description": "City and state, e.g. San Francisco, CA",
            },
            "unit": {
                "type": "string",
                "enum": ["celsius", "fahrenheit"],
            },
        },
        "required": ["location"],
    },
)

DEFAULT_MODELS = {
    Provider.OPENAI: "gpt-4.1-nano",
    Provider.ANTHROPIC: "claude-3-5-haiku-20241022",
    Provider.GEMINI: "gemini-2.5-flash",
    Provider.OLLAMA: "qwen3:8b",
    Provider.LOCAL: "mlx-community/Qwen3-8B-4bit",
}


def run_local_tool(call: ToolCall) -> ToolResult:
    """Stub implementation of get_weather."""
    if not call.is_valid:
        return ToolResult.error(call, call.error)
    # imagine we call a real weather API here
    return ToolResult.data(call, {"temperature": 15, "unit": "celsius", "sky": "mostly cloudy"})


async def tool_loop(provider: Provider, model: str, max_turns: int = 4) -> None:
    """
    Let the model call tools until it answers in plain text.

    1) Send the prompt with the tool list
    2) Run every call the model issued
    3) Replay the assistant turn and the results, then ask again
    """
    prompt = CompiledPrompt(
        instructions=["You are a concise assistant."],
        data=["What's the weather in San Francisco?"],
    )
    history: list[ChatMessage] = []
    params = {"tools": [WEATHER_TOOL]}

    async with create_llm(provider, model) as llm:
        for _ in range(max_turns):
            streamed = await llm.stream_query(prompt, messages=history, params=params)
            async for text in streamed.stream:
                print(text, end="", flush=True)
            print()
            result = await streamed.result

            if not result.tool_calls:
                logger.info("%s finished (%s)", provider.value.capitalize(), result.finish_reason)
                return

            history.append(result.assistant_message())
            for call in result.tool_calls:
                logger.info("Calling %s(%s)", call.name, call.arguments)
                history.append(ToolResultMessage(run_local_tool(call)))

        history.append(StandardMessage("user", "Please answer with what you have."))
        final = await llm.query(prompt, messages=history, params={"tools": [WEATHER_TOOL], "tool_choice": "none"})
        logger.info("%s says: %s", provider.value.capitalize(), final.content)


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--provider",
        choices=[p.value for p in Provider],
        default=Provider.ANTHROPIC.value,
    )
    parser.add_argument("--model", default=None)
    args = parser.parse_args()

    provider = Provider(args.provider)
    asyncio.run(tool_loop(provider, args.model or DEFAULT_MODELS[provider]))
