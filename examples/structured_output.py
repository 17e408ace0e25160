"""
This example demonstrates how to get structured JSON output from any provider
by solving a mathematical equation step-by-step.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from toolwire import CompiledPrompt, Provider, create_llm

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    Provider.OPENAI: "gpt-4o-mini",
    Provider.ANTHROPIC: "claude-3-5-haiku-20241022",
    Provider.GEMINI: "gemini-2.5-flash",
    Provider.OLLAMA: "qwen3:8b",
    Provider.LOCAL: "mlx-community/Qwen3-8B-4bit",
}

# JSON Schema for the answer; the driver turns it into each provider's JSON mode
MATH_RESPONSE_SCHEMA = {
    "title": "math_solution",
    "type": "object",
    "properties": {
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "explanation": {"type": "string"},
                    "output": {"type": "string"},
                },
                "required": ["explanation", "output"],
                "additionalProperties": False,
            },
        },
        "final_answer": {"type": "string"},
    },
    "required": ["steps", "final_answer"],
    "additionalProperties": False,
}


async def solve_math_with_json_output(provider: Provider, model: str, equation: str) -> None:
    """Solve a mathematical equation with structured JSON output."""
    prompt = CompiledPrompt(
        instructions=["You are a mathematical assistant. Solve the given equation step by step."],
        data=[f"Solve this equation step by step: {equation}"],
        metadata={"outputSchema": MATH_RESPONSE_SCHEMA},
    )

    logger.info(f"Solving '{equation}' with structured JSON output")

    async with create_llm(provider, model) as llm:
        result = await llm.query(prompt, params={"temperature": 0.1, "max_tokens": 1000})

    if result.is_error:
        logger.error(f"Error during solution: {result.error}")
        return
    solution = result.structured_output
    if not isinstance(solution, dict):
        logger.error(f"No JSON in response: {result.content}")
        return

    print(f"\nSolution for: {equation}")
    print("Steps:")
    for i, step in enumerate(solution.get("steps", []), 1):
        print(f"  {i}. {step.get('explanation')}")
        print(f"     Result: {step.get('output')}")
    print(f"\nFinal Answer: {solution.get('final_answer')}")


async def main(provider: Provider, model: str) -> None:
    # Example 1: Linear equation
    await solve_math_with_json_output(provider, model, "3x + 7 = 16")

    print("\n" + "=" * 50 + "\n")

    # Example 2: Quadratic equation
    await solve_math_with_json_output(provider, model, "x^2 - 5x + 6 = 0")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--provider",
        choices=[p.value for p in Provider],
        default=Provider.OPENAI.value,
    )
    parser.add_argument("--model", default=None)
    args = parser.parse_args()

    provider = Provider(args.provider)
    asyncio.run(main(provider, args.model or DEFAULT_MODELS[provider]))
