from enum import StrEnum
from dotenv import load_dotenv
import os


class Provider(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"
    LOCAL = "local"


_ENV_VARS: dict[Provider, str] = {
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.ANTHROPIC: "ANTHROPIC_API_KEY",
    Provider.GEMINI: "GEMINI_API_KEY",
}

# Local servers: (env var, default) for the base URL
_BASE_URLS: dict[Provider, tuple[str, str]] = {
    Provider.OLLAMA: ("OLLAMA_BASE_URL", "http://localhost:11434/v1"),
    Provider.LOCAL: ("LOCAL_LLM_BASE_URL", "http://localhost:8080/v1"),
}

# OpenAI-compatible local servers ignore the key but the SDK requires one
LOCAL_API_KEY = "not-needed"


def get_api_key(provider: Provider) -> str:
    load_dotenv()
    if provider in _BASE_URLS:
        return LOCAL_API_KEY
    env = _ENV_VARS.get(provider)
    if not env:
        raise RuntimeError(f"No config for {provider}")
    key = os.getenv(env)
    if not key:
        raise RuntimeError(f"{env} missing")
    return key


def get_base_url(provider: Provider) -> str | None:
    """Server URL for local providers, from the environment or the default port."""
    load_dotenv()
    if provider not in _BASE_URLS:
        return None
    env, default = _BASE_URLS[provider]
    return os.getenv(env) or default
