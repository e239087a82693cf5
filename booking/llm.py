"""
Chat model selection for prescription reading.

LLM_PROVIDER picks the backend; every option must handle image content blocks
because most uploads are phone photos:

    claude   ChatAnthropic                 CLAUDE_MODEL, ANTHROPIC_API_KEY
    openai   ChatOpenAI (any compatible)   OPENAI_MODEL, OPENAI_API_KEY, OPENAI_BASE_URL
    ollama   ChatOllama (local vision)     OLLAMA_MODEL, OLLAMA_BASE_URL

LLM_TIMEOUT (seconds) bounds a single extraction call for the hosted backends.
"""

import logging
import os

from langchain_anthropic import ChatAnthropic
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("claude", "openai", "ollama")

# Enough for a full record with a dozen tests.
MAX_OUTPUT_TOKENS = 2048


def get_llm():
    provider = os.getenv("LLM_PROVIDER", "claude").strip().lower()
    timeout = float(os.getenv("LLM_TIMEOUT", "60"))
    logger.debug("Building chat model for LLM_PROVIDER=%s", provider)

    if provider == "claude":
        return ChatAnthropic(
            model=os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5"),
            api_key=os.getenv("ANTHROPIC_API_KEY"),
            max_tokens=MAX_OUTPUT_TOKENS,
            timeout=timeout,
            temperature=0,
        )

    if provider == "openai":
        return ChatOpenAI(
            model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            api_key=os.getenv("OPENAI_API_KEY"),
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            max_tokens=MAX_OUTPUT_TOKENS,
            timeout=timeout,
            temperature=0,
        )

    if provider == "ollama":
        options = {"model": os.getenv("OLLAMA_MODEL", "llama3.2-vision"), "temperature": 0}
        if os.getenv("OLLAMA_BASE_URL"):
            options["base_url"] = os.getenv("OLLAMA_BASE_URL")
        return ChatOllama(**options)

    raise ValueError(f"Unknown LLM_PROVIDER: {provider!r} (expected one of {', '.join(SUPPORTED_PROVIDERS)})")
