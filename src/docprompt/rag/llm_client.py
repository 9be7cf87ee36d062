"""LiteLLM client wrapper: moderation, embeddings with backoff, completions.

All provider calls made by training and by the completion engine route
through this module. API key presence is validated before any work begins.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

import litellm

logger = logging.getLogger(__name__)

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

T = TypeVar("T")

CHAT_COMPLETIONS = "chat_completions"
COMPLETIONS = "completions"

# Models served by the legacy prompt-in/text-out completions endpoint.
_LEGACY_COMPLETION_MODELS = (
    "text-davinci-003",
    "text-davinci-002",
    "davinci",
    "babbage-002",
    "davinci-002",
    "gpt-3.5-turbo-instruct",
)


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def validate_api_key(model: str, api_key: str | None = None) -> None:
    """Check that an API key is available for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.
        api_key: Caller-supplied key; when set, the environment is not checked.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    if api_key:
        return
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def model_family(model: str) -> str:
    """Return ``"completions"`` for legacy text models, else ``"chat_completions"``."""
    name = model.split("/")[-1]
    return COMPLETIONS if name in _LEGACY_COMPLETION_MODELS else CHAT_COMPLETIONS


# ------------------------------------------------------------------
# Backoff
# ------------------------------------------------------------------


def with_backoff(
    fn: Callable[[], T],
    num_attempts: int = 10,
    starting_delay: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn* until it succeeds, doubling the delay between attempts.

    The first attempt runs immediately. The last exception is re-raised once
    *num_attempts* calls have failed.
    """
    delay = starting_delay
    for attempt in range(1, num_attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if attempt == num_attempts:
                raise
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.0fs",
                attempt,
                num_attempts,
                exc,
                delay,
            )
            sleep(delay)
            delay *= 2
    raise RuntimeError("num_attempts must be >= 1")


# ------------------------------------------------------------------
# Moderation and embeddings
# ------------------------------------------------------------------


def moderate(text: str, model: str | None = None, api_key: str | None = None) -> bool:
    """Return True when the moderation endpoint flags *text*."""
    kwargs: dict = {"input": text}
    if model:
        kwargs["model"] = model
    if api_key:
        kwargs["api_key"] = api_key
    response = litellm.moderation(**kwargs)
    return any(result.flagged for result in response.results)


@dataclass
class EmbeddingResult:
    vector: list[float]
    total_tokens: int


def embed(
    model: str, text: str, api_key: str | None = None, num_retries: int = 3
) -> EmbeddingResult:
    """Call litellm.embedding() for a single input.

    Args:
        model: LiteLLM embedding model string (provider/model format).
        text: Text to embed.
        api_key: Optional caller-supplied provider key.
        num_retries: LiteLLM-level retries on transient errors.
    """
    kwargs: dict = {"model": model, "input": [text], "num_retries": num_retries}
    if api_key:
        kwargs["api_key"] = api_key
    response = litellm.embedding(**kwargs)
    usage = getattr(response, "usage", None)
    total_tokens = getattr(usage, "total_tokens", 0) or 0
    return EmbeddingResult(vector=response.data[0]["embedding"], total_tokens=total_tokens)


# ------------------------------------------------------------------
# Completions
# ------------------------------------------------------------------


@dataclass
class CompletionParams:
    """Sampling parameters forwarded to the provider."""

    temperature: float = 0.1
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    max_tokens: int = 500


@dataclass
class CompletionResult:
    text: str
    total_tokens: int


def _request_kwargs(
    model: str, prompt: str, params: CompletionParams, stream: bool, api_key: str | None
) -> dict:
    kwargs: dict = {
        "model": model,
        "temperature": params.temperature,
        "top_p": params.top_p,
        "frequency_penalty": params.frequency_penalty,
        "presence_penalty": params.presence_penalty,
        "max_tokens": params.max_tokens,
        "stream": stream,
        "n": 1,
    }
    if model_family(model) == CHAT_COMPLETIONS:
        kwargs["messages"] = [{"role": "user", "content": prompt}]
    else:
        kwargs["prompt"] = prompt
    if api_key:
        kwargs["api_key"] = api_key
    return kwargs


def _call(kwargs: dict):
    if "messages" in kwargs:
        return litellm.completion(**kwargs)
    return litellm.text_completion(**kwargs)


def complete(
    model: str,
    prompt: str,
    params: CompletionParams | None = None,
    api_key: str | None = None,
) -> CompletionResult:
    """Run a non-streaming completion and return its text and token usage."""
    kwargs = _request_kwargs(model, prompt, params or CompletionParams(), False, api_key)
    response = _call(kwargs)
    choice = response.choices[0]
    if "messages" in kwargs:
        text = choice.message.content or ""
    else:
        text = getattr(choice, "text", None) or ""
    usage = getattr(response, "usage", None)
    return CompletionResult(text=text, total_tokens=getattr(usage, "total_tokens", 0) or 0)


def stream_complete(
    model: str,
    prompt: str,
    params: CompletionParams | None = None,
    api_key: str | None = None,
) -> Iterator[str]:
    """Start a streaming completion and return an iterator of text fragments.

    The provider request is issued before this function returns, so request
    errors surface here rather than on first iteration.
    """
    kwargs = _request_kwargs(model, prompt, params or CompletionParams(), True, api_key)
    response = _call(kwargs)
    chat = "messages" in kwargs

    def fragments() -> Iterator[str]:
        for chunk in response:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            if chat:
                text = getattr(choice.delta, "content", None)
            else:
                text = getattr(choice, "text", None)
            yield text or ""

    return fragments()


def count_tokens(model: str, text: str) -> int:
    """Count tokens in *text* for *model* using LiteLLM's provider-aware counter.

    Falls back to character-based approximation (4 chars ≈ 1 token) if the model
    is not supported by litellm.token_counter().
    """
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        return max(1, len(text) // 4)
