"""
API Clients — one async text-completion interface over OpenAI, Anthropic, Google
===============================================================================
LLMClient.complete() hides each SDK's call shape behind a single coroutine and
adds a timeout, retry with exponential backoff on rate limits, a concurrency
limit and a primary → fallback model switch.

Provider keys come from the environment (.env loaded with python-dotenv):
OPENAI_API_KEY, ANTHROPIC_API_KEY, GOOGLE_API_KEY / GEMINI_API_KEY. A provider
without a key is simply unavailable.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Optional

from dotenv import load_dotenv

from .collaborators import CollaboratorError
from .models import ErrorKind

logger = logging.getLogger("reasoner.api")

# model-name prefix → provider
_PROVIDER_PREFIXES: tuple[tuple[str, str], ...] = (
    ("gpt-", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("claude-", "anthropic"),
    ("gemini-", "google"),
    ("gemma-", "google"),
)


def get_provider(model: str) -> str:
    for prefix, provider in _PROVIDER_PREFIXES:
        if model.startswith(prefix):
            return provider
    raise ValueError(f"Unknown provider for model {model!r}")


class APIResponse:
    """Normalized response from any provider."""
    __slots__ = ("text", "input_tokens", "output_tokens", "model", "latency_ms")

    def __init__(self, text: str, input_tokens: int, output_tokens: int,
                 model: str, latency_ms: float = 0.0):
        self.text = text
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.model = model
        self.latency_ms = latency_ms


class LLMClient:
    """
    Async completion client with:
    - Retry with exponential backoff on rate limits
    - Timeout enforcement
    - Concurrency limiting
    - Fallback model when the primary is unavailable or keeps failing
    """

    def __init__(self, default_model: str, fallback_model: Optional[str] = None,
                 max_concurrency: int = 3, load_env: bool = True):
        self.default_model = default_model
        self.fallback_model = fallback_model
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self._clients: dict[str, object] = {}
        if load_env:
            load_dotenv(override=True)
            self._init_clients()

    def _init_clients(self) -> None:
        """Instantiate the SDK client of every provider that has a key."""
        if os.environ.get("OPENAI_API_KEY"):
            from openai import AsyncOpenAI
            self._clients["openai"] = AsyncOpenAI()
            logger.info("OpenAI client initialized")

        if os.environ.get("ANTHROPIC_API_KEY"):
            from anthropic import AsyncAnthropic
            self._clients["anthropic"] = AsyncAnthropic()
            logger.info("Anthropic client initialized")

        api_key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
        if api_key:
            from google import genai
            self._clients["google"] = genai.Client(api_key=api_key)
            logger.info("Google GenAI client initialized")

    def is_available(self, model: str) -> bool:
        try:
            return get_provider(model) in self._clients
        except ValueError:
            return False

    def _candidate_models(self, model: Optional[str]) -> list[str]:
        models = [model or self.default_model]
        if self.fallback_model and self.fallback_model not in models:
            models.append(self.fallback_model)
        return [m for m in models if self.is_available(m)]

    async def complete(self, prompt: str, system: str = "",
                       model: Optional[str] = None,
                       max_tokens: int = 1500,
                       temperature: float = 0.3,
                       timeout: float = 60,
                       retries: int = 2) -> APIResponse:
        """
        Primary model first, then the fallback. Raises CollaboratorError when
        no configured model produced a response.
        """
        candidates = self._candidate_models(model)
        if not candidates:
            raise CollaboratorError(
                f"No provider configured for {model or self.default_model}"
                + (f" or {self.fallback_model}" if self.fallback_model else "")
            )

        last_error: Optional[BaseException] = None
        for candidate in candidates:
            try:
                async with self.semaphore:
                    return await self._call_with_retry(
                        candidate, prompt, system, max_tokens, temperature,
                        timeout, retries,
                    )
            except Exception as e:
                last_error = e
                logger.warning("Model %s failed: %s", candidate, e)

        if isinstance(last_error, TimeoutError):
            raise CollaboratorError(str(last_error), ErrorKind.TIMEOUT) from last_error
        raise CollaboratorError(f"All models failed: {last_error}") from last_error

    async def _call_with_retry(self, model: str, prompt: str,
                               system: str, max_tokens: int,
                               temperature: float, timeout: float,
                               retries: int) -> APIResponse:
        last_error: Optional[BaseException] = None
        for attempt in range(retries + 1):
            try:
                t0 = time.monotonic()
                response = await asyncio.wait_for(
                    self._dispatch(model, prompt, system, max_tokens, temperature),
                    timeout=timeout,
                )
                response.latency_ms = (time.monotonic() - t0) * 1000
                return response

            except asyncio.TimeoutError:
                logger.warning("Timeout calling %s (attempt %d)", model, attempt + 1)
                last_error = TimeoutError(f"{model} timed out after {timeout}s")
            except Exception as e:
                logger.warning("Error calling %s: %s (attempt %d)", model, e, attempt + 1)
                last_error = e
                if "rate_limit" in str(e).lower() or "429" in str(e):
                    await asyncio.sleep(2 ** attempt)
                    continue

        raise last_error or RuntimeError(f"Failed to call {model}")

    async def _dispatch(self, model: str, prompt: str, system: str,
                        max_tokens: int, temperature: float) -> APIResponse:
        provider = get_provider(model)
        if provider == "openai":
            return await self._call_openai(model, prompt, system, max_tokens, temperature)
        if provider == "anthropic":
            return await self._call_anthropic(model, prompt, system, max_tokens, temperature)
        return await self._call_google(model, prompt, system, max_tokens, temperature)

    async def _call_openai(self, model: str, prompt: str, system: str,
                           max_tokens: int, temperature: float) -> APIResponse:
        client = self._clients["openai"]
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        usage = response.usage
        return APIResponse(
            text=response.choices[0].message.content or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            model=model,
        )

    async def _call_anthropic(self, model: str, prompt: str, system: str,
                              max_tokens: int, temperature: float) -> APIResponse:
        client = self._clients["anthropic"]
        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        response = await client.messages.create(**kwargs)
        text = "".join(block.text for block in response.content if hasattr(block, "text"))
        return APIResponse(
            text=text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=model,
        )

    async def _call_google(self, model: str, prompt: str, system: str,
                           max_tokens: int, temperature: float) -> APIResponse:
        client = self._clients["google"]
        from google.genai import types

        config = types.GenerateContentConfig(
            max_output_tokens=max_tokens,
            temperature=temperature,
        )
        if system:
            config.system_instruction = system

        response = await client.aio.models.generate_content(
            model=model, contents=prompt, config=config,
        )
        usage = getattr(response, "usage_metadata", None)
        return APIResponse(
            text=response.text or "",
            input_tokens=(getattr(usage, "prompt_token_count", 0) or 0) if usage else 0,
            output_tokens=(getattr(usage, "candidates_token_count", 0) or 0) if usage else 0,
            model=model,
        )
