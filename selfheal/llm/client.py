"""
LLM Client
==========
Streaming AI provider used by RepairOrchestrator.

Contract (AIProvider):
    generate_stream(prompt) → async iterator of text chunks.
    Anything satisfying that shape can drive a repair; tests use fakes.

Streaming Transports:
    - Gemini: POST models/<model>:streamGenerateContent?alt=sse
    - OpenAI-compatible (Groq, OpenRouter): POST chat/completions, stream=true
    Both deliver Server-Sent Events; each "data:" line carries one JSON
    delta, decoded by ``parse_sse_line``.

Provider Fallback:
    - Providers come from LLMRouter in priority order
    - A failure BEFORE the first chunk → report failure, try the next one
    - A failure AFTER the first chunk → AIProviderError (a half-streamed
      answer cannot be stitched to another model's answer)
"""
import json
import logging
from typing import AsyncIterator, Optional, Protocol, runtime_checkable

import httpx

from selfheal.core.exceptions import AIProviderError
from selfheal.llm.prompts import SYSTEM_PROMPT
from selfheal.llm.router import LLMRouter, ProviderConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class AIProvider(Protocol):
    def generate_stream(self, prompt: str) -> AsyncIterator[str]:
        ...


# ---------------------------------------------------------------------------
# SSE decoding
# ---------------------------------------------------------------------------
def parse_sse_line(line: str, api_style: str) -> Optional[str]:
    """
    Decode one Server-Sent Events line into a text delta.

    Parameters
    ----------
    line : str
        Raw line from the response body.
    api_style : str
        "gemini" or "openai".

    Returns
    -------
    str or None
        The text delta, or None for keep-alives, [DONE] and empty deltas.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON SSE payload: %s", payload[:80])
        return None

    try:
        if api_style == "gemini":
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(p.get("text", "") for p in parts) or None
        delta = data["choices"][0].get("delta", {})
        return delta.get("content") or None
    except (IndexError, KeyError, TypeError):
        return None


# ---------------------------------------------------------------------------
# Streaming client
# ---------------------------------------------------------------------------
class StreamingLLMClient:
    """
    Async streaming client for the configured LLM providers.

    Usage:
        client = StreamingLLMClient(LLMRouter())
        async for chunk in client.generate_stream(prompt):
            ...
        await client.close()
    """

    def __init__(self, router: Optional[LLMRouter] = None, system_prompt: str = SYSTEM_PROMPT) -> None:
        self.router = router or LLMRouter()
        self.system_prompt = system_prompt
        self._http: Optional[httpx.AsyncClient] = None

    async def _get_http(self) -> httpx.AsyncClient:
        """Lazy-initialise the HTTP client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(60.0))
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    async def generate_stream(self, prompt: str) -> AsyncIterator[str]:
        providers = self.router.candidates()
        if not providers:
            raise AIProviderError("No AI provider configured (set GEMINI_API_KEY, GROQ_API_KEY or OPENROUTER_API_KEY)")

        last_error = ""
        for provider in providers:
            started = False
            try:
                async for chunk in self._stream_provider(prompt, provider):
                    started = True
                    yield chunk
                if not started:
                    raise AIProviderError(f"{provider.name} returned an empty stream")
                self.router.report_success(provider.name)
                return
            except (httpx.HTTPError, AIProviderError) as e:
                self.router.report_failure(provider.name)
                if started:
                    logger.error("Provider %s failed mid-stream: %s", provider.name, e)
                    raise AIProviderError(f"{provider.name} failed mid-stream: {e}") from e
                last_error = f"{provider.name}: {e}"
                logger.warning("Provider %s failed before first chunk: %s", provider.name, e)

        raise AIProviderError(f"All providers failed ({last_error})")

    async def _stream_provider(self, prompt: str, provider: ProviderConfig) -> AsyncIterator[str]:
        http = await self._get_http()
        if provider.api_style == "gemini":
            url = (
                f"{provider.base_url}/models/{provider.model}:streamGenerateContent"
                f"?alt=sse&key={provider.api_key}"
            )
            headers = {"Content-Type": "application/json"}
            payload = {
                "system_instruction": {"parts": [{"text": self.system_prompt}]},
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": provider.temperature,
                    "maxOutputTokens": provider.max_output_tokens,
                },
            }
        else:
            url = f"{provider.base_url}/chat/completions"
            headers = {
                "Authorization": f"Bearer {provider.api_key}",
                "Content-Type": "application/json",
            }
            payload = {
                "model": provider.model,
                "messages": [
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": prompt},
                ],
                "temperature": provider.temperature,
                "max_tokens": provider.max_output_tokens,
                "stream": True,
            }

        timeout = httpx.Timeout(provider.timeout_seconds)
        async with http.stream("POST", url, json=payload, headers=headers, timeout=timeout) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                text = parse_sse_line(line, provider.api_style)
                if text:
                    yield text
