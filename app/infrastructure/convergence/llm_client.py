"""
Adapters: generative-AI service clients.

Implement GenerativeModelPort with two providers:
- LiteLLM, for provider-agnostic access (OpenAI, Anthropic, Groq, ...)
- OpenRouter, called directly over a shared httpx.AsyncClient

Both translate every transport or service failure into AIServiceError,
carrying the Retry-After hint when the service sends one. Clients are
built once per process and closed on shutdown.
"""

import logging
from typing import Any, Optional

import httpx
import litellm

from app.domain.convergence.entities import ModelCompletion
from app.domain.convergence.errors import AIServiceError
from app.domain.convergence.ports import GenerativeModelPort

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


def parse_retry_after(value: Any) -> Optional[float]:
    """Return a Retry-After header value in seconds, if it is numeric."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def _messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


class LiteLLMGenerativeClient(GenerativeModelPort):
    """Generative model reached through LiteLLM's async completion API."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        max_tokens: int = 512,
        temperature: float = 0.2,
    ) -> None:
        self._model = model
        self._api_key = api_key or None
        self._max_tokens = max_tokens
        self._temperature = temperature
        logger.info("LiteLLM client initialized: model=%s", model)

    @property
    def model_name(self) -> str:
        return self._model

    async def complete(
        self, system_prompt: str, user_prompt: str, timeout: float
    ) -> ModelCompletion:
        try:
            response = await litellm.acompletion(
                model=self._model,
                messages=_messages(system_prompt, user_prompt),
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                timeout=timeout,
                api_key=self._api_key,
                num_retries=0,
            )
        except Exception as exc:
            headers = getattr(getattr(exc, "response", None), "headers", None) or {}
            raise AIServiceError(
                f"{type(exc).__name__}: {exc}",
                retry_after=parse_retry_after(headers.get("retry-after")),
            ) from exc

        try:
            text = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as exc:
            raise AIServiceError("unexpected completion shape") from exc
        usage = getattr(response, "usage", None)
        return ModelCompletion(
            text=text.strip(),
            model=getattr(response, "model", None) or self._model,
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )


class OpenRouterGenerativeClient(GenerativeModelPort):
    """Generative model reached through OpenRouter's chat completions API.

    Args:
        model: OpenRouter model identifier.
        api_key: OpenRouter API key.
        url: Chat completions endpoint.
        max_tokens: Completion token limit.
        temperature: Sampling temperature.
        client: Shared AsyncClient; one is created when omitted.
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        url: str = OPENROUTER_URL,
        max_tokens: int = 512,
        temperature: float = 0.2,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._model = model
        self._url = url
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client = client or httpx.AsyncClient()
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        logger.info("OpenRouter client initialized: model=%s", model)

    @property
    def model_name(self) -> str:
        return self._model

    async def complete(
        self, system_prompt: str, user_prompt: str, timeout: float
    ) -> ModelCompletion:
        payload = {
            "model": self._model,
            "messages": _messages(system_prompt, user_prompt),
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        try:
            response = await self._client.post(
                self._url, json=payload, headers=self._headers, timeout=timeout
            )
        except httpx.TimeoutException as exc:
            raise AIServiceError(f"request timed out after {timeout:.1f}s") from exc
        except httpx.HTTPError as exc:
            raise AIServiceError(f"transport error: {exc}") from exc

        if response.status_code >= 400:
            raise AIServiceError(
                f"HTTP {response.status_code}",
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )

        try:
            body = response.json()
            text = body["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise AIServiceError("unexpected completion shape") from exc

        usage = body.get("usage") or {}
        return ModelCompletion(
            text=text.strip(),
            model=body.get("model") or self._model,
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def build_generative_client(
    provider: str,
    model: str,
    api_key: str,
    max_tokens: int,
    temperature: float,
    openrouter_url: str = OPENROUTER_URL,
) -> GenerativeModelPort:
    """Construct the configured generative-AI client."""
    if provider.lower() == "openrouter":
        return OpenRouterGenerativeClient(
            model=model,
            api_key=api_key,
            url=openrouter_url,
            max_tokens=max_tokens,
            temperature=temperature,
        )
    return LiteLLMGenerativeClient(
        model=model,
        api_key=api_key,
        max_tokens=max_tokens,
        temperature=temperature,
    )
