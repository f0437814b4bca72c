"""Chat providers behind the completion service.

Each provider only knows its wire format; the HTTP round-trip, retries and
usage logging live in ``AIProvider.chat``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from mailpilot.services.http_service import request_with_retries

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatMessage:
    role: str  # 'system', 'user', 'assistant'
    content: str


@dataclass(frozen=True)
class ChatResponse:
    content: str
    model: str
    total_tokens: int = 0


@dataclass(frozen=True)
class ProviderRequest:
    url: str
    body: dict[str, Any]
    headers: dict[str, str]
    params: dict[str, str] | None = None


class AIProvider(ABC):
    """One chat-completion backend."""

    name = "base"

    def __init__(
        self,
        api_key: str,
        default_model: str,
        *,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    def build_request(
        self,
        messages: list[ChatMessage],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> ProviderRequest: ...

    @abstractmethod
    def parse_response(self, data: dict, *, model: str) -> ChatResponse: ...

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ) -> ChatResponse:
        """Send one chat request. HTTP errors surface as httpx.HTTPStatusError."""
        model = model or self.default_model
        request = self.build_request(
            messages, model=model, temperature=temperature, max_tokens=max_tokens
        )
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await request_with_retries(
                lambda: client.post(
                    request.url,
                    params=request.params,
                    headers=request.headers,
                    json=request.body,
                )
            )
            response.raise_for_status()
            result = self.parse_response(response.json(), model=model)
        logger.debug("%s completion used %s tokens", self.name, result.total_tokens)
        return result


class OpenAIProvider(AIProvider):
    name = "openai"
    base_url = "https://api.openai.com/v1"

    def build_request(self, messages, *, model, temperature, max_tokens) -> ProviderRequest:
        return ProviderRequest(
            url=f"{self.base_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            body={
                "model": model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )

    def parse_response(self, data: dict, *, model: str) -> ChatResponse:
        return ChatResponse(
            content=data["choices"][0]["message"]["content"] or "",
            model=model,
            total_tokens=int((data.get("usage") or {}).get("total_tokens", 0)),
        )


class GeminiProvider(AIProvider):
    name = "gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def build_request(self, messages, *, model, temperature, max_tokens) -> ProviderRequest:
        # Gemini has no system role; instructions travel in systemInstruction.
        system_parts = [{"text": m.content} for m in messages if m.role == "system"]
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in messages
            if m.role != "system"
        ]
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        return ProviderRequest(
            url=f"{self.base_url}/models/{model}:generateContent",
            params={"key": self.api_key},
            headers={"Content-Type": "application/json"},
            body=body,
        )

    def parse_response(self, data: dict, *, model: str) -> ChatResponse:
        parts = data["candidates"][0]["content"]["parts"]
        usage = data.get("usageMetadata") or {}
        return ChatResponse(
            content="".join(part.get("text", "") for part in parts),
            model=model,
            total_tokens=int(usage.get("promptTokenCount", 0)) + int(usage.get("candidatesTokenCount", 0)),
        )


_PROVIDERS: dict[str, tuple[type[AIProvider], str]] = {
    "openai": (OpenAIProvider, "gpt-4o-mini"),
    "gemini": (GeminiProvider, "gemini-2.0-flash"),
}


def get_provider(
    provider_name: str,
    api_key: str,
    model: str | None = None,
    *,
    timeout: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AIProvider:
    """Build the named provider; unknown names raise ValueError."""
    try:
        provider_cls, default_model = _PROVIDERS[provider_name]
    except KeyError:
        raise ValueError(f"Unknown provider: {provider_name}") from None
    return provider_cls(api_key, model or default_model, timeout=timeout, transport=transport)
