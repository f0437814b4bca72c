"""Completion service: the narrow sync contract the reply pipeline uses.

``classify(prompt) -> label text`` and ``generate_reply(conversation) -> text``
are plain blocking calls; the async provider is bridged with run_async.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Protocol

import httpx

from mailpilot.core.async_utils import run_async
from mailpilot.core.config import settings
from mailpilot.services.ai_provider import AIProvider, ChatMessage, get_provider
from mailpilot.services.errors import CompletionError

logger = logging.getLogger(__name__)

REPLY_INSTRUCTIONS = (
    "You are an email assistant replying on behalf of the mailbox owner. "
    "Read the conversation below and write the body of a concise, friendly, "
    "helpful reply to the most recent message. Do not include a subject line, "
    "greeting placeholders, or a signature block."
)

FOLLOW_UP_INSTRUCTIONS = (
    "You are an email assistant writing on behalf of the mailbox owner. The "
    "last message in the conversation below was our reply and it has not been "
    "answered. Write a short, polite follow-up that gently checks in and "
    "restates the key point. Do not include a subject line or a signature block."
)


class CompletionClient(Protocol):
    def classify(self, prompt: str) -> str: ...

    def generate_reply(self, conversation_text: str, *, follow_up: bool = False) -> str: ...


class CompletionService:
    """CompletionClient backed by an AIProvider."""

    def __init__(self, provider: AIProvider, *, timeout: float | None = None):
        self.provider = provider
        self.timeout = timeout

    def _chat(self, messages: list[ChatMessage], *, temperature: float, max_tokens: int) -> str:
        try:
            response = run_async(
                self.provider.chat(messages, temperature=temperature, max_tokens=max_tokens),
                timeout=self.timeout,
            )
        except (httpx.HTTPError, TimeoutError, KeyError, IndexError) as exc:
            raise CompletionError(f"Completion request failed: {type(exc).__name__}") from exc
        content = (response.content or "").strip()
        if not content:
            raise CompletionError("Completion returned no content")
        return content

    def classify(self, prompt: str) -> str:
        return self._chat(
            [ChatMessage(role="user", content=prompt)],
            temperature=0.0,
            max_tokens=20,
        )

    def generate_reply(self, conversation_text: str, *, follow_up: bool = False) -> str:
        instructions = FOLLOW_UP_INSTRUCTIONS if follow_up else REPLY_INSTRUCTIONS
        return self._chat(
            [
                ChatMessage(role="system", content=instructions),
                ChatMessage(role="user", content=conversation_text),
            ],
            temperature=0.7,
            max_tokens=1000,
        )


@lru_cache
def get_completion_service() -> CompletionService:
    """Build the configured provider once per process."""
    provider_name = settings.AI_PROVIDER.strip().lower()
    api_key = settings.GEMINI_API_KEY if provider_name == "gemini" else settings.OPENAI_API_KEY
    if not api_key:
        raise CompletionError(f"No API key configured for AI provider '{provider_name}'")
    provider = get_provider(
        provider_name,
        api_key,
        settings.AI_MODEL or None,
        timeout=settings.AI_TIMEOUT_SECONDS,
    )
    return CompletionService(provider, timeout=settings.AI_TIMEOUT_SECONDS * 3)
