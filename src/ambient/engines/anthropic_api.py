"""Anthropic API summarizer: a small fast model, no tools."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5"


@dataclass
class AnthropicSummarizer:
    """Direct Anthropic API via the `anthropic` SDK.

    The client is built on first use so a daemon without credentials still
    starts; every call then fails soft and returns None.
    """

    model: str = DEFAULT_MODEL
    timeout: float = 30.0
    api_key: str | None = None
    _client: Any = field(default=None, init=False, repr=False)

    @property
    def name(self) -> str:
        return "anthropic_api"

    def _get_client(self) -> Any:
        if self._client is None:
            import anthropic

            self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 1024,
        system: str | None = None,
    ) -> str | None:
        kwargs: dict = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        try:
            client = self._get_client()
            response = await asyncio.to_thread(client.messages.create, **kwargs)
        except Exception as e:
            logger.warning("Anthropic API error: %s", e)
            return None

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        ).strip()
        return text or None
