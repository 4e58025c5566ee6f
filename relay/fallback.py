"""Fallback backend chain.

When the primary engine reports an error or times out, the prompt is sent
to OpenRouter (cloud) and then to a local Ollama server. Failures at each
tier are logged and never raised, so the user always gets some reply.
"""

from typing import Any

import httpx
import structlog

from relay.config import RelaySettings

logger = structlog.get_logger(__name__)

ALL_BACKENDS_DOWN_TEXT = (
    "I'm having trouble connecting to all my backends right now. "
    "Please try again in a few minutes."
)


class FallbackChain:
    """Tries secondary LLM backends in order.

    Usage:
        chain = FallbackChain(settings)
        text = await chain.complete(prompt)
    """

    def __init__(self, settings: RelaySettings, client: httpx.AsyncClient | None = None):
        """Initialize the chain.

        Args:
            settings: Relay settings with backend URLs, keys and models
            client: Shared HTTP client; a short-lived one is used per call if None
        """
        self.settings = settings
        self._client = client

    async def complete(self, prompt: str) -> str:
        """Return the first non-empty backend answer, or a fixed apology."""
        if self._client is not None:
            return await self._complete(self._client, prompt)
        async with httpx.AsyncClient(timeout=self.settings.fallback_timeout_seconds) as client:
            return await self._complete(client, prompt)

    async def _complete(self, client: httpx.AsyncClient, prompt: str) -> str:
        if self.settings.openrouter_api_key:
            text = await self._openrouter(client, prompt)
            if text:
                return text

        text = await self._ollama(client, prompt)
        if text:
            return text

        logger.error("All fallback backends failed")
        return ALL_BACKENDS_DOWN_TEXT

    async def _openrouter(self, client: httpx.AsyncClient, prompt: str) -> str | None:
        model = self.settings.openrouter_model
        logger.info("Fallback: trying OpenRouter", model=model)
        try:
            response = await client.post(
                self.settings.openrouter_url,
                headers={
                    "Authorization": f"Bearer {self.settings.openrouter_api_key}",
                    "X-Title": "Telegram Relay",
                },
                json={
                    "model": model,
                    "messages": [{"role": "user", "content": prompt}],
                    "max_tokens": 2048,
                },
            )
            response.raise_for_status()
            data: dict[str, Any] = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "OpenRouter error",
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("OpenRouter failed", error=str(e))
            return None

        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        text = message.get("content") or message.get("reasoning") or ""
        if text:
            logger.info("OpenRouter responded", model=model)
        return text or None

    async def _ollama(self, client: httpx.AsyncClient, prompt: str) -> str | None:
        model = self.settings.ollama_model
        logger.info("Fallback: trying Ollama", model=model)
        try:
            response = await client.post(
                f"{self.settings.ollama_url.rstrip('/')}/api/chat",
                json={
                    "model": model,
                    "messages": [{"role": "user", "content": prompt}],
                    "stream": False,
                },
            )
            response.raise_for_status()
            data: dict[str, Any] = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning("Ollama error", status_code=e.response.status_code)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Ollama failed (is it running?)", error=str(e))
            return None

        text = (data.get("message") or {}).get("content") or ""
        if text:
            logger.info("Ollama responded", model=model)
        return text or None
