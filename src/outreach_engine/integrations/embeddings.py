"""
Embedding client for sent message text.

Embeddings are a secondary side effect: they run on the SideEffectQueue
after the message is already sent, so every error here is only logged.
"""

import asyncio
import logging
from typing import Optional, Protocol

import requests

from outreach_engine.core.config import IntegrationConfig

logger = logging.getLogger(__name__)

EMBEDDING_MODEL = "text-embedding-3-small"


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]:
        ...


class HttpEmbedder:
    """OpenAI-compatible ``/embeddings`` endpoint (EMBEDDINGS_URL)."""

    def __init__(self, config: Optional[IntegrationConfig] = None, model: str = EMBEDDING_MODEL):
        self.config = config or IntegrationConfig()
        self.url = self.config.embeddings_url
        self.model = model
        self.enabled = bool(self.url)

    def _post(self, text: str) -> list[float]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        response = requests.post(
            self.url,
            headers=headers,
            json={"model": self.model, "input": text},
            timeout=self.config.http_timeout_seconds,
        )
        response.raise_for_status()
        return list(response.json()["data"][0]["embedding"])

    async def embed(self, text: str) -> list[float]:
        if not self.enabled:
            raise RuntimeError("EMBEDDINGS_URL is not configured")
        return await asyncio.to_thread(self._post, text)
