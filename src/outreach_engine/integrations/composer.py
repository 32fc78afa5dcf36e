# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests>=2.31.0",
#   "pydantic>=2.0.0",
# ]
# ///
"""
Composer client - turns a trigger's context into message text.

The composer is an external HTTP service (usually LLM backed). It receives
``{contact_id, agent_id, message_type, trigger_context, channel}`` and answers
``{"message": "...", "subject": "..."}``. Any failure surfaces as
ComposerError; the caller drops the trigger for this pass.
"""

import asyncio
from typing import Any, Optional, Protocol

import requests

from outreach_engine.core.config import IntegrationConfig
from outreach_engine.core.models import ComposedMessage
from outreach_engine.errors import ComposerError


class Composer(Protocol):
    async def compose(
        self,
        contact_id: str,
        agent_id: str,
        message_type: str,
        context: dict[str, Any],
        channel: str = "sms",
    ) -> ComposedMessage:
        ...


class HttpComposer:
    """
    Composer backed by an HTTP endpoint.

    Attributes:
        url: Composer endpoint (COMPOSER_URL).
        enabled: False when no URL is configured.

    Example:
        >>> composer = HttpComposer(config.integrations)
        >>> composed = await composer.compose(contact_id, agent_id, "check_in", {"days_since_assigned": 1})
        >>> composed.body
        'Hi Dana, how are your first days going?'
    """

    def __init__(self, config: Optional[IntegrationConfig] = None):
        self.config = config or IntegrationConfig()
        self.url = self.config.composer_url
        self.enabled = bool(self.url)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _post(self, payload: dict) -> ComposedMessage:
        try:
            response = requests.post(
                self.url,
                headers=self._headers(),
                json=payload,
                timeout=self.config.http_timeout_seconds,
            )
        except requests.RequestException as e:
            raise ComposerError(f"Composer request failed: {e}") from e

        if response.status_code != 200:
            raise ComposerError(f"Composer error: {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise ComposerError(f"Composer returned invalid JSON: {e}") from e

        body = data.get("message") or data.get("body")
        if not body or not str(body).strip():
            raise ComposerError("Composer returned an empty message")
        return ComposedMessage(subject=data.get("subject"), body=str(body))

    async def compose(
        self,
        contact_id: str,
        agent_id: str,
        message_type: str,
        context: dict[str, Any],
        channel: str = "sms",
    ) -> ComposedMessage:
        if not self.enabled:
            raise ComposerError("COMPOSER_URL is not configured")

        payload = {
            "contact_id": contact_id,
            "agent_id": agent_id,
            "message_type": message_type,
            "trigger_context": context,
            "channel": channel,
        }
        return await asyncio.to_thread(self._post, payload)
