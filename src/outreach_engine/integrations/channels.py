# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests>=2.31.0",
#   "rich>=13.0.0",
# ]
# ///
"""
Outbound channel senders (SMS and email gateways).

A sender never raises for a delivery problem: it returns a SendResult whose
``success`` is False and whose ``error`` explains why. The Dispatcher turns
that into a ``failed`` message.
"""

import asyncio
import logging
from typing import Optional, Protocol

import requests
from rich.console import Console

from outreach_engine.core.config import IntegrationConfig
from outreach_engine.core.models import Channel, SendResult
from outreach_engine.errors import ChannelSendError

logger = logging.getLogger(__name__)


class ChannelSender(Protocol):
    async def send(
        self, channel: str, address: str, subject: Optional[str], body: str
    ) -> SendResult:
        ...


class HttpChannelSender:
    """
    Sends through HTTP gateways: ``{to, message}`` for SMS and
    ``{to, subject, htmlBody}`` for email.
    """

    def __init__(self, config: Optional[IntegrationConfig] = None):
        self.config = config or IntegrationConfig()

    def _url_for(self, channel: str) -> str:
        url = (
            self.config.sms_gateway_url
            if channel == Channel.SMS
            else self.config.email_gateway_url
        )
        if not url:
            raise ChannelSendError(f"No gateway configured for channel {channel}")
        return url

    def _payload(self, channel: str, address: str, subject: Optional[str], body: str) -> dict:
        if channel == Channel.SMS:
            return {"to": address, "message": body}
        return {
            "to": address,
            "subject": subject or self.config.default_email_subject,
            "htmlBody": body,
        }

    def _post(self, channel: str, address: str, subject: Optional[str], body: str) -> SendResult:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        try:
            response = requests.post(
                self._url_for(channel),
                headers=headers,
                json=self._payload(channel, address, subject, body),
                timeout=self.config.http_timeout_seconds,
            )
        except ChannelSendError as e:
            return SendResult(success=False, error=str(e))
        except requests.RequestException as e:
            return SendResult(success=False, error=f"{channel} gateway request failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.ok:
            error = data.get("error") if isinstance(data, dict) else None
            return SendResult(
                success=False,
                error=error or f"{channel} gateway error: {response.status_code}",
            )

        provider_id = None
        if isinstance(data, dict):
            provider_id = data.get("messageSid") or data.get("messageId") or data.get("id")
        return SendResult(success=True, provider_message_id=provider_id)

    async def send(
        self, channel: str, address: str, subject: Optional[str], body: str
    ) -> SendResult:
        return await asyncio.to_thread(self._post, channel, address, subject, body)


class ConsoleChannelSender:
    """Dry-run sender: prints instead of delivering. Always succeeds."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.sent: list[tuple[str, str, Optional[str], str]] = []

    async def send(
        self, channel: str, address: str, subject: Optional[str], body: str
    ) -> SendResult:
        self.sent.append((channel, address, subject, body))
        title = f" [bold]{subject}[/bold]" if subject else ""
        self.console.print(f"[cyan][dry-run] {channel} -> {address}:{title}[/cyan] {body[:80]}")
        return SendResult(success=True, provider_message_id=f"dry-run-{len(self.sent)}")
