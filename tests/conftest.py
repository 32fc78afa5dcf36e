import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from outreach_engine.core.config import EngineConfig
from outreach_engine.core.models import (
    Agent,
    ComposedMessage,
    Contact,
    ConversationState,
    SendResult,
)
from outreach_engine.database.memory import InMemoryRepository
from outreach_engine.errors import ComposerError

# Monday 09:00 UTC
BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


class FakeComposer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[dict] = []

    async def compose(self, contact_id, agent_id, message_type, context, channel="sms"):
        self.calls.append(
            {
                "contact_id": contact_id,
                "agent_id": agent_id,
                "message_type": message_type,
                "context": context,
                "channel": channel,
            }
        )
        if self.fail:
            raise ComposerError("model unavailable")
        subject = "A note from us" if channel == "email" else None
        return ComposedMessage(subject=subject, body=f"{message_type} message for {contact_id}")


class FakeSender:
    def __init__(self, fail_with: Optional[str] = None, delay: float = 0.0):
        self.fail_with = fail_with
        self.delay = delay
        self.sent: list[dict] = []
        self.attempts = 0

    async def send(self, channel, address, subject, body):
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            return SendResult(success=False, error=self.fail_with)
        self.sent.append({"channel": channel, "address": address, "subject": subject, "body": body})
        return SendResult(success=True, provider_message_id=f"provider-{len(self.sent)}")


class FakeEmbedder:
    def __init__(self, fail: bool = False):
        self.fail = fail

    async def embed(self, text):
        if self.fail:
            raise RuntimeError("embedding service down")
        return [0.1, 0.2, 0.3]


def make_contact(contact_id="contact-1", phone="+15550000001", email="dana@example.com", **kwargs) -> Contact:
    return Contact(
        id=contact_id,
        full_name=kwargs.pop("full_name", "Dana Reyes"),
        phone_number=phone,
        email=email,
        **kwargs,
    )


def make_agent(
    agent_id="agent-1",
    contact_id="contact-1",
    product_type="sales_agent",
    assigned=None,
    days=90,
    **kwargs,
) -> Agent:
    assigned = assigned or BASE_TIME
    return Agent(
        id=agent_id,
        contact_id=contact_id,
        product_type=product_type,
        assigned_date=assigned,
        expiration_date=kwargs.pop("expiration_date", assigned + timedelta(days=days)),
        **kwargs,
    )


def make_state(contact_id="contact-1", **kwargs) -> ConversationState:
    return ConversationState(contact_id=contact_id, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def composer():
    return FakeComposer()


@pytest.fixture
def sender():
    return FakeSender()
