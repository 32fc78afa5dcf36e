from datetime import timedelta

import pytest
from conftest import BASE_TIME

from outreach_engine.core.config import DispatchConfig
from outreach_engine.core.models import ScheduledMessage
from outreach_engine.errors import EngineError
from outreach_engine.scheduling.scheduler import Scheduler


@pytest.mark.asyncio
async def test_schedule_defaults_to_now(repository, clock):
    scheduler = Scheduler(repository, clock=clock)

    message = await scheduler.schedule("contact-1", "agent-1", "check_in", "sms", None, "Hi there")

    assert message.id
    assert message.status == "pending"
    assert message.scheduled_for == BASE_TIME
    assert message.created_at == BASE_TIME
    assert message.retry_count == 0
    assert (await repository.get_scheduled_message(message.id)).body == "Hi there"


@pytest.mark.asyncio
async def test_schedule_for_later(repository, clock):
    later = BASE_TIME + timedelta(hours=3)
    message = await Scheduler(repository, clock=clock).schedule(
        "contact-1", "agent-1", "upsell", "email", "Next steps", "Body", scheduled_for=later
    )

    assert message.scheduled_for == later
    assert message.subject == "Next steps"
    assert await repository.fetch_due_messages(BASE_TIME, 10, 600) == []


async def _failed(repository, retry_count=1):
    return await repository.create_scheduled_message(
        ScheduledMessage(
            contact_id="contact-1",
            agent_id="agent-1",
            message_type="check_in",
            scheduled_for=BASE_TIME - timedelta(hours=1),
            body="Checking in",
            status="failed",
            retry_count=retry_count,
            error_message="carrier rejected destination",
        )
    )


@pytest.mark.asyncio
async def test_requeue_creates_linked_pending_copy(repository, clock):
    failed = await _failed(repository)
    clock.advance(hours=2)

    copy = await Scheduler(repository, clock=clock).requeue_failed(failed.id)

    assert copy.id != failed.id
    assert copy.status == "pending"
    assert copy.requeued_from == failed.id
    assert copy.retry_count == 1
    assert copy.scheduled_for == clock()
    assert copy.body == "Checking in"
    original = await repository.get_scheduled_message(failed.id)
    assert original.status == "failed"


@pytest.mark.asyncio
async def test_requeue_bounded_by_max_retries(repository, clock):
    failed = await _failed(repository, retry_count=3)

    with pytest.raises(EngineError, match="limit is 3"):
        await Scheduler(repository, DispatchConfig(max_retries=3), clock=clock).requeue_failed(failed.id)


@pytest.mark.asyncio
async def test_requeue_rejects_pending_and_unknown(repository, clock):
    scheduler = Scheduler(repository, clock=clock)
    pending = await scheduler.schedule("contact-1", "agent-1", "check_in", "sms", None, "Hi")

    with pytest.raises(EngineError, match="Only failed"):
        await scheduler.requeue_failed(pending.id)
    with pytest.raises(EngineError, match="not found"):
        await scheduler.requeue_failed("no-such-message")
