"""End-to-end tests for the trigger sweep (and the dispatch that follows)."""

from datetime import timedelta

import pytest
from conftest import BASE_TIME, FakeComposer, make_agent, make_contact, make_state

from outreach_engine.core.models import ConversationLogEntry, QueuedRequest
from outreach_engine.dispatch.dispatcher import Dispatcher
from outreach_engine.triggers.evaluator import TriggerEvaluator


def _evaluator(repository, composer, config, clock):
    return TriggerEvaluator(repository, composer, config=config, clock=clock)


@pytest.mark.asyncio
async def test_day_one_checkin_is_scheduled_and_sent(repository, composer, sender, config, clock):
    repository.add_contact(make_contact())
    repository.add_agent(
        make_agent("agent-sales", assigned=BASE_TIME - timedelta(days=1, hours=1), messages_sent=1)
    )
    repository.put_state(make_state(active_agent_id="agent-sales", agent_priority=5))

    summary = await _evaluator(repository, composer, config, clock).run_once()

    assert summary["scheduled"] == 1
    assert [c["message_type"] for c in composer.calls] == ["check_in"]
    [message] = repository.messages
    assert message.status == "pending"
    assert message.scheduled_for == BASE_TIME

    dispatched = await Dispatcher(repository, sender, config=config, clock=clock).run_once()

    assert dispatched["sent"] == 1
    state = await repository.get_state("contact-1")
    assert (state.messages_sent_today, state.messages_sent_this_week) == (1, 1)
    assert state.last_message_sent_at == BASE_TIME
    agent = await repository.get_agent("agent-sales")
    assert agent.messages_sent == 2
    [message] = repository.messages
    assert message.status == "sent"
    assert message.sent_at == BASE_TIME


@pytest.mark.asyncio
async def test_lower_priority_trigger_is_queued_not_scheduled(repository, composer, config, clock):
    repository.add_contact(make_contact())
    repository.add_agent(make_agent("agent-sales", assigned=BASE_TIME - timedelta(days=30, hours=1)))
    repository.add_agent(
        make_agent(
            "agent-nurture",
            product_type="lead_nurture",
            assigned=BASE_TIME - timedelta(days=7, hours=1),
        )
    )
    repository.put_state(make_state(active_agent_id="agent-sales", agent_priority=5))

    summary = await _evaluator(repository, composer, config, clock).run_once()

    assert summary["deferred"] == 1
    assert summary["scheduled"] == 0
    assert composer.calls == []
    assert repository.messages == []
    state = await repository.get_state("contact-1")
    assert state.active_agent_id == "agent-sales"
    assert [q.agent_id for q in state.agent_queue] == ["agent-nurture"]


@pytest.mark.asyncio
async def test_gate_rejects_before_composer(repository, composer, config, clock):
    repository.add_contact(make_contact())
    repository.add_agent(make_agent(assigned=BASE_TIME - timedelta(days=7, hours=1)))
    repository.put_state(make_state(messages_sent_today=2, messages_sent_this_week=2))

    summary = await _evaluator(repository, composer, config, clock).run_once()

    assert summary["gated"] == 1
    assert summary["fired"] == 0
    assert composer.calls == []
    assert repository.messages == []


@pytest.mark.asyncio
async def test_composer_failure_drops_trigger(repository, config, clock):
    composer = FakeComposer(fail=True)
    repository.add_contact(make_contact())
    repository.add_agent(make_agent(assigned=BASE_TIME - timedelta(days=7, hours=1)))

    summary = await _evaluator(repository, composer, config, clock).run_once()

    assert summary["dropped"] == 1
    assert repository.messages == []
    assert not await repository.has_trigger_fired("agent-1", "week_1_progress", "day:7")


@pytest.mark.asyncio
async def test_trigger_window_schedules_once(repository, composer, config, clock):
    repository.add_contact(make_contact())
    repository.add_agent(make_agent(assigned=BASE_TIME - timedelta(days=7, hours=1)))
    evaluator = _evaluator(repository, composer, config, clock)

    first = await evaluator.run_once()
    clock.advance(minutes=15)
    second = await evaluator.run_once()

    assert first["scheduled"] == 1
    assert second["already_fired"] == 1
    assert second["scheduled"] == 0
    assert len(repository.messages) == 1


@pytest.mark.asyncio
async def test_catch_up_recovers_missed_day(repository, composer, config, clock):
    config.triggers.trigger_catch_up_days = 2
    repository.add_contact(make_contact())
    repository.add_agent(make_agent(assigned=BASE_TIME - timedelta(days=8, hours=6)))

    summary = await _evaluator(repository, composer, config, clock).run_once()

    assert summary["scheduled"] == 1
    assert composer.calls[0]["context"]["days_since_assigned"] == 8


@pytest.mark.asyncio
async def test_expired_agents_release_active_slot(repository, composer, config, clock):
    repository.add_contact(make_contact())
    repository.add_agent(
        make_agent(
            "agent-webinar",
            product_type="webinar",
            assigned=BASE_TIME - timedelta(days=31),
            expiration_date=BASE_TIME - timedelta(hours=1),
        )
    )
    repository.put_state(make_state(active_agent_id="agent-webinar", agent_priority=3))

    summary = await _evaluator(repository, composer, config, clock).run_once()

    assert summary["expired"] == 1
    assert summary["agents"] == 0
    agent = await repository.get_agent("agent-webinar")
    assert agent.status == "expired"
    state = await repository.get_state("contact-1")
    assert state.active_agent_id is None


@pytest.mark.asyncio
async def test_composer_receives_recent_conversation(repository, composer, config, clock):
    repository.add_contact(make_contact())
    repository.add_agent(make_agent(assigned=BASE_TIME - timedelta(days=7, hours=1)))
    repository.put_state(
        make_state(
            last_engagement_at=BASE_TIME - timedelta(hours=30),
            last_message_sent_at=BASE_TIME - timedelta(hours=20),
        )
    )
    for i in range(4):
        await repository.append_conversation_message(
            ConversationLogEntry(
                contact_id="contact-1",
                body=f"line {i}",
                created_at=BASE_TIME - timedelta(hours=40 - i),
            )
        )

    await _evaluator(repository, composer, config, clock).run_once()

    context = composer.calls[0]["context"]
    recent = context["recent_conversation"]
    assert context["trigger"] == "week_1_progress"
    assert recent["hours_since_engagement"] == 30.0
    assert recent["hours_since_last_message"] == 20.0
    assert [line["body"] for line in recent["last_messages"]] == ["line 3", "line 2", "line 1"]


@pytest.mark.asyncio
async def test_one_bad_agent_does_not_abort_sweep(repository, composer, config, clock):
    repository.add_contact(make_contact())
    repository.add_agent(make_agent("orphan", contact_id="missing-contact"))
    repository.add_agent(make_agent(assigned=BASE_TIME - timedelta(days=7, hours=1)))

    summary = await _evaluator(repository, composer, config, clock).run_once()

    assert summary["errors"] == 1
    assert summary["scheduled"] == 1


@pytest.mark.asyncio
async def test_expired_queue_head_does_not_block_live_agent(repository, composer, config, clock):
    repository.add_contact(make_contact())
    repository.add_agent(make_agent("agent-cs", product_type="customer_service", status="expired"))
    repository.add_agent(make_agent(assigned=BASE_TIME - timedelta(days=7, hours=1)))
    repository.put_state(
        make_state(agent_queue=[QueuedRequest(agent_id="agent-cs", message_type="check_in", queued_at=BASE_TIME)])
    )

    summary = await _evaluator(repository, composer, config, clock).run_once()

    assert summary["promoted"] == 0
    assert summary["deferred"] == 0
    assert summary["scheduled"] == 1
    state = await repository.get_state("contact-1")
    assert state.active_agent_id == "agent-1"
    assert state.agent_queue == []


@pytest.mark.asyncio
async def test_standing_deferral_does_not_grow_queue(repository, composer, config, clock):
    config.sweep.queue_promotion_enabled = False
    repository.add_contact(make_contact(engagement_score=80))
    repository.add_agent(
        make_agent("agent-nurture", product_type="lead_nurture", assigned=BASE_TIME - timedelta(days=10))
    )
    repository.put_state(make_state(active_agent_id="agent-cs", agent_priority=10))
    evaluator = _evaluator(repository, composer, config, clock)

    for _ in range(8):
        summary = await evaluator.run_once()
        assert summary["deferred"] == 1
        clock.advance(minutes=15)

    state = await repository.get_state("contact-1")
    assert [(q.agent_id, q.message_type) for q in state.agent_queue] == [("agent-nurture", "upsell")]
    assert composer.calls == []
