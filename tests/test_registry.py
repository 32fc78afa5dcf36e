from datetime import timedelta

import pytest
from conftest import BASE_TIME, FakeComposer, make_contact, make_state

from outreach_engine.errors import EngineError
from outreach_engine.registry.agents import AgentRegistry


@pytest.mark.asyncio
async def test_assign_uses_lifetime_table(repository, config, clock):
    repository.add_contact(make_contact())
    registry = AgentRegistry(repository, config, clock=clock)

    result = await registry.assign_agent("contact-1", "webinar", {"goal": "learn options"})

    agent = result.agent
    assert agent.status == "active"
    assert agent.assigned_date == BASE_TIME
    assert agent.expiration_date - agent.assigned_date == timedelta(days=30)
    assert agent.context == {"goal": "learn options"}
    assert result.introduction_status == "not_requested"
    assert (await repository.get_agent(agent.id)).product_type == "webinar"
    state = await repository.get_state("contact-1")
    assert state.last_engagement_at == BASE_TIME


@pytest.mark.asyncio
async def test_days_override(repository, config, clock):
    repository.add_contact(make_contact())
    result = await AgentRegistry(repository, config, clock=clock).assign_agent(
        "contact-1", "sales_agent", days_active=14
    )
    assert result.agent.expiration_date == BASE_TIME + timedelta(days=14)


@pytest.mark.asyncio
async def test_unknown_contact(repository, config, clock):
    with pytest.raises(EngineError, match="not found"):
        await AgentRegistry(repository, config, clock=clock).assign_agent("ghost", "webinar")


@pytest.mark.asyncio
async def test_introduction_scheduled(repository, config, clock, composer):
    repository.add_contact(make_contact())
    registry = AgentRegistry(repository, config, composer=composer, clock=clock)

    result = await registry.assign_agent("contact-1", "sales_agent", send_introduction=True)

    assert result.introduction_status == "scheduled"
    assert result.introduction.message_type == "introduction"
    assert result.introduction.agent_id == result.agent.id
    assert composer.calls[0]["context"]["product_type"] == "sales_agent"
    state = await repository.get_state("contact-1")
    assert state.active_agent_id == result.agent.id
    assert state.agent_priority == 5


@pytest.mark.asyncio
async def test_introduction_deferred_behind_higher_agent(repository, config, clock, composer):
    repository.add_contact(make_contact())
    repository.put_state(make_state(active_agent_id="agent-cs", agent_priority=10))
    registry = AgentRegistry(repository, config, composer=composer, clock=clock)

    result = await registry.assign_agent("contact-1", "webinar", send_introduction=True)

    assert result.introduction_status == "deferred"
    assert result.introduction is None
    assert composer.calls == []
    state = await repository.get_state("contact-1")
    assert state.active_agent_id == "agent-cs"
    assert state.agent_queue[0].agent_id == result.agent.id


@pytest.mark.asyncio
async def test_introduction_gated(repository, config, clock, composer):
    repository.add_contact(make_contact())
    repository.put_state(make_state(messages_sent_today=2, messages_sent_this_week=2))
    registry = AgentRegistry(repository, config, composer=composer, clock=clock)

    result = await registry.assign_agent("contact-1", "sales_agent", send_introduction=True)

    assert result.introduction_status == "gated"
    assert repository.messages == []


@pytest.mark.asyncio
async def test_introduction_compose_failure_keeps_agent(repository, config, clock):
    repository.add_contact(make_contact())
    registry = AgentRegistry(repository, config, composer=FakeComposer(fail=True), clock=clock)

    result = await registry.assign_agent("contact-1", "sales_agent", send_introduction=True)

    assert result.introduction_status == "compose_failed"
    assert await repository.get_agent(result.agent.id) is not None
    assert repository.messages == []


@pytest.mark.asyncio
async def test_introduction_requires_composer(repository, config, clock):
    repository.add_contact(make_contact())
    with pytest.raises(EngineError, match="no composer"):
        await AgentRegistry(repository, config, clock=clock).assign_agent(
            "contact-1", "sales_agent", send_introduction=True
        )
