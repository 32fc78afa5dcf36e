"""Tests for the individual trigger rules."""

from datetime import timedelta

import pytest
from conftest import BASE_TIME, make_agent, make_contact, make_state

from outreach_engine.core.config import TriggerConfig
from outreach_engine.core.models import ActivityRecord, ScheduledMessage
from outreach_engine.triggers.rules import (
    day_1_checkin,
    evaluate_rules,
    expiration_warning,
    high_engagement_upsell,
    in_window,
    no_engagement,
    product_churn_risk,
    week_1_progress,
)

NOW = BASE_TIME


def test_in_window_exact_and_catch_up():
    assert in_window(7, 7, 0)
    assert not in_window(8, 7, 0)
    assert not in_window(6, 7, 0)
    assert in_window(8, 7, 2)
    assert not in_window(10, 7, 2)


@pytest.mark.parametrize(
    "elapsed,fires",
    [
        (timedelta(days=6, hours=23), False),
        (timedelta(days=7), True),
        (timedelta(days=7, hours=23, minutes=59), True),
        (timedelta(days=8), False),
    ],
)
def test_no_engagement_fires_only_on_day_seven(elapsed, fires):
    state = make_state(last_engagement_at=NOW - elapsed)
    event = no_engagement(state, NOW, TriggerConfig())
    assert (event is not None) == fires
    if event:
        assert event.kind == "no_engagement_7_days"
        assert event.message_type == "check_in"
        assert event.context == {"days_since_engagement": 7}


def test_no_engagement_needs_an_engagement_timestamp():
    assert no_engagement(make_state(), NOW, TriggerConfig()) is None
    assert no_engagement(None, NOW, TriggerConfig()) is None


def test_no_engagement_catch_up_window():
    state = make_state(last_engagement_at=NOW - timedelta(days=8, hours=3))
    assert no_engagement(state, NOW, TriggerConfig(trigger_catch_up_days=1)) is not None


def test_day_1_checkin_requires_exactly_one_message_sent():
    agent = make_agent(assigned=NOW - timedelta(days=1, hours=2), messages_sent=1)
    event = day_1_checkin(agent, NOW, TriggerConfig())
    assert event is not None
    assert event.context == {"days_since_assigned": 1}
    assert event.dedupe_key == "day:1"

    agent.messages_sent = 2
    assert day_1_checkin(agent, NOW, TriggerConfig()) is None

    agent.messages_sent = 0
    assert day_1_checkin(agent, NOW, TriggerConfig()) is None


def test_day_1_checkin_not_on_day_two():
    agent = make_agent(assigned=NOW - timedelta(days=2), messages_sent=1)
    assert day_1_checkin(agent, NOW, TriggerConfig()) is None


def test_week_1_progress():
    agent = make_agent(assigned=NOW - timedelta(days=7, hours=5))
    event = week_1_progress(agent, NOW, TriggerConfig())
    assert event.kind == "week_1_progress"
    assert event.context == {"days_since_assigned": 7}

    agent.assigned_date = NOW - timedelta(days=6, hours=23)
    assert week_1_progress(agent, NOW, TriggerConfig()) is None


def test_expiration_warning_five_days_out():
    agent = make_agent(
        assigned=NOW - timedelta(days=30),
        expiration_date=NOW + timedelta(days=5, hours=1),
    )
    event = expiration_warning(agent, NOW, TriggerConfig())
    assert event.message_type == "expiration_notice"
    assert event.context == {"days_until_expiration": 5}

    agent.expiration_date = NOW + timedelta(days=4, hours=23)
    assert expiration_warning(agent, NOW, TriggerConfig()) is None


@pytest.mark.asyncio
async def test_upsell_for_engaged_non_buyer(repository):
    contact = make_contact(engagement_score=72, total_spent=0)
    agent = make_agent(assigned=NOW - timedelta(days=9))

    event = await high_engagement_upsell(agent, contact, NOW, TriggerConfig(), repository)

    assert event.message_type == "upsell"
    assert event.context == {"engagement_score": 72, "days_since_assigned": 9}


@pytest.mark.asyncio
async def test_upsell_suppressed_by_recent_upsell(repository):
    contact = make_contact(engagement_score=72, total_spent=0)
    agent = make_agent(assigned=NOW - timedelta(days=9))
    await repository.create_scheduled_message(
        ScheduledMessage(
            contact_id=contact.id,
            agent_id=agent.id,
            message_type="upsell",
            scheduled_for=NOW - timedelta(days=3),
            body="Ready for the next level?",
            created_at=NOW - timedelta(days=3),
        )
    )

    assert await high_engagement_upsell(agent, contact, NOW, TriggerConfig(), repository) is None


@pytest.mark.asyncio
async def test_upsell_skips_buyers_and_low_engagement(repository):
    agent = make_agent(assigned=NOW - timedelta(days=9))
    buyer = make_contact(engagement_score=90, total_spent=49.0)
    cold = make_contact(engagement_score=59, total_spent=0)

    assert await high_engagement_upsell(agent, buyer, NOW, TriggerConfig(), repository) is None
    assert await high_engagement_upsell(agent, cold, NOW, TriggerConfig(), repository) is None


@pytest.mark.asyncio
async def test_churn_risk_for_subscription_without_login(repository):
    contact = make_contact()
    agent = make_agent(product_type="algo_monthly", assigned=NOW - timedelta(days=10))

    event = await product_churn_risk(agent, contact, NOW, TriggerConfig(), repository)

    assert event.kind == "product_churn_risk"
    assert event.message_type == "retention"
    assert event.context["days_since_login"] == 7


@pytest.mark.asyncio
async def test_churn_risk_cleared_by_recent_login(repository):
    contact = make_contact()
    agent = make_agent(product_type="algo_monthly", assigned=NOW - timedelta(days=10))
    repository.add_activity(
        ActivityRecord(contact_id=contact.id, activity_type="login", created_at=NOW - timedelta(days=2))
    )

    assert await product_churn_risk(agent, contact, NOW, TriggerConfig(), repository) is None


@pytest.mark.asyncio
async def test_churn_rule_only_for_configured_products(repository):
    agent = make_agent(product_type="webinar", assigned=NOW - timedelta(days=10))
    assert await product_churn_risk(agent, make_contact(), NOW, TriggerConfig(), repository) is None


@pytest.mark.asyncio
async def test_multiple_rules_fire_in_one_pass(repository):
    contact = make_contact(engagement_score=80, total_spent=0)
    agent = make_agent(assigned=NOW - timedelta(days=7, hours=1))
    state = make_state(last_engagement_at=NOW - timedelta(days=7, hours=2))

    events = await evaluate_rules(agent, contact, state, NOW, TriggerConfig(), repository)

    assert [e.kind for e in events] == [
        "no_engagement_7_days",
        "week_1_progress",
        "high_engagement_upsell",
    ]
