"""
Two weeks of simulated sweeps against a contact with unlimited demand.

Whatever the sweep cadence, delivered messages must respect the caps in
every window: at most 2 in any 24h, at most 5 in any 7 days, and at least
12h between consecutive sends.
"""

from datetime import timedelta

import pytest
from conftest import BASE_TIME, FakeClock, FakeSender, make_contact

from outreach_engine.dispatch.dispatcher import Dispatcher
from outreach_engine.scheduling.scheduler import Scheduler
from outreach_engine.throttle.counters import CounterMaintenance
from outreach_engine.temporal.periods import ensure_aware


@pytest.mark.asyncio
@pytest.mark.parametrize("step_minutes", [60, 25, 180])
async def test_caps_hold_in_every_window(repository, config, step_minutes):
    clock = FakeClock()
    sender = FakeSender()
    repository.add_contact(make_contact())
    scheduler = Scheduler(repository, config.dispatch, clock=clock)
    counters = CounterMaintenance(repository, config.sweep, clock=clock)
    dispatcher = Dispatcher(repository, sender, config=config, clock=clock)

    end = BASE_TIME + timedelta(days=14)
    while clock() < end:
        if not any(m.status == "pending" for m in repository.messages):
            await scheduler.schedule("contact-1", "agent-1", "check_in", "sms", None, "ping")
        await counters.run()
        await dispatcher.run_once()
        clock.advance(minutes=step_minutes)

    sent = sorted(ensure_aware(m.sent_at) for m in repository.messages if m.status == "sent")
    assert len(sent) >= 8

    for earlier, later in zip(sent, sent[1:]):
        assert later - earlier >= timedelta(hours=12)

    for start in sent:
        in_day = [t for t in sent if start <= t < start + timedelta(hours=24)]
        in_week = [t for t in sent if start <= t < start + timedelta(days=7)]
        assert len(in_day) <= 2
        assert len(in_week) <= 5
