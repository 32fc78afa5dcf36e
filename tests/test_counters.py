"""Tests for daily/weekly counter maintenance."""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import FakeClock, make_agent, make_contact, make_state

from outreach_engine.core.config import SweepConfig
from outreach_engine.database.memory import InMemoryRepository
from outreach_engine.database.postgres import PostgresRepository
from outreach_engine.throttle.counters import CounterMaintenance
from outreach_engine.triggers.evaluator import TriggerEvaluator


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_midnight_reset_reopens_gate_before_trigger_evaluation(repository, composer, config):
    clock = FakeClock(utc(2026, 3, 3, 23, 30))
    repository.add_contact(make_contact())
    repository.add_agent(make_agent(assigned=utc(2026, 2, 25, 0, 0)))
    repository.put_state(
        make_state(
            messages_sent_today=2,
            messages_sent_this_week=2,
            last_message_sent_at=utc(2026, 3, 3, 11, 0),
        )
    )
    evaluator = TriggerEvaluator(repository, composer, config=config, clock=clock)

    first = await evaluator.run_once()
    assert first["gated"] == 1
    assert first["daily_reset"] is False

    clock.set(utc(2026, 3, 4, 0, 20))
    second = await evaluator.run_once()

    assert second["daily_reset"] is True
    assert second["gated"] == 0
    assert second["scheduled"] == 1
    state = await repository.get_state("contact-1")
    assert state.messages_sent_today == 0
    assert state.messages_sent_this_week == 2


@pytest.mark.asyncio
async def test_weekly_reset_when_crossing_into_week_start(repository):
    repository.put_state(make_state(messages_sent_today=1, messages_sent_this_week=4))
    maintenance = CounterMaintenance(repository, SweepConfig())

    seeded = await maintenance.run(utc(2026, 3, 8, 22, 0))  # Sunday
    assert seeded == {"daily": False, "weekly": False}

    crossed = await maintenance.run(utc(2026, 3, 9, 0, 5))  # Monday

    assert crossed == {"daily": True, "weekly": True}
    state = await repository.get_state("contact-1")
    assert (state.messages_sent_today, state.messages_sent_this_week) == (0, 0)


@pytest.mark.asyncio
async def test_reset_happens_once_per_period(repository):
    maintenance = CounterMaintenance(repository, SweepConfig())
    await maintenance.run(utc(2026, 3, 3, 22, 0))

    assert (await maintenance.run(utc(2026, 3, 4, 0, 5)))["daily"] is True
    repository.put_state(make_state(messages_sent_today=1))
    assert (await maintenance.run(utc(2026, 3, 4, 0, 20)))["daily"] is False
    assert (await maintenance.run(utc(2026, 3, 4, 13, 0)))["daily"] is False

    state = await repository.get_state("contact-1")
    assert state.messages_sent_today == 1


@pytest.mark.asyncio
async def test_competing_instances_reset_once(repository):
    first = CounterMaintenance(repository, SweepConfig())
    second = CounterMaintenance(repository, SweepConfig())
    await first.run(utc(2026, 3, 3, 22, 0))

    results = [await m.run(utc(2026, 3, 4, 0, 1)) for m in (first, second)]

    assert [r["daily"] for r in results] == [True, False]


@pytest.mark.asyncio
async def test_missed_midnight_still_resets_later(repository):
    repository.put_state(make_state(messages_sent_today=2, messages_sent_this_week=3))
    maintenance = CounterMaintenance(repository, SweepConfig())
    await maintenance.run(utc(2026, 3, 8, 22, 0))

    # engine was down from Sunday night until Monday morning
    result = await maintenance.run(utc(2026, 3, 9, 10, 0))

    assert result == {"daily": True, "weekly": True}
    state = await repository.get_state("contact-1")
    assert (state.messages_sent_today, state.messages_sent_this_week) == (0, 0)


@pytest.mark.asyncio
async def test_first_run_only_seeds_outside_reset_hour(repository):
    repository.put_state(make_state(messages_sent_today=2))
    maintenance = CounterMaintenance(repository, SweepConfig())

    assert await maintenance.run(utc(2026, 3, 3, 15, 0)) == {"daily": False, "weekly": False}
    assert await repository.last_counter_reset("daily") == "2026-03-03"
    assert await repository.last_counter_reset("weekly") == "2026-03-02"
    assert (await repository.get_state("contact-1")).messages_sent_today == 2


@pytest.mark.asyncio
async def test_first_run_in_reset_hour_resets(repository):
    repository.put_state(make_state(messages_sent_today=2, messages_sent_this_week=2))
    maintenance = CounterMaintenance(repository, SweepConfig())

    result = await maintenance.run(utc(2026, 3, 3, 0, 10))  # Tuesday

    assert result == {"daily": True, "weekly": False}
    state = await repository.get_state("contact-1")
    assert (state.messages_sent_today, state.messages_sent_this_week) == (0, 2)


@pytest.mark.asyncio
async def test_local_midnight_follows_configured_timezone(repository):
    repository.put_state(make_state(messages_sent_today=2))
    maintenance = CounterMaintenance(repository, SweepConfig(timezone="America/New_York"))

    # 23:30 local (UTC-5)
    assert (await maintenance.run(utc(2026, 3, 4, 4, 30)))["daily"] is False
    assert await repository.last_counter_reset("daily") == "2026-03-03"
    # 00:10 local
    assert (await maintenance.run(utc(2026, 3, 4, 5, 10)))["daily"] is True
    assert await repository.last_counter_reset("daily") == "2026-03-04"


@pytest.mark.asyncio
async def test_sunday_week_start(repository):
    maintenance = CounterMaintenance(repository, SweepConfig(week_start_day=6))

    await maintenance.run(utc(2026, 3, 4, 12, 0))  # Wednesday

    assert await repository.last_counter_reset("weekly") == "2026-03-01"


@pytest.mark.asyncio
async def test_manual_reset(repository):
    repository.put_state(make_state("c1", messages_sent_today=2, messages_sent_this_week=3))
    repository.put_state(make_state("c2", messages_sent_today=1, messages_sent_this_week=1))
    clock = FakeClock(utc(2026, 3, 4, 12, 0))
    maintenance = CounterMaintenance(repository, SweepConfig(), clock=clock)

    result = await maintenance.reset_now(daily=True, weekly=True)

    assert result == {"daily": 2, "weekly": 2}
    for contact_id in ("c1", "c2"):
        state = await repository.get_state(contact_id)
        assert (state.messages_sent_today, state.messages_sent_this_week) == (0, 0)

    # the manual reset counts as this period's reset
    clock.advance(minutes=30)
    assert await maintenance.run() == {"daily": False, "weekly": False}


@pytest.mark.asyncio
async def test_reset_only_touches_counters(repository):
    sent_at = utc(2026, 3, 3, 20, 0)
    repository.put_state(
        make_state(messages_sent_today=1, last_message_sent_at=sent_at, active_agent_id="a1", agent_priority=5)
    )
    maintenance = CounterMaintenance(repository, SweepConfig())
    await maintenance.run(sent_at + timedelta(hours=1))

    await maintenance.run(utc(2026, 3, 4, 0, 0))

    state = await repository.get_state("contact-1")
    assert state.messages_sent_today == 0
    assert state.last_message_sent_at == sent_at
    assert state.active_agent_id == "a1"


class _FailingReset(InMemoryRepository):
    def __init__(self):
        super().__init__()
        self.failures = 1

    def _zero_counters_locked(self, kind):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("connection lost")
        return super()._zero_counters_locked(kind)


@pytest.mark.asyncio
async def test_failed_reset_leaves_period_unmarked():
    repository = _FailingReset()
    repository.put_state(make_state(messages_sent_today=2))
    maintenance = CounterMaintenance(repository, SweepConfig())
    await maintenance.run(utc(2026, 3, 3, 22, 0))

    with pytest.raises(RuntimeError):
        await maintenance.run(utc(2026, 3, 4, 0, 5))

    assert await repository.last_counter_reset("daily") == "2026-03-03"
    assert (await repository.get_state("contact-1")).messages_sent_today == 2

    assert (await maintenance.run(utc(2026, 3, 4, 0, 20)))["daily"] is True
    assert (await repository.get_state("contact-1")).messages_sent_today == 0


class _Transaction:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        self.conn.in_transaction = True

    async def __aexit__(self, *exc):
        self.conn.in_transaction = False


class _Connection:
    def __init__(self, insert_tag):
        self.insert_tag = insert_tag
        self.in_transaction = False
        self.statements = []

    def transaction(self):
        return _Transaction(self)

    async def execute(self, sql, *args):
        self.statements.append((sql.strip().split()[0], self.in_transaction))
        return self.insert_tag if sql.strip().startswith("INSERT") else "UPDATE 4"


class _Acquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return None


class _Pool:
    def __init__(self, conn):
        self.conn = conn

    def acquire(self):
        return _Acquire(self.conn)


@pytest.mark.asyncio
async def test_postgres_marker_and_reset_share_a_transaction():
    conn = _Connection("INSERT 0 1")
    repository = PostgresRepository(_Pool(conn))

    affected = await repository.reset_counters_for_period("daily", "2026-03-04", utc(2026, 3, 4, 0, 5))

    assert affected == 4
    assert conn.statements == [("INSERT", True), ("UPDATE", True)]


@pytest.mark.asyncio
async def test_postgres_skips_reset_when_period_recorded():
    conn = _Connection("INSERT 0 0")
    repository = PostgresRepository(_Pool(conn))

    affected = await repository.reset_counters_for_period("weekly", "2026-03-02", utc(2026, 3, 4, 0, 5))

    assert affected is None
    assert conn.statements == [("INSERT", True)]
