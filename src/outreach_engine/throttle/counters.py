"""
Counter maintenance - daily and weekly reset of the per-contact counters.

Each reset is keyed by the local period it belongs to (the local date for
daily, the local week-start date for weekly) and recorded in
``counter_resets``. The marker insert and the counter UPDATE commit together;
only the caller whose insert succeeded performs the reset, so a boundary is
reset exactly once even with several engine instances running, and a crash
cannot leave a period marked done with its counters untouched. A period
that was missed (engine down at midnight) is still reset on the next sweep.

The very first run on an empty ledger only seeds the markers, unless it
happens to run in the reset hour itself.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from outreach_engine.core.config import SweepConfig
from outreach_engine.database.repository import EngineRepository
from outreach_engine.temporal.periods import day_period, local_time, utc_now, week_period

logger = logging.getLogger(__name__)

DAILY = "daily"
WEEKLY = "weekly"


class CounterMaintenance:
    """
    Example:
        >>> maintenance = CounterMaintenance(repository, config.sweep)
        >>> await maintenance.run()
        {'daily': True, 'weekly': False}
    """

    def __init__(
        self,
        repository: EngineRepository,
        config: Optional[SweepConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.config = config or SweepConfig()
        self.clock = clock

    async def _maybe_reset(self, kind: str, period: str, at_boundary: bool, now: datetime) -> bool:
        last = await self.repository.last_counter_reset(kind)
        if last is not None and last >= period:
            return False

        if last is None and not at_boundary:
            await self.repository.record_counter_reset(kind, period, now)
            logger.info(f"Seeded {kind} counter marker at {period}")
            return False

        affected = await self.repository.reset_counters_for_period(kind, period, now)
        if affected is None:
            return False
        logger.info(f"Reset {kind} counters for period {period} ({affected} contacts)")
        return True

    async def run(self, now: Optional[datetime] = None) -> dict:
        """
        Reset counters whose period has rolled over since the last reset.

        Returns:
            {'daily': bool, 'weekly': bool} telling which resets happened.
        """
        now = now or self.clock()
        tz = self.config.timezone
        local = local_time(now, tz)
        at_midnight_hour = local.hour == 0
        at_week_start = at_midnight_hour and local.weekday() == self.config.week_start_day

        daily = await self._maybe_reset(DAILY, day_period(now, tz), at_midnight_hour, now)
        weekly = await self._maybe_reset(
            WEEKLY, week_period(now, tz, self.config.week_start_day), at_week_start, now
        )
        return {DAILY: daily, WEEKLY: weekly}

    async def reset_now(self, daily: bool = True, weekly: bool = False) -> dict:
        """Operator reset, regardless of period markers."""
        now = self.clock()
        tz = self.config.timezone
        result = {DAILY: 0, WEEKLY: 0}
        if daily:
            result[DAILY] = await self.repository.reset_daily_counters()
            await self.repository.record_counter_reset(DAILY, day_period(now, tz), now)
        if weekly:
            result[WEEKLY] = await self.repository.reset_weekly_counters()
            await self.repository.record_counter_reset(
                WEEKLY, week_period(now, tz, self.config.week_start_day), now
            )
        logger.info(f"Manual counter reset: {result}")
        return result
