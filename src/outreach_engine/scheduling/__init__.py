"""Scheduling: message persistence and the sweep loops."""

from outreach_engine.scheduling.polling_daemon import SweepLoop
from outreach_engine.scheduling.scheduler import Scheduler

__all__ = [
    "Scheduler",
    "SweepLoop",
]
