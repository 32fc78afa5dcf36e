"""Time helpers: day counts and local reset periods."""

from outreach_engine.temporal.periods import (
    day_period,
    ensure_aware,
    utc_now,
    week_period,
    whole_days_between,
)

__all__ = [
    "day_period",
    "ensure_aware",
    "utc_now",
    "week_period",
    "whole_days_between",
]
