"""
Trigger rules.

Each rule looks at one agent/contact snapshot and returns a TriggerEvent or
None. Rules are independent; several may fire in one pass.

Day counts are floored whole days. With ``trigger_catch_up_days = 0`` a
day-offset rule fires only on its exact day, so a sweep missed for a whole
day skips it. A positive value widens the window to
``offset <= days <= offset + catch_up``; the firing ledger (keyed by
``dedupe_key``) keeps a widened rule from firing twice.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from outreach_engine.core.config import TriggerConfig
from outreach_engine.core.models import (
    Agent,
    Channel,
    Contact,
    ConversationState,
    MessageType,
    TriggerEvent,
    TriggerKind,
)
from outreach_engine.temporal.periods import whole_days_between

if TYPE_CHECKING:
    from outreach_engine.database.repository import EngineRepository


def in_window(days: int, offset: int, catch_up: int) -> bool:
    """
    True when ``days`` falls in the firing window of a day-offset rule.

    Examples:
        >>> in_window(7, 7, 0), in_window(8, 7, 0), in_window(8, 7, 2)
        (True, False, True)
    """
    return offset <= days <= offset + max(0, catch_up)


def no_engagement(
    state: Optional[ConversationState], now: datetime, config: TriggerConfig
) -> Optional[TriggerEvent]:
    """Days since the contact last engaged crossed into [7, 8)."""
    if state is None or state.last_engagement_at is None:
        return None
    days = whole_days_between(state.last_engagement_at, now)
    if not in_window(days, config.no_engagement_days, config.trigger_catch_up_days):
        return None
    return TriggerEvent(
        kind=TriggerKind.NO_ENGAGEMENT_7_DAYS,
        message_type=MessageType.CHECK_IN,
        context={"days_since_engagement": days},
        channel=Channel.SMS,
        dedupe_key=f"engaged:{state.last_engagement_at.isoformat()}",
    )


def day_1_checkin(agent: Agent, now: datetime, config: TriggerConfig) -> Optional[TriggerEvent]:
    """One day after assignment, and only the introduction has been sent so far."""
    days = whole_days_between(agent.assigned_date, now)
    if not in_window(days, config.day_1_offset_days, config.trigger_catch_up_days):
        return None
    if agent.messages_sent != 1:
        return None
    return TriggerEvent(
        kind=TriggerKind.DAY_1_CHECKIN,
        message_type=MessageType.CHECK_IN,
        context={"days_since_assigned": days},
        channel=Channel.SMS,
        dedupe_key=f"day:{config.day_1_offset_days}",
    )


def week_1_progress(agent: Agent, now: datetime, config: TriggerConfig) -> Optional[TriggerEvent]:
    days = whole_days_between(agent.assigned_date, now)
    if not in_window(days, config.week_1_offset_days, config.trigger_catch_up_days):
        return None
    return TriggerEvent(
        kind=TriggerKind.WEEK_1_PROGRESS,
        message_type=MessageType.CHECK_IN,
        context={"days_since_assigned": days},
        channel=Channel.SMS,
        dedupe_key=f"day:{config.week_1_offset_days}",
    )


def expiration_warning(agent: Agent, now: datetime, config: TriggerConfig) -> Optional[TriggerEvent]:
    """Exactly ``expiration_warning_days`` whole days remain before expiry."""
    days_left = whole_days_between(now, agent.expiration_date)
    offset = config.expiration_warning_days
    if not offset - max(0, config.trigger_catch_up_days) <= days_left <= offset:
        return None
    if days_left < 0:
        return None
    return TriggerEvent(
        kind=TriggerKind.EXPIRATION_WARNING,
        message_type=MessageType.EXPIRATION_NOTICE,
        context={"days_until_expiration": days_left},
        channel=Channel.SMS,
        dedupe_key=f"expires:{agent.expiration_date.date().isoformat()}",
    )


async def high_engagement_upsell(
    agent: Agent,
    contact: Contact,
    now: datetime,
    config: TriggerConfig,
    repository: "EngineRepository",
) -> Optional[TriggerEvent]:
    """Engaged contact who never bought, with no upsell created in the lookback."""
    days = whole_days_between(agent.assigned_date, now)
    if contact.engagement_score < config.upsell_min_engagement_score:
        return None
    if contact.total_spent != 0:
        return None
    if days < config.upsell_min_days_since_assigned:
        return None

    since = now - timedelta(days=config.upsell_lookback_days)
    recent = await repository.count_messages_since(contact.id, MessageType.UPSELL.value, since)
    if recent > 0:
        return None

    return TriggerEvent(
        kind=TriggerKind.HIGH_ENGAGEMENT_UPSELL,
        message_type=MessageType.UPSELL,
        context={
            "engagement_score": contact.engagement_score,
            "days_since_assigned": days,
        },
        channel=Channel.SMS,
        dedupe_key=f"period:{days // max(1, config.upsell_lookback_days)}",
    )


async def product_churn_risk(
    agent: Agent,
    contact: Contact,
    now: datetime,
    config: TriggerConfig,
    repository: "EngineRepository",
) -> Optional[TriggerEvent]:
    """Agent-type specific: no activity of the configured kind in the window."""
    rule = config.churn_rules.get(agent.product_type)
    if rule is None:
        return None

    days = whole_days_between(agent.assigned_date, now)
    if days < rule.min_days_since_assigned:
        return None

    since = now - timedelta(days=rule.inactive_days)
    recent = await repository.count_activities_since(contact.id, rule.activity_type, since)
    if recent > 0:
        return None

    return TriggerEvent(
        kind=TriggerKind.PRODUCT_CHURN_RISK,
        message_type=MessageType.RETENTION,
        context={
            f"days_since_{rule.activity_type}": rule.inactive_days,
            "product_type": agent.product_type,
        },
        channel=Channel.SMS,
        dedupe_key=f"period:{days // max(1, rule.inactive_days)}",
    )


async def evaluate_rules(
    agent: Agent,
    contact: Contact,
    state: Optional[ConversationState],
    now: datetime,
    config: TriggerConfig,
    repository: "EngineRepository",
) -> list[TriggerEvent]:
    """Run every rule and collect the events that fired, in rule order."""
    candidates = [
        no_engagement(state, now, config),
        day_1_checkin(agent, now, config),
        week_1_progress(agent, now, config),
        expiration_warning(agent, now, config),
        await high_engagement_upsell(agent, contact, now, config, repository),
        await product_churn_risk(agent, contact, now, config, repository),
    ]
    return [event for event in candidates if event is not None]
