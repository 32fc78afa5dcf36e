"""
Campaign triggers - per agent type outreach schedule and milestones.

An agent type with a campaign configured is evaluated here instead of by
the default rules. The campaign day is the floored number of whole days
since assignment.

- Scheduled outreach fires on its campaign day (widened by
  ``trigger_catch_up_days``), keyed ``day:<day>:<type>``.
- A milestone fires whenever its behaviour condition holds, at most once
  per campaign day, keyed ``<event>:day:<campaign_day>``.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from outreach_engine.core.config import CampaignConfig, MilestoneTrigger, ScheduledOutreach
from outreach_engine.core.models import (
    Agent,
    Contact,
    ConversationState,
    MilestoneEvent,
    TriggerEvent,
    TriggerKind,
)
from outreach_engine.temporal.periods import whole_days_between
from outreach_engine.triggers.rules import in_window

if TYPE_CHECKING:
    from outreach_engine.database.repository import EngineRepository

LESSON_COMPLETED_ACTIVITY = "lesson_completed"
LOGIN_ACTIVITY = "login"


def _context(campaign: CampaignConfig, campaign_day: int, goal: str, source: str, name: str) -> dict:
    return {
        "campaign_day": campaign_day,
        "days_remaining": campaign.duration_days - campaign_day,
        "goal": goal,
        "trigger_source": source,
        "campaign_trigger": name,
    }


def scheduled_outreach(
    entry: ScheduledOutreach,
    campaign: CampaignConfig,
    campaign_day: int,
    catch_up_days: int,
) -> Optional[TriggerEvent]:
    if not in_window(campaign_day, entry.day, catch_up_days):
        return None
    return TriggerEvent(
        kind=TriggerKind.CAMPAIGN_OUTREACH,
        message_type=entry.goal,
        context=_context(campaign, campaign_day, entry.goal, "scheduled_outreach", entry.type),
        channel=entry.channel,
        dedupe_key=f"day:{entry.day}:{entry.type}",
    )


async def milestone_reached(
    milestone: MilestoneTrigger,
    agent: Agent,
    contact: Contact,
    state: Optional[ConversationState],
    now: datetime,
    repository: "EngineRepository",
) -> bool:
    """
    Whether the contact's behaviour satisfies ``milestone`` at ``now``.

    A contact with no recorded activity or engagement counts as inactive.
    """
    event = milestone.event
    if event == MilestoneEvent.LESSON_COMPLETED:
        completed = await repository.count_activities_since(
            contact.id, LESSON_COMPLETED_ACTIVITY, agent.assigned_date
        )
        return completed >= (milestone.threshold or 3)

    if event == MilestoneEvent.NO_ACTIVITY:
        last = await repository.last_activity_at(contact.id)
        return last is None or whole_days_between(last, now) >= (milestone.days or 7)

    if event == MilestoneEvent.NO_LOGIN:
        since = now - timedelta(days=milestone.days or 7)
        return await repository.count_activities_since(contact.id, LOGIN_ACTIVITY, since) == 0

    if event == MilestoneEvent.HIGH_USAGE:
        since = now - timedelta(days=7)
        logins = await repository.count_activities_since(contact.id, LOGIN_ACTIVITY, since)
        return logins >= (milestone.threshold or 5)

    if event == MilestoneEvent.NO_ENGAGEMENT:
        if state is None or state.last_engagement_at is None:
            return True
        return whole_days_between(state.last_engagement_at, now) >= (milestone.days or 5)

    return False


async def evaluate_campaign(
    campaign: CampaignConfig,
    agent: Agent,
    contact: Contact,
    state: Optional[ConversationState],
    now: datetime,
    catch_up_days: int,
    repository: "EngineRepository",
) -> list[TriggerEvent]:
    """Scheduled outreach for the current campaign day, then milestones, in config order."""
    campaign_day = whole_days_between(agent.assigned_date, now)
    events = []

    for entry in campaign.outreach_schedule:
        event = scheduled_outreach(entry, campaign, campaign_day, catch_up_days)
        if event is not None:
            events.append(event)

    for milestone in campaign.milestone_triggers:
        if not await milestone_reached(milestone, agent, contact, state, now, repository):
            continue
        context = _context(campaign, campaign_day, milestone.goal, "milestone", milestone.type)
        context["milestone_event"] = milestone.event
        events.append(
            TriggerEvent(
                kind=TriggerKind.CAMPAIGN_MILESTONE,
                message_type=milestone.goal,
                context=context,
                channel=milestone.channel,
                dedupe_key=f"{milestone.event}:day:{campaign_day}",
            )
        )
    return events
