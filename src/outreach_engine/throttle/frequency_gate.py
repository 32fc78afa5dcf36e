"""
Frequency gate - may a contact be messaged right now?

A pure decision over a ConversationState snapshot. It is checked twice: when
triggers are evaluated and again by the dispatcher right before sending,
because the two sweeps run on independent schedules. The dispatch-time check
is the authoritative one.
"""
from datetime import datetime, timedelta
from typing import Optional

from outreach_engine.core.config import ThrottleConfig
from outreach_engine.core.models import ConversationState
from outreach_engine.temporal.periods import ensure_aware


def rejection_reason(
    state: Optional[ConversationState],
    now: datetime,
    config: Optional[ThrottleConfig] = None,
) -> Optional[str]:
    """
    Explain why the gate is closed, or None when a message may be sent.

    waiting_until is checked first: an explicit cooldown always wins over
    the counters.
    """
    if state is None:
        return None
    config = config or ThrottleConfig()
    now = ensure_aware(now)

    if state.waiting_until is not None and ensure_aware(state.waiting_until) > now:
        return f"waiting until {state.waiting_until.isoformat()}"
    if state.messages_sent_today >= config.max_messages_per_day:
        return f"daily cap reached ({state.messages_sent_today}/{config.max_messages_per_day})"
    if state.messages_sent_this_week >= config.max_messages_per_week:
        return f"weekly cap reached ({state.messages_sent_this_week}/{config.max_messages_per_week})"
    if state.last_message_sent_at is not None:
        min_gap = timedelta(hours=config.min_hours_between_messages)
        if now - ensure_aware(state.last_message_sent_at) < min_gap:
            return f"last message less than {config.min_hours_between_messages:g}h ago"
    return None


def may_message(
    state: Optional[ConversationState],
    now: datetime,
    config: Optional[ThrottleConfig] = None,
) -> bool:
    """
    True when a new message may be sent to this contact at ``now``.

    A contact with no ConversationState yet has never been messaged.

    Examples:
        >>> from datetime import timezone
        >>> now = datetime(2026, 3, 2, 9, tzinfo=timezone.utc)
        >>> may_message(ConversationState(contact_id="c1", messages_sent_today=2), now)
        False
        >>> may_message(ConversationState(contact_id="c1"), now)
        True
    """
    return rejection_reason(state, now, config) is None


class FrequencyGate:
    """Frequency gate bound to one ThrottleConfig."""

    def __init__(self, config: Optional[ThrottleConfig] = None):
        self.config = config or ThrottleConfig()

    def may_message(self, state: Optional[ConversationState], now: datetime) -> bool:
        return may_message(state, now, self.config)

    def rejection_reason(self, state: Optional[ConversationState], now: datetime) -> Optional[str]:
        return rejection_reason(state, now, self.config)
