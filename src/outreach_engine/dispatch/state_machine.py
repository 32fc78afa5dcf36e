"""
ScheduledMessage state machine.

    pending -> sent     (terminal)
    pending -> failed   (terminal)

``apply_transition`` is the only function that produces a terminal message;
the Dispatcher persists its result with ``repository.commit_transition``,
which is conditional on the message still being pending under our claim.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from outreach_engine.core.models import MessageStatus, ScheduledMessage
from outreach_engine.errors import InvalidTransitionError

ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.PENDING: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.SENT: frozenset(),
    MessageStatus.FAILED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return MessageStatus(target) in ALLOWED_TRANSITIONS[MessageStatus(current)]


def apply_transition(
    message: ScheduledMessage,
    target: MessageStatus,
    now: datetime,
    error: Optional[str] = None,
) -> ScheduledMessage:
    """
    Return a copy of ``message`` moved to ``target``.

    A successful send records ``sent_at``; a failure records the reason and
    increments ``retry_count``. The input is not modified.

    Raises:
        InvalidTransitionError: If the message is already terminal or the
                                target is not a terminal status.
    """
    if not can_transition(message.status, target):
        raise InvalidTransitionError(
            f"Message {message.id}: cannot move from {message.status} to {MessageStatus(target).value}"
        )

    updated = message.model_copy(deep=True)
    updated.status = MessageStatus(target).value
    if target == MessageStatus.SENT:
        updated.sent_at = now
        updated.error_message = None
    else:
        updated.error_message = error or "unknown delivery failure"
        updated.retry_count = message.retry_count + 1
    return updated


def mark_sent(message: ScheduledMessage, now: datetime) -> ScheduledMessage:
    return apply_transition(message, MessageStatus.SENT, now)


def mark_failed(message: ScheduledMessage, now: datetime, error: str) -> ScheduledMessage:
    return apply_transition(message, MessageStatus.FAILED, now, error=error)
