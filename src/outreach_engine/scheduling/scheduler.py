"""
Scheduler - persists composed messages as pending ScheduledMessages.

The scheduler never sends anything. ``schedule`` is a single insert; the
Dispatcher picks the row up on its next pass.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from outreach_engine.core.config import DispatchConfig
from outreach_engine.core.models import MessageStatus, ScheduledMessage
from outreach_engine.database.repository import EngineRepository
from outreach_engine.errors import EngineError
from outreach_engine.temporal.periods import utc_now

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Creates ScheduledMessage rows.

    Example:
        >>> scheduler = Scheduler(repository)
        >>> message = await scheduler.schedule(
        ...     contact_id, agent_id, "check_in", "sms", None, "Hi! How is it going?"
        ... )
    """

    def __init__(
        self,
        repository: EngineRepository,
        config: Optional[DispatchConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.config = config or DispatchConfig()
        self.clock = clock

    async def schedule(
        self,
        contact_id: str,
        agent_id: Optional[str],
        message_type: str,
        channel: str,
        subject: Optional[str],
        body: str,
        scheduled_for: Optional[datetime] = None,
    ) -> ScheduledMessage:
        """
        Insert a new pending message.

        Args:
            scheduled_for: Delivery time; defaults to now (immediate delivery).

        Returns:
            The stored ScheduledMessage with its generated id.
        """
        now = self.clock()
        message = ScheduledMessage(
            contact_id=contact_id,
            agent_id=agent_id,
            message_type=message_type,
            channel=channel,
            scheduled_for=scheduled_for or now,
            subject=subject,
            body=body,
            created_at=now,
        )
        stored = await self.repository.create_scheduled_message(message)
        logger.info(
            f"Scheduled {stored.message_type} message {stored.id} for contact {contact_id} "
            f"via {stored.channel} at {stored.scheduled_for.isoformat()}"
        )
        return stored

    async def requeue_failed(self, message_id: str) -> ScheduledMessage:
        """
        Create a fresh pending copy of a failed message.

        The failed row is left untouched as the audit record. The copy keeps
        the failed row's retry_count and links back to it through
        ``requeued_from``.

        Raises:
            EngineError: If the message does not exist, is not failed, or has
                         used up ``max_retries``.
        """
        original = await self.repository.get_scheduled_message(message_id)
        if original is None:
            raise EngineError(f"Scheduled message {message_id} not found")
        if original.status != MessageStatus.FAILED:
            raise EngineError(
                f"Only failed messages can be requeued ({message_id} is {original.status})"
            )
        if original.retry_count >= self.config.max_retries:
            raise EngineError(
                f"Message {message_id} already failed {original.retry_count} time(s); "
                f"limit is {self.config.max_retries}"
            )

        now = self.clock()
        copy = ScheduledMessage(
            contact_id=original.contact_id,
            agent_id=original.agent_id,
            message_type=original.message_type,
            channel=original.channel,
            scheduled_for=now,
            subject=original.subject,
            body=original.body,
            retry_count=original.retry_count,
            requeued_from=original.id,
            created_at=now,
        )
        stored = await self.repository.create_scheduled_message(copy)
        logger.info(f"Requeued failed message {message_id} as {stored.id}")
        return stored
