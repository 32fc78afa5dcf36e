"""
Agent registry - assigning product agents to contacts.

Assignment never overrides the contact's ownership or counters directly: an
optional introduction goes through the same gate, arbiter, composer and
scheduler as any trigger.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import BaseModel

from outreach_engine.arbitration.arbiter import AgentPriorityArbiter
from outreach_engine.core.config import EngineConfig
from outreach_engine.core.models import Agent, AgentStatus, Channel, MessageType, ScheduledMessage
from outreach_engine.database.repository import EngineRepository
from outreach_engine.errors import ComposerError, EngineError
from outreach_engine.integrations.composer import Composer
from outreach_engine.scheduling.scheduler import Scheduler
from outreach_engine.temporal.periods import utc_now
from outreach_engine.throttle.frequency_gate import rejection_reason

logger = logging.getLogger(__name__)


class AssignmentResult(BaseModel):
    agent: Agent
    introduction: Optional[ScheduledMessage] = None
    introduction_status: str = "not_requested"  # scheduled / gated / deferred / compose_failed


class AgentRegistry:
    """
    Example:
        >>> registry = AgentRegistry(repository, config, composer=composer)
        >>> result = await registry.assign_agent(contact_id, "webinar", {"goal": "learn options"})
        >>> result.agent.expiration_date - result.agent.assigned_date
        datetime.timedelta(days=30)
    """

    def __init__(
        self,
        repository: EngineRepository,
        config: Optional[EngineConfig] = None,
        composer: Optional[Composer] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.config = config or EngineConfig()
        self.composer = composer
        self.clock = clock
        self.arbiter = AgentPriorityArbiter(repository, self.config)
        self.scheduler = Scheduler(repository, self.config.dispatch, clock=clock)

    async def assign_agent(
        self,
        contact_id: str,
        product_type: str,
        context: Optional[dict[str, Any]] = None,
        days_active: Optional[int] = None,
        send_introduction: bool = False,
        channel: str = Channel.SMS.value,
    ) -> AssignmentResult:
        """
        Create an active agent for a contact.

        Args:
            contact_id: Contact receiving the agent.
            product_type: Agent/product type; decides priority and lifetime.
            context: Free-form assignment context (form answers, goals).
            days_active: Lifetime override; defaults to the per-type table.
            send_introduction: Also compose and schedule an introduction.
            channel: Channel for the introduction.

        Raises:
            EngineError: If the contact does not exist.
        """
        contact = await self.repository.get_contact(contact_id)
        if contact is None:
            raise EngineError(f"Contact {contact_id} not found")

        now = self.clock()
        days = days_active if days_active is not None else self.config.expiration_days_for(product_type)
        agent = await self.repository.create_agent(
            Agent(
                id=str(uuid.uuid4()),
                contact_id=contact_id,
                product_type=product_type,
                status=AgentStatus.ACTIVE,
                assigned_date=now,
                expiration_date=now + timedelta(days=days),
                context=context or {},
            )
        )
        state = await self.repository.ensure_state(contact_id, engagement_at=now)
        logger.info(
            f"Assigned {product_type} agent {agent.id} to contact {contact_id} "
            f"(rank {self.config.priority_for(product_type)}, {days} days)"
        )

        result = AssignmentResult(agent=agent)
        if not send_introduction:
            return result

        reason = rejection_reason(state, now, self.config.throttle)
        if reason:
            logger.info(f"Introduction for agent {agent.id} gated: {reason}")
            result.introduction_status = "gated"
            return result

        decision = await self.arbiter.request(
            contact_id, agent.id, product_type, MessageType.INTRODUCTION.value, now
        )
        if not decision.accepted:
            result.introduction_status = "deferred"
            return result

        if self.composer is None:
            raise EngineError("An introduction was requested but no composer is configured")
        try:
            composed = await self.composer.compose(
                contact_id,
                agent.id,
                MessageType.INTRODUCTION.value,
                {"product_type": product_type, "agent_context": agent.context},
                channel,
            )
        except ComposerError as e:
            logger.warning(f"Composer failed for introduction of agent {agent.id}: {e}")
            result.introduction_status = "compose_failed"
            return result

        result.introduction = await self.scheduler.schedule(
            contact_id=contact_id,
            agent_id=agent.id,
            message_type=MessageType.INTRODUCTION.value,
            channel=channel,
            subject=composed.subject if channel == Channel.EMAIL else None,
            body=composed.body,
        )
        result.introduction_status = "scheduled"
        return result
