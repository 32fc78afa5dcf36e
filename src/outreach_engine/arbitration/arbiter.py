"""
Agent priority arbiter - which agent owns the right to message a contact.

Rules:
- No active agent: the candidate becomes active.
- Candidate already active: it keeps the slot.
- Active agent ranks lower than or equal to the candidate: the candidate
  preempts it.
- Active agent ranks strictly higher: the request is appended to the
  contact's FIFO queue and deferred. Nothing is composed or scheduled.

The compare-and-set is performed by the repository as one atomic update so
two concurrent trigger evaluations cannot both believe they won the slot.
The repository applies ``decide`` (in memory) or its SQL equivalent.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, TYPE_CHECKING

from outreach_engine.core.config import EngineConfig
from outreach_engine.core.models import (
    AgentStatus,
    ArbitrationOutcome,
    ArbitrationResult,
    ConversationState,
    QueuedRequest,
)
from outreach_engine.temporal.periods import ensure_aware

if TYPE_CHECKING:
    from outreach_engine.database.repository import EngineRepository

logger = logging.getLogger(__name__)


def decide(state: ConversationState, agent_id: str, priority: int) -> ArbitrationOutcome:
    """Pure arbitration decision over the current ownership of a contact."""
    if state.active_agent_id is None or state.active_agent_id == agent_id:
        return ArbitrationOutcome.ACCEPTED
    if state.agent_priority <= priority:
        return ArbitrationOutcome.PREEMPTED
    return ArbitrationOutcome.DEFERRED


def apply_decision(
    state: ConversationState,
    agent_id: str,
    priority: int,
    message_type: str,
    now: datetime,
) -> ArbitrationResult:
    """
    Decide and mutate ``state`` in place accordingly.

    A deferred request is queued once per (agent, message type); repeating
    it while still deferred leaves the queue unchanged.

    Callers must hold whatever lock makes the read and the write atomic.
    """
    outcome = decide(state, agent_id, priority)
    previous = state.active_agent_id
    if outcome == ArbitrationOutcome.DEFERRED:
        already_queued = any(
            q.agent_id == agent_id and q.message_type == message_type
            for q in state.agent_queue
        )
        if not already_queued:
            state.agent_queue.append(
                QueuedRequest(agent_id=agent_id, message_type=message_type, queued_at=now)
            )
    else:
        state.active_agent_id = agent_id
        state.agent_priority = priority
    return ArbitrationResult(
        outcome=outcome,
        active_agent_id=state.active_agent_id,
        previous_agent_id=previous,
        queue_length=len(state.agent_queue),
    )


class AgentPriorityArbiter:
    """
    Resolves competing agents for a contact using the configured priority table.

    Example:
        >>> arbiter = AgentPriorityArbiter(repository, config)
        >>> result = await arbiter.request(agent, "check_in", now)
        >>> if result.accepted:
        ...     ...  # compose and schedule
    """

    def __init__(self, repository: "EngineRepository", config: Optional[EngineConfig] = None):
        self.repository = repository
        self.config = config or EngineConfig()

    def priority_for(self, product_type: str) -> int:
        return self.config.priority_for(product_type)

    async def request(
        self,
        contact_id: str,
        agent_id: str,
        product_type: str,
        message_type: str,
        now: datetime,
    ) -> ArbitrationResult:
        """
        Ask for the right to message ``contact_id`` on behalf of ``agent_id``.

        Returns:
            ArbitrationResult; ``result.accepted`` is False when deferred.
        """
        priority = self.priority_for(product_type)
        result = await self.repository.arbitrate(
            contact_id=contact_id,
            agent_id=agent_id,
            priority=priority,
            message_type=message_type,
            now=now,
        )
        if result.outcome == ArbitrationOutcome.DEFERRED:
            logger.info(
                f"Agent {agent_id} ({product_type}, rank {priority}) deferred for contact "
                f"{contact_id}; queue length {result.queue_length}"
            )
        elif result.outcome == ArbitrationOutcome.PREEMPTED:
            logger.info(
                f"Agent {agent_id} ({product_type}, rank {priority}) preempted "
                f"{result.previous_agent_id} for contact {contact_id}"
            )
        return result

    async def promote_stale_queues(self, now: datetime) -> int:
        """
        Hand the slot to the head of the queue where the incumbent went idle.

        An incumbent is idle when it no longer exists, is no longer active, or
        nothing was sent to the contact for ``queue_promotion_idle_hours``.
        Queue entries whose agent is gone or expired are dropped; the first
        live entry takes the slot. Promotion changes ownership only; the
        queued request is not replayed. A failure on one contact is logged
        and does not stop the others.

        Returns:
            Number of contacts whose active agent changed.
        """
        idle_hours = self.config.sweep.queue_promotion_idle_hours
        idle_before = ensure_aware(now) - timedelta(hours=idle_hours)
        promoted = 0

        for state in await self.repository.list_states_with_queue():
            try:
                if await self._promote_contact(state, idle_before):
                    promoted += 1
            except Exception as e:
                logger.error(f"Queue promotion failed for contact {state.contact_id}: {e}")
        return promoted

    async def _promote_contact(self, state: ConversationState, idle_before: datetime) -> bool:
        incumbent = None
        if state.active_agent_id:
            incumbent = await self.repository.get_agent(state.active_agent_id)
        incumbent_live = incumbent is not None and incumbent.status == AgentStatus.ACTIVE
        recently_sent = (
            state.last_message_sent_at is not None
            and ensure_aware(state.last_message_sent_at) > idle_before
        )
        if incumbent_live and recently_sent:
            return False

        for head in list(state.agent_queue):
            next_agent = await self.repository.get_agent(head.agent_id)
            if next_agent is None or next_agent.status != AgentStatus.ACTIVE:
                dropped = await self.repository.drop_queue_head(
                    contact_id=state.contact_id,
                    expected_head_agent_id=head.agent_id,
                )
                if not dropped:
                    return False
                logger.info(
                    f"Dropped queued agent {head.agent_id} for contact {state.contact_id}: "
                    f"{'missing' if next_agent is None else next_agent.status}"
                )
                continue

            changed = await self.repository.promote_queue_head(
                contact_id=state.contact_id,
                expected_active_agent_id=state.active_agent_id,
                expected_head_agent_id=head.agent_id,
                priority=self.priority_for(next_agent.product_type),
            )
            if changed:
                logger.info(
                    f"Promoted queued agent {head.agent_id} for contact {state.contact_id} "
                    f"(previous: {state.active_agent_id})"
                )
            return changed
        return False
