"""
Trigger Evaluator - periodic sweep deciding which agents should message whom.

A pass:
1. Counter maintenance (so a midnight crossed since the last pass is
   reflected before any gate check).
2. Expire agents past their expiration date; promote stale queues.
3. For every active agent, grouped by contact:
   gate -> rules -> ledger -> arbiter -> composer -> scheduler -> ledger.
   Rules are the agent type's campaign when one is configured, else the
   default rules.
4. Counter maintenance again, for a boundary crossed during the pass.

Gate rejection and deferral are normal outcomes. A composer failure drops
that one trigger for this pass. An unexpected error is contained to the
agent being evaluated.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Optional

from outreach_engine.arbitration.arbiter import AgentPriorityArbiter
from outreach_engine.core.config import EngineConfig
from outreach_engine.core.models import Agent, Channel, ConversationState, TriggerEvent
from outreach_engine.database.repository import EngineRepository
from outreach_engine.errors import ComposerError
from outreach_engine.integrations.composer import Composer
from outreach_engine.scheduling.scheduler import Scheduler
from outreach_engine.scheduling.worker_pool import group_by_contact, run_per_contact
from outreach_engine.temporal.periods import hours_between, utc_now
from outreach_engine.throttle.counters import CounterMaintenance
from outreach_engine.throttle.frequency_gate import FrequencyGate
from outreach_engine.triggers.campaign import evaluate_campaign
from outreach_engine.triggers.rules import evaluate_rules

logger = logging.getLogger(__name__)


class TriggerEvaluator:
    """
    Example:
        >>> evaluator = TriggerEvaluator(repository, HttpComposer(config.integrations), config=config)
        >>> summary = await evaluator.run_once()
        >>> summary["scheduled"], summary["deferred"], summary["gated"]
        (4, 1, 7)
    """

    def __init__(
        self,
        repository: EngineRepository,
        composer: Composer,
        config: Optional[EngineConfig] = None,
        scheduler: Optional[Scheduler] = None,
        arbiter: Optional[AgentPriorityArbiter] = None,
        counters: Optional[CounterMaintenance] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.composer = composer
        self.config = config or EngineConfig()
        self.clock = clock
        self.scheduler = scheduler or Scheduler(repository, self.config.dispatch, clock=clock)
        self.arbiter = arbiter or AgentPriorityArbiter(repository, self.config)
        self.counters = counters or CounterMaintenance(repository, self.config.sweep, clock=clock)
        self.gate = FrequencyGate(self.config.throttle)
        self.stats: Counter = Counter()

    async def run_once(self) -> dict:
        """
        One trigger pass.

        Returns:
            Summary counts (agents, gated, fired, deferred, dropped,
            scheduled, ...) plus which counter resets ran.
        """
        now = self.clock()
        before = await self.counters.run(now)

        expired = await self.repository.expire_agents(now)
        if expired:
            logger.info(f"Expired {len(expired)} agent(s)")

        promoted = 0
        if self.config.sweep.queue_promotion_enabled:
            promoted = await self.arbiter.promote_stale_queues(now)

        agents = await self.repository.list_active_agents()
        groups = group_by_contact(agents, key=lambda a: a.contact_id)
        results = await run_per_contact(
            groups, self._evaluate_isolated, self.config.sweep.max_workers
        )

        totals: Counter = Counter()
        for result in results:
            totals.update(result)
        self.stats.update(totals)
        self.stats["passes"] += 1

        after = await self.counters.run(self.clock())

        summary = {
            "agents": len(agents),
            "contacts": len(groups),
            "expired": len(expired),
            "promoted": promoted,
            "gated": totals["gated"],
            "fired": totals["fired"],
            "already_fired": totals["already_fired"],
            "deferred": totals["deferred"],
            "dropped": totals["dropped"],
            "scheduled": totals["scheduled"],
            "errors": totals["errors"],
            "daily_reset": before["daily"] or after["daily"],
            "weekly_reset": before["weekly"] or after["weekly"],
        }
        logger.info(
            f"Trigger pass: {summary['agents']} agents, {summary['fired']} fired, "
            f"{summary['scheduled']} scheduled, {summary['deferred']} deferred, "
            f"{summary['gated']} gated, {summary['dropped']} dropped"
        )
        return summary

    async def _evaluate_isolated(self, agent: Agent) -> Counter:
        try:
            return await self.evaluate_agent(agent)
        except Exception as e:
            logger.error(f"Error evaluating agent {agent.id} for contact {agent.contact_id}: {e}")
            return Counter(errors=1)

    async def evaluate_agent(self, agent: Agent) -> Counter:
        """Evaluate every rule for one agent and act on what fired."""
        counts: Counter = Counter()
        now = self.clock()

        contact = await self.repository.get_contact(agent.contact_id)
        if contact is None:
            logger.warning(f"Contact {agent.contact_id} for agent {agent.id} not found")
            counts["errors"] += 1
            return counts

        state = await self.repository.ensure_state(contact.id)
        reason = self.gate.rejection_reason(state, now)
        if reason:
            logger.debug(f"Contact {contact.id} gated for agent {agent.id}: {reason}")
            counts["gated"] += 1
            return counts

        triggers = self.config.triggers
        campaign = triggers.campaigns.get(agent.product_type)
        if campaign is not None:
            events = await evaluate_campaign(
                campaign, agent, contact, state, now, triggers.trigger_catch_up_days, self.repository
            )
        else:
            events = await evaluate_rules(agent, contact, state, now, triggers, self.repository)
        conversation: Optional[dict] = None

        for event in events:
            counts["fired"] += 1
            if event.dedupe_key and await self.repository.has_trigger_fired(
                agent.id, event.kind, event.dedupe_key
            ):
                counts["already_fired"] += 1
                continue

            result = await self.arbiter.request(
                contact_id=contact.id,
                agent_id=agent.id,
                product_type=agent.product_type,
                message_type=event.message_type,
                now=now,
            )
            if not result.accepted:
                counts["deferred"] += 1
                continue

            if conversation is None:
                conversation = await self.conversation_context(contact.id, state, now)

            if await self._compose_and_schedule(agent, event, conversation):
                counts["scheduled"] += 1
            else:
                counts["dropped"] += 1

        return counts

    async def _compose_and_schedule(
        self, agent: Agent, event: TriggerEvent, conversation: dict
    ) -> bool:
        context: dict[str, Any] = {
            **event.context,
            "trigger": event.kind,
            "recent_conversation": conversation,
        }
        try:
            composed = await self.composer.compose(
                agent.contact_id, agent.id, event.message_type, context, event.channel
            )
        except ComposerError as e:
            logger.warning(
                f"Composer failed for {event.kind} (agent {agent.id}, contact {agent.contact_id}): {e}"
            )
            return False

        subject = composed.subject if event.channel == Channel.EMAIL else None
        await self.scheduler.schedule(
            contact_id=agent.contact_id,
            agent_id=agent.id,
            message_type=event.message_type,
            channel=event.channel,
            subject=subject,
            body=composed.body,
        )
        if event.dedupe_key:
            await self.repository.record_trigger_firing(
                agent.id, event.kind, event.dedupe_key, self.clock()
            )
        return True

    async def conversation_context(
        self, contact_id: str, state: ConversationState, now: datetime
    ) -> dict:
        """Recent history handed to the composer with every trigger."""
        lines = await self.repository.recent_conversation(
            contact_id, self.config.triggers.recent_conversation_lines
        )
        hours_since_engagement = None
        if state.last_engagement_at is not None:
            hours_since_engagement = round(hours_between(state.last_engagement_at, now), 1)
        hours_since_message = None
        if state.last_message_sent_at is not None:
            hours_since_message = round(hours_between(state.last_message_sent_at, now), 1)

        return {
            "hours_since_engagement": hours_since_engagement,
            "hours_since_last_message": hours_since_message,
            "last_messages": [
                {
                    "direction": line.direction,
                    "body": line.body,
                    "created_at": line.created_at.isoformat() if line.created_at else None,
                }
                for line in lines
            ],
        }

    def health_check(self) -> dict:
        return dict(self.stats)
