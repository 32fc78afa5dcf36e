"""
Dispatcher - claims due ScheduledMessages and delivers them.

One pass:
1. Fetch up to ``batch_size`` pending messages due now, oldest first.
2. Group by contact; contacts run in parallel (bounded), messages of one
   contact run in order.
3. Per message: claim -> gate re-check -> resolve address -> take the
   contact's send lease -> send -> commit the terminal transition.

Outcomes per message:
- ``skipped``: another sweep holds the claim or already finished it.
- ``deferred``: the gate is closed at dispatch time. The claim is released
  and the message stays pending for a later pass.
- ``failed``: missing address or gateway error. retry_count + 1, reason
  recorded, counters untouched.
- ``sent``: counters, agent metrics and the best-effort side effects follow.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from outreach_engine.core.config import EngineConfig
from outreach_engine.core.models import (
    ActivityRecord,
    Channel,
    Contact,
    ConversationLogEntry,
    ScheduledMessage,
    SendResult,
)
from outreach_engine.database.repository import EngineRepository
from outreach_engine.dispatch.side_effects import SideEffectQueue
from outreach_engine.dispatch.state_machine import mark_failed, mark_sent
from outreach_engine.integrations.channels import ChannelSender
from outreach_engine.integrations.embeddings import Embedder
from outreach_engine.scheduling.worker_pool import group_by_contact, run_per_contact
from outreach_engine.temporal.periods import utc_now
from outreach_engine.throttle.frequency_gate import rejection_reason

logger = logging.getLogger(__name__)

SENT = "sent"
FAILED = "failed"
DEFERRED = "deferred"
SKIPPED = "skipped"
ERROR = "error"


def resolve_address(contact: Contact, channel: str) -> Optional[str]:
    """Phone number for sms, email address for email; None when missing."""
    if channel == Channel.SMS:
        address = contact.phone_number
    else:
        address = contact.email
    if address is None or not address.strip():
        return None
    return address.strip()


class Dispatcher:
    """
    Delivery sweep over the scheduled_messages table.

    Example:
        >>> dispatcher = Dispatcher(repository, HttpChannelSender(config.integrations), config)
        >>> summary = await dispatcher.run_once()
        >>> summary["sent"], summary["failed"], summary["deferred"]
        (3, 1, 2)
    """

    def __init__(
        self,
        repository: EngineRepository,
        sender: ChannelSender,
        config: Optional[EngineConfig] = None,
        side_effects: Optional[SideEffectQueue] = None,
        embedder: Optional[Embedder] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.sender = sender
        self.config = config or EngineConfig()
        self.side_effects = side_effects or SideEffectQueue(
            workers=self.config.integrations.side_effect_workers
        )
        self.embedder = embedder
        self.clock = clock
        self.stats = {
            "passes": 0,
            SENT: 0,
            FAILED: 0,
            DEFERRED: 0,
            SKIPPED: 0,
            ERROR: 0,
        }

    async def run_once(self) -> dict:
        """
        One dispatch pass.

        Returns:
            Summary dict with the number of due messages and per-outcome counts.
        """
        self.stats["passes"] += 1
        now = self.clock()
        dispatch = self.config.dispatch

        due = await self.repository.fetch_due_messages(
            now, dispatch.batch_size, dispatch.claim_lease_seconds
        )
        summary = {"due": len(due), SENT: 0, FAILED: 0, DEFERRED: 0, SKIPPED: 0, ERROR: 0}
        if not due:
            return summary

        groups = group_by_contact(due, key=lambda m: m.contact_id)
        outcomes = await run_per_contact(
            groups, self._dispatch_isolated, self.config.sweep.max_workers
        )
        for outcome in outcomes:
            summary[outcome] += 1
            self.stats[outcome] += 1

        # One-shot passes have no background workers; finish side effects here.
        if not self.side_effects.running:
            await self.side_effects.drain()

        logger.info(
            f"Dispatch pass: {summary['due']} due, {summary[SENT]} sent, "
            f"{summary[FAILED]} failed, {summary[DEFERRED]} deferred, "
            f"{summary[SKIPPED]} skipped, {summary[ERROR]} errors"
        )
        return summary

    async def _dispatch_isolated(self, message: ScheduledMessage) -> str:
        try:
            return await self.dispatch_message(message)
        except Exception as e:
            # The claim stays until its lease runs out; a later pass retries.
            logger.error(f"Error dispatching message {message.id} for contact {message.contact_id}: {e}")
            return ERROR

    async def dispatch_message(self, message: ScheduledMessage) -> str:
        """Claim and deliver one message. Returns the outcome label."""
        dispatch = self.config.dispatch
        claim_token = str(uuid.uuid4())

        claimed = await self.repository.claim_message(
            message.id, claim_token, self.clock(), dispatch.claim_lease_seconds
        )
        if not claimed:
            logger.debug(f"Message {message.id} already claimed elsewhere, skipping")
            return SKIPPED

        contact = await self.repository.get_contact(message.contact_id)
        if contact is None:
            return await self._fail(message, claim_token, "Contact not found")

        state = await self.repository.ensure_state(message.contact_id)
        reason = rejection_reason(state, self.clock(), self.config.throttle)
        if reason:
            logger.debug(f"Message {message.id} deferred for contact {message.contact_id}: {reason}")
            await self.repository.release_claim(message.id, claim_token)
            return DEFERRED

        address = resolve_address(contact, message.channel)
        if address is None:
            return await self._fail(
                message, claim_token, f"Missing {message.channel} contact info"
            )

        lease_token = str(uuid.uuid4())
        leased = await self.repository.acquire_send_lease(
            message.contact_id,
            lease_token,
            self.clock(),
            self.config.throttle,
            dispatch.send_lease_seconds,
        )
        if not leased:
            logger.debug(
                f"Message {message.id} deferred: send lease unavailable for contact {message.contact_id}"
            )
            await self.repository.release_claim(message.id, claim_token)
            return DEFERRED

        subject = message.subject
        if message.channel == Channel.EMAIL and not subject:
            subject = self.config.integrations.default_email_subject

        try:
            result = await self.sender.send(message.channel, address, subject, message.body)
        except Exception as e:
            result = SendResult(success=False, error=str(e) or e.__class__.__name__)

        if not result.success:
            await self.repository.release_send_lease(message.contact_id, lease_token)
            return await self._fail(message, claim_token, result.error or "Unknown gateway error")

        return await self._record_success(message, claim_token, lease_token, result)

    async def _fail(self, message: ScheduledMessage, claim_token: str, error: str) -> str:
        failed = mark_failed(message, self.clock(), error)
        committed = await self.repository.commit_transition(failed, claim_token)
        if committed:
            logger.warning(f"Message {message.id} failed for contact {message.contact_id}: {error}")
            return FAILED
        logger.warning(f"Message {message.id} failed but its claim was lost: {error}")
        return SKIPPED

    async def _record_success(
        self,
        message: ScheduledMessage,
        claim_token: str,
        lease_token: str,
        result: SendResult,
    ) -> str:
        sent_at = self.clock()
        sent = mark_sent(message, sent_at)
        committed = await self.repository.commit_transition(sent, claim_token)

        # The message left the gateway either way, so the throttle ledger counts it.
        await self.repository.complete_send_lease(message.contact_id, lease_token, sent_at)

        if not committed:
            logger.error(
                f"Message {message.id} was delivered but its claim expired before commit"
            )
            return SKIPPED

        if message.agent_id:
            try:
                await self.repository.record_agent_send(message.agent_id, sent_at)
            except Exception as e:
                logger.error(f"Failed to update metrics for agent {message.agent_id}: {e}")

        self._queue_side_effects(sent, result)
        logger.info(
            f"Sent {message.message_type} message {message.id} to contact "
            f"{message.contact_id} via {message.channel}"
        )
        return SENT

    def _queue_side_effects(self, message: ScheduledMessage, result: SendResult) -> None:
        repository = self.repository
        activity = ActivityRecord(
            contact_id=message.contact_id,
            activity_type=f"{message.channel}_sent",
            description=f"{message.channel.upper()} message sent",
            metadata={
                "message_id": message.id,
                "agent_id": message.agent_id,
                "content_preview": message.body[:100],
                "provider_message_id": result.provider_message_id,
            },
            created_at=message.sent_at,
        )
        self.side_effects.submit("activity", lambda: repository.append_activity(activity))

        if message.channel == Channel.SMS:
            entry = ConversationLogEntry(
                contact_id=message.contact_id,
                agent_id=message.agent_id,
                direction="outbound",
                channel=Channel.SMS,
                body=message.body,
                created_at=message.sent_at,
            )
            self.side_effects.submit(
                "conversation_log", lambda: repository.append_conversation_message(entry)
            )

        if self.embedder is not None:
            embedder = self.embedder

            async def embed() -> None:
                embedding = await embedder.embed(message.body)
                await repository.save_embedding(message.id, embedding)

            self.side_effects.submit("embedding", embed)

    def health_check(self) -> dict:
        return {
            **self.stats,
            "side_effects": dict(self.side_effects.stats),
            "side_effects_pending": self.side_effects.pending(),
        }
