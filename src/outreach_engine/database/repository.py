"""
Storage interface for the outreach engine.

Every implementation must provide the atomic primitives the sweeps rely on:
message claim with a lease, conditional terminal transition, arbitration
compare-and-set, the per-contact send lease, single-statement counter resets
and the trigger firing ledger. Callers never read-modify-write shared rows
in two steps.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from outreach_engine.core.config import ThrottleConfig
from outreach_engine.core.models import (
    ActivityRecord,
    Agent,
    ArbitrationResult,
    Contact,
    ConversationLogEntry,
    ConversationState,
    ScheduledMessage,
)


class EngineRepository(ABC):
    """Abstract store for agents, conversation state and scheduled messages."""

    # ------------------------------------------------------------------
    # Contacts and agents
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        raise NotImplementedError

    @abstractmethod
    async def list_active_agents(self) -> list[Agent]:
        raise NotImplementedError

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        raise NotImplementedError

    @abstractmethod
    async def create_agent(self, agent: Agent) -> Agent:
        raise NotImplementedError

    @abstractmethod
    async def expire_agents(self, now: datetime) -> list[str]:
        """Flip active agents past their expiration date to expired.

        An expired agent that holds a contact's active slot releases it.
        Returns the ids of the expired agents.
        """
        raise NotImplementedError

    @abstractmethod
    async def record_agent_send(self, agent_id: str, now: datetime) -> None:
        """Increment the agent's lifetime messages_sent and touch last_engagement_at."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Conversation state
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_state(self, contact_id: str) -> Optional[ConversationState]:
        raise NotImplementedError

    @abstractmethod
    async def ensure_state(
        self, contact_id: str, engagement_at: Optional[datetime] = None
    ) -> ConversationState:
        """Return the contact's state, creating it on first contact."""
        raise NotImplementedError

    @abstractmethod
    async def arbitrate(
        self,
        contact_id: str,
        agent_id: str,
        priority: int,
        message_type: str,
        now: datetime,
    ) -> ArbitrationResult:
        """Atomically compare the active agent and either take the slot or queue.

        A deferral already queued for the same (agent, message type) is not
        appended again.
        """
        raise NotImplementedError

    @abstractmethod
    async def list_states_with_queue(self) -> list[ConversationState]:
        raise NotImplementedError

    @abstractmethod
    async def promote_queue_head(
        self,
        contact_id: str,
        expected_active_agent_id: Optional[str],
        expected_head_agent_id: str,
        priority: int,
    ) -> bool:
        """Pop the queue head into the active slot if neither slot nor head changed."""
        raise NotImplementedError

    @abstractmethod
    async def drop_queue_head(self, contact_id: str, expected_head_agent_id: str) -> bool:
        """Discard the queue head if it still belongs to ``expected_head_agent_id``."""
        raise NotImplementedError

    @abstractmethod
    async def acquire_send_lease(
        self,
        contact_id: str,
        token: str,
        now: datetime,
        throttle: ThrottleConfig,
        lease_seconds: int,
    ) -> bool:
        """Take the contact's send lease if the gate is open at ``now``.

        The gate predicate and the lease are evaluated in one atomic step.
        With ``throttle.enforce_rolling_windows`` the trailing 24h / 7d sent
        counts are also checked against the caps.
        """
        raise NotImplementedError

    @abstractmethod
    async def complete_send_lease(self, contact_id: str, token: str, now: datetime) -> bool:
        """Increment daily/weekly counters, set last_message_sent_at, drop the lease."""
        raise NotImplementedError

    @abstractmethod
    async def release_send_lease(self, contact_id: str, token: str) -> bool:
        """Drop the lease without touching counters."""
        raise NotImplementedError

    @abstractmethod
    async def reset_daily_counters(self) -> int:
        raise NotImplementedError

    @abstractmethod
    async def reset_weekly_counters(self) -> int:
        raise NotImplementedError

    @abstractmethod
    async def last_counter_reset(self, kind: str) -> Optional[str]:
        """Most recent period key recorded for ``kind`` ('daily' or 'weekly')."""
        raise NotImplementedError

    @abstractmethod
    async def record_counter_reset(self, kind: str, period: str, now: datetime) -> bool:
        """Record a reset for a period. False if that period was already recorded."""
        raise NotImplementedError

    @abstractmethod
    async def reset_counters_for_period(
        self, kind: str, period: str, now: datetime
    ) -> Optional[int]:
        """Record the period marker and zero the ``kind`` counters in one transaction.

        Returns the number of contacts reset, or None if the period was
        already recorded. Either both writes land or neither does.
        """
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Scheduled messages
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        raise NotImplementedError

    @abstractmethod
    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_due_messages(
        self, now: datetime, limit: int, lease_seconds: int
    ) -> list[ScheduledMessage]:
        """Pending messages due at ``now`` and not under a live claim, oldest first."""
        raise NotImplementedError

    @abstractmethod
    async def claim_message(
        self, message_id: str, token: str, now: datetime, lease_seconds: int
    ) -> bool:
        """Claim a pending message. Exactly one concurrent caller wins."""
        raise NotImplementedError

    @abstractmethod
    async def release_claim(self, message_id: str, token: str) -> bool:
        """Give back a claim, leaving the message pending."""
        raise NotImplementedError

    @abstractmethod
    async def commit_transition(self, message: ScheduledMessage, token: str) -> bool:
        """Persist a terminal state, only if still pending and held by ``token``."""
        raise NotImplementedError

    @abstractmethod
    async def count_messages_since(
        self, contact_id: str, message_type: str, since: datetime
    ) -> int:
        """ScheduledMessages of a type created for a contact since ``since``."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Activity, conversation history, embeddings
    # ------------------------------------------------------------------

    @abstractmethod
    async def count_activities_since(
        self, contact_id: str, activity_type: str, since: datetime
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    async def last_activity_at(self, contact_id: str) -> Optional[datetime]:
        """Timestamp of the contact's most recent activity of any type."""
        raise NotImplementedError

    @abstractmethod
    async def append_activity(self, record: ActivityRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    async def append_conversation_message(self, entry: ConversationLogEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    async def recent_conversation(self, contact_id: str, limit: int) -> list[ConversationLogEntry]:
        """Newest-first conversation lines for a contact."""
        raise NotImplementedError

    @abstractmethod
    async def save_embedding(self, message_id: str, embedding: list[float]) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Trigger firing ledger
    # ------------------------------------------------------------------

    @abstractmethod
    async def has_trigger_fired(self, agent_id: str, kind: str, dedupe_key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def record_trigger_firing(
        self, agent_id: str, kind: str, dedupe_key: str, now: datetime
    ) -> bool:
        """Insert a ledger row. False if it already existed."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release any underlying resources."""
        return None
