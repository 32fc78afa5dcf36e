"""
In-memory repository.

Backs the test suite. A single asyncio lock makes
every method atomic, which gives the same guarantees the Postgres
implementation gets from single-statement conditional updates.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Optional

from outreach_engine.arbitration.arbiter import apply_decision
from outreach_engine.core.config import ThrottleConfig
from outreach_engine.core.models import (
    ActivityRecord,
    Agent,
    AgentStatus,
    ArbitrationResult,
    Contact,
    ConversationLogEntry,
    ConversationState,
    MessageStatus,
    ScheduledMessage,
)
from outreach_engine.database.repository import EngineRepository
from outreach_engine.temporal.periods import ensure_aware
from outreach_engine.throttle.frequency_gate import may_message


class InMemoryRepository(EngineRepository):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._contacts: dict[str, Contact] = {}
        self._agents: dict[str, Agent] = {}
        self._states: dict[str, ConversationState] = {}
        self._messages: dict[str, ScheduledMessage] = {}
        self._activities: list[ActivityRecord] = []
        self._conversation: list[ConversationLogEntry] = []
        self._embeddings: dict[str, list[float]] = {}
        self._firings: set[tuple[str, str, str]] = set()
        self._counter_resets: dict[str, list[str]] = {"daily": [], "weekly": []}

    # ------------------------------------------------------------------
    # Seeding helpers (synchronous, for tests and dry runs)
    # ------------------------------------------------------------------

    def add_contact(self, contact: Contact) -> Contact:
        self._contacts[contact.id] = contact.model_copy(deep=True)
        return contact

    def add_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_copy(deep=True)
        return agent

    def put_state(self, state: ConversationState) -> ConversationState:
        self._states[state.contact_id] = state.model_copy(deep=True)
        return state

    def add_activity(self, record: ActivityRecord) -> None:
        self._activities.append(record.model_copy(deep=True))

    @property
    def messages(self) -> list[ScheduledMessage]:
        return [m.model_copy(deep=True) for m in self._messages.values()]

    @property
    def activities(self) -> list[ActivityRecord]:
        return list(self._activities)

    @property
    def conversation_log(self) -> list[ConversationLogEntry]:
        return list(self._conversation)

    @property
    def embeddings(self) -> dict[str, list[float]]:
        return dict(self._embeddings)

    # ------------------------------------------------------------------
    # Contacts and agents
    # ------------------------------------------------------------------

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        contact = self._contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None

    async def list_active_agents(self) -> list[Agent]:
        agents = [
            a.model_copy(deep=True)
            for a in self._agents.values()
            if a.status == AgentStatus.ACTIVE
        ]
        agents.sort(key=lambda a: ensure_aware(a.assigned_date))
        return agents

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def create_agent(self, agent: Agent) -> Agent:
        async with self._lock:
            self._agents[agent.id] = agent.model_copy(deep=True)
        return agent

    async def expire_agents(self, now: datetime) -> list[str]:
        async with self._lock:
            expired = []
            for agent in self._agents.values():
                if agent.status == AgentStatus.ACTIVE and ensure_aware(agent.expiration_date) < ensure_aware(now):
                    agent.status = AgentStatus.EXPIRED.value
                    expired.append(agent.id)
            for state in self._states.values():
                if state.active_agent_id in expired:
                    state.active_agent_id = None
                    state.agent_priority = 0
            return expired

    async def record_agent_send(self, agent_id: str, now: datetime) -> None:
        async with self._lock:
            agent = self._agents.get(agent_id)
            if agent is not None:
                agent.messages_sent += 1
                agent.last_engagement_at = now

    # ------------------------------------------------------------------
    # Conversation state
    # ------------------------------------------------------------------

    async def get_state(self, contact_id: str) -> Optional[ConversationState]:
        state = self._states.get(contact_id)
        return state.model_copy(deep=True) if state else None

    def _ensure_state_locked(
        self, contact_id: str, engagement_at: Optional[datetime] = None
    ) -> ConversationState:
        state = self._states.get(contact_id)
        if state is None:
            state = ConversationState(contact_id=contact_id, last_engagement_at=engagement_at)
            self._states[contact_id] = state
        return state

    async def ensure_state(
        self, contact_id: str, engagement_at: Optional[datetime] = None
    ) -> ConversationState:
        async with self._lock:
            return self._ensure_state_locked(contact_id, engagement_at).model_copy(deep=True)

    async def arbitrate(
        self,
        contact_id: str,
        agent_id: str,
        priority: int,
        message_type: str,
        now: datetime,
    ) -> ArbitrationResult:
        async with self._lock:
            state = self._ensure_state_locked(contact_id)
            return apply_decision(state, agent_id, priority, message_type, now)

    async def list_states_with_queue(self) -> list[ConversationState]:
        return [s.model_copy(deep=True) for s in self._states.values() if s.agent_queue]

    async def promote_queue_head(
        self,
        contact_id: str,
        expected_active_agent_id: Optional[str],
        expected_head_agent_id: str,
        priority: int,
    ) -> bool:
        async with self._lock:
            state = self._states.get(contact_id)
            if state is None or not state.agent_queue:
                return False
            if state.active_agent_id != expected_active_agent_id:
                return False
            if state.agent_queue[0].agent_id != expected_head_agent_id:
                return False
            head = state.agent_queue.pop(0)
            state.active_agent_id = head.agent_id
            state.agent_priority = priority
            return True

    async def drop_queue_head(self, contact_id: str, expected_head_agent_id: str) -> bool:
        async with self._lock:
            state = self._states.get(contact_id)
            if state is None or not state.agent_queue:
                return False
            if state.agent_queue[0].agent_id != expected_head_agent_id:
                return False
            state.agent_queue.pop(0)
            return True

    def _sent_since(self, contact_id: str, since: datetime) -> int:
        return sum(
            1
            for m in self._messages.values()
            if m.contact_id == contact_id
            and m.status == MessageStatus.SENT
            and m.sent_at is not None
            and ensure_aware(m.sent_at) > since
        )

    async def acquire_send_lease(
        self,
        contact_id: str,
        token: str,
        now: datetime,
        throttle: ThrottleConfig,
        lease_seconds: int,
    ) -> bool:
        now = ensure_aware(now)
        async with self._lock:
            state = self._ensure_state_locked(contact_id)
            if state.send_lease_until is not None and ensure_aware(state.send_lease_until) > now:
                return False
            if not may_message(state, now, throttle):
                return False
            if throttle.enforce_rolling_windows:
                if self._sent_since(contact_id, now - timedelta(hours=24)) >= throttle.max_messages_per_day:
                    return False
                if self._sent_since(contact_id, now - timedelta(days=7)) >= throttle.max_messages_per_week:
                    return False
            state.send_lease_token = token
            state.send_lease_until = now + timedelta(seconds=lease_seconds)
            return True

    async def complete_send_lease(self, contact_id: str, token: str, now: datetime) -> bool:
        async with self._lock:
            state = self._states.get(contact_id)
            if state is None or state.send_lease_token != token:
                return False
            state.messages_sent_today += 1
            state.messages_sent_this_week += 1
            state.last_message_sent_at = now
            state.send_lease_token = None
            state.send_lease_until = None
            return True

    async def release_send_lease(self, contact_id: str, token: str) -> bool:
        async with self._lock:
            state = self._states.get(contact_id)
            if state is None or state.send_lease_token != token:
                return False
            state.send_lease_token = None
            state.send_lease_until = None
            return True

    def _zero_counters_locked(self, kind: str) -> int:
        for state in self._states.values():
            if kind == "daily":
                state.messages_sent_today = 0
            else:
                state.messages_sent_this_week = 0
        return len(self._states)

    async def reset_daily_counters(self) -> int:
        async with self._lock:
            return self._zero_counters_locked("daily")

    async def reset_weekly_counters(self) -> int:
        async with self._lock:
            return self._zero_counters_locked("weekly")

    async def reset_counters_for_period(
        self, kind: str, period: str, now: datetime
    ) -> Optional[int]:
        async with self._lock:
            periods = self._counter_resets.setdefault(kind, [])
            if period in periods:
                return None
            affected = self._zero_counters_locked(kind)
            periods.append(period)
            return affected

    async def last_counter_reset(self, kind: str) -> Optional[str]:
        periods = self._counter_resets.get(kind) or []
        return max(periods) if periods else None

    async def record_counter_reset(self, kind: str, period: str, now: datetime) -> bool:
        async with self._lock:
            periods = self._counter_resets.setdefault(kind, [])
            if period in periods:
                return False
            periods.append(period)
            return True

    # ------------------------------------------------------------------
    # Scheduled messages
    # ------------------------------------------------------------------

    async def create_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        async with self._lock:
            stored = message.model_copy(deep=True)
            stored.id = stored.id or str(uuid.uuid4())
            stored.created_at = stored.created_at or stored.scheduled_for
            self._messages[stored.id] = stored
            return stored.model_copy(deep=True)

    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    def _claim_is_live(self, message: ScheduledMessage, now: datetime, lease_seconds: int) -> bool:
        if message.claim_token is None or message.claimed_at is None:
            return False
        return ensure_aware(message.claimed_at) > now - timedelta(seconds=lease_seconds)

    async def fetch_due_messages(
        self, now: datetime, limit: int, lease_seconds: int
    ) -> list[ScheduledMessage]:
        now = ensure_aware(now)
        due = [
            m
            for m in self._messages.values()
            if m.status == MessageStatus.PENDING
            and ensure_aware(m.scheduled_for) <= now
            and not self._claim_is_live(m, now, lease_seconds)
        ]
        due.sort(key=lambda m: ensure_aware(m.scheduled_for))
        return [m.model_copy(deep=True) for m in due[:limit]]

    async def claim_message(
        self, message_id: str, token: str, now: datetime, lease_seconds: int
    ) -> bool:
        now = ensure_aware(now)
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None or message.status != MessageStatus.PENDING:
                return False
            if self._claim_is_live(message, now, lease_seconds):
                return False
            message.claim_token = token
            message.claimed_at = now
            return True

    async def release_claim(self, message_id: str, token: str) -> bool:
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None or message.claim_token != token:
                return False
            message.claim_token = None
            message.claimed_at = None
            return True

    async def commit_transition(self, message: ScheduledMessage, token: str) -> bool:
        async with self._lock:
            stored = self._messages.get(message.id)
            if stored is None or stored.status != MessageStatus.PENDING:
                return False
            if stored.claim_token != token:
                return False
            stored.status = message.status
            stored.retry_count = message.retry_count
            stored.error_message = message.error_message
            stored.sent_at = message.sent_at
            stored.claim_token = None
            return True

    async def count_messages_since(
        self, contact_id: str, message_type: str, since: datetime
    ) -> int:
        since = ensure_aware(since)
        return sum(
            1
            for m in self._messages.values()
            if m.contact_id == contact_id
            and m.message_type == message_type
            and m.created_at is not None
            and ensure_aware(m.created_at) >= since
        )

    # ------------------------------------------------------------------
    # Activity, conversation history, embeddings
    # ------------------------------------------------------------------

    async def count_activities_since(
        self, contact_id: str, activity_type: str, since: datetime
    ) -> int:
        since = ensure_aware(since)
        return sum(
            1
            for a in self._activities
            if a.contact_id == contact_id
            and a.activity_type == activity_type
            and a.created_at is not None
            and ensure_aware(a.created_at) >= since
        )

    async def last_activity_at(self, contact_id: str) -> Optional[datetime]:
        times = [
            ensure_aware(a.created_at)
            for a in self._activities
            if a.contact_id == contact_id and a.created_at is not None
        ]
        return max(times) if times else None

    async def append_activity(self, record: ActivityRecord) -> None:
        async with self._lock:
            self._activities.append(record.model_copy(deep=True))

    async def append_conversation_message(self, entry: ConversationLogEntry) -> None:
        async with self._lock:
            self._conversation.append(entry.model_copy(deep=True))

    async def recent_conversation(self, contact_id: str, limit: int) -> list[ConversationLogEntry]:
        lines = [e for e in self._conversation if e.contact_id == contact_id]
        return list(reversed(lines))[:limit]

    async def save_embedding(self, message_id: str, embedding: list[float]) -> None:
        async with self._lock:
            self._embeddings[message_id] = list(embedding)

    # ------------------------------------------------------------------
    # Trigger firing ledger
    # ------------------------------------------------------------------

    async def has_trigger_fired(self, agent_id: str, kind: str, dedupe_key: str) -> bool:
        return (agent_id, kind, dedupe_key) in self._firings

    async def record_trigger_firing(
        self, agent_id: str, kind: str, dedupe_key: str, now: datetime
    ) -> bool:
        async with self._lock:
            key = (agent_id, kind, dedupe_key)
            if key in self._firings:
                return False
            self._firings.add(key)
            return True
