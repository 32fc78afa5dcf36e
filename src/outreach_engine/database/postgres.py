# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "asyncpg>=0.29.0",
#   "pydantic>=2.0.0",
# ]
# ///
"""
PostgreSQL repository backed by an asyncpg pool.

Every state change that can race is a single conditional statement:
claims and transitions check ``status = 'pending'``, arbitration and the send
lease lock the contact's conversation_state row inside one UPDATE, and
a period's counter reset commits its marker and its UPDATE in one
transaction. Results are checked with the
command tag (``"UPDATE 1"``) rather than by re-reading.

Usage:
    from outreach_engine.database.pool import get_pool
    from outreach_engine.database.postgres import PostgresRepository

    repository = PostgresRepository(await get_pool())
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import asyncpg

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
from outreach_engine.database.pool import close_pool
from outreach_engine.database.repository import EngineRepository

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

_UUID_FIELDS = (
    "id",
    "contact_id",
    "agent_id",
    "active_agent_id",
    "previous_agent_id",
    "claim_token",
    "requeued_from",
    "send_lease_token",
)


def _uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    return uuid.UUID(str(value)) if value is not None else None


def _row_to_dict(row: asyncpg.Record) -> dict:
    """Convert a record to a dict with UUID columns as strings."""
    result = dict(row)
    for key in _UUID_FIELDS:
        if result.get(key) is not None:
            result[key] = str(result[key])
    return result


def _affected(result: str) -> int:
    """Parse an asyncpg command tag such as 'UPDATE 3' or 'INSERT 0 1'."""
    if not result:
        return 0
    try:
        return int(result.split()[-1])
    except ValueError:
        return 0


_AGENT_COLUMNS = """
    id, contact_id, product_type, status, assigned_date, expiration_date,
    messages_sent, last_engagement_at, agent_context AS context
"""

_STATE_COLUMNS = """
    contact_id, active_agent_id, agent_priority, agent_queue,
    messages_sent_today, messages_sent_this_week, last_message_sent_at,
    last_engagement_at, waiting_until, send_lease_token, send_lease_until
"""

_MESSAGE_COLUMNS = """
    id, contact_id, agent_id, message_type, channel, scheduled_for, status,
    subject, body, retry_count, error_message, sent_at, claim_token,
    claimed_at, requeued_from, created_at
"""


class PostgresRepository(EngineRepository):
    """EngineRepository over the tables in migrations/001_engine_schema.sql."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    # ------------------------------------------------------------------
    # Contacts and agents
    # ------------------------------------------------------------------

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, full_name, phone_number, email, engagement_score,
                       total_spent::float8 AS total_spent
                FROM contacts
                WHERE id = $1
                """,
                _uuid(contact_id),
            )
        return Contact(**_row_to_dict(row)) if row else None

    async def list_active_agents(self) -> list[Agent]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_AGENT_COLUMNS}
                FROM product_agents
                WHERE status = 'active'
                ORDER BY assigned_date ASC
                """
            )
        return [Agent(**_row_to_dict(row)) for row in rows]

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_AGENT_COLUMNS} FROM product_agents WHERE id = $1",
                _uuid(agent_id),
            )
        return Agent(**_row_to_dict(row)) if row else None

    async def create_agent(self, agent: Agent) -> Agent:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO product_agents (
                    id, contact_id, product_type, status, assigned_date,
                    expiration_date, messages_sent, last_engagement_at, agent_context
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING {_AGENT_COLUMNS}
                """,
                _uuid(agent.id),
                _uuid(agent.contact_id),
                agent.product_type,
                agent.status,
                agent.assigned_date,
                agent.expiration_date,
                agent.messages_sent,
                agent.last_engagement_at,
                agent.context,
            )
        return Agent(**_row_to_dict(row))

    async def expire_agents(self, now: datetime) -> list[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                WITH expired AS (
                    UPDATE product_agents
                    SET status = 'expired', updated_at = NOW()
                    WHERE status = 'active' AND expiration_date < $1
                    RETURNING id
                ), released AS (
                    UPDATE conversation_state
                    SET active_agent_id = NULL, agent_priority = 0, updated_at = NOW()
                    WHERE active_agent_id IN (SELECT id FROM expired)
                    RETURNING contact_id
                )
                SELECT id FROM expired
                """,
                now,
            )
        return [str(row["id"]) for row in rows]

    async def record_agent_send(self, agent_id: str, now: datetime) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE product_agents
                SET messages_sent = messages_sent + 1,
                    last_engagement_at = $2,
                    updated_at = NOW()
                WHERE id = $1
                """,
                _uuid(agent_id),
                now,
            )

    # ------------------------------------------------------------------
    # Conversation state
    # ------------------------------------------------------------------

    async def get_state(self, contact_id: str) -> Optional[ConversationState]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_STATE_COLUMNS} FROM conversation_state WHERE contact_id = $1",
                _uuid(contact_id),
            )
        return ConversationState(**_row_to_dict(row)) if row else None

    async def _ensure_state_row(
        self, conn: asyncpg.Connection, contact_id: str, engagement_at: Optional[datetime] = None
    ) -> None:
        await conn.execute(
            """
            INSERT INTO conversation_state (contact_id, last_engagement_at)
            VALUES ($1, $2)
            ON CONFLICT (contact_id) DO NOTHING
            """,
            _uuid(contact_id),
            engagement_at,
        )

    async def ensure_state(
        self, contact_id: str, engagement_at: Optional[datetime] = None
    ) -> ConversationState:
        async with self.pool.acquire() as conn:
            await self._ensure_state_row(conn, contact_id, engagement_at)
            row = await conn.fetchrow(
                f"SELECT {_STATE_COLUMNS} FROM conversation_state WHERE contact_id = $1",
                _uuid(contact_id),
            )
        return ConversationState(**_row_to_dict(row))

    async def arbitrate(
        self,
        contact_id: str,
        agent_id: str,
        priority: int,
        message_type: str,
        now: datetime,
    ) -> ArbitrationResult:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await self._ensure_state_row(conn, contact_id)
                row = await conn.fetchrow(
                    """
                    WITH prev AS (
                        SELECT contact_id, active_agent_id, agent_priority
                        FROM conversation_state
                        WHERE contact_id = $1
                        FOR UPDATE
                    ), decision AS (
                        SELECT contact_id,
                               active_agent_id AS previous_agent_id,
                               CASE
                                   WHEN active_agent_id IS NULL OR active_agent_id = $2::uuid
                                       THEN 'accepted'
                                   WHEN agent_priority <= $3 THEN 'preempted'
                                   ELSE 'deferred'
                               END AS outcome
                        FROM prev
                    )
                    UPDATE conversation_state cs
                    SET active_agent_id = CASE WHEN d.outcome = 'deferred'
                                               THEN cs.active_agent_id ELSE $2::uuid END,
                        agent_priority = CASE WHEN d.outcome = 'deferred'
                                              THEN cs.agent_priority ELSE $3 END,
                        agent_queue = CASE
                            WHEN d.outcome = 'deferred'
                                 AND NOT cs.agent_queue @> jsonb_build_array(jsonb_build_object(
                                     'agent_id', $2::uuid::text,
                                     'message_type', $4::text
                                 ))
                            THEN cs.agent_queue || jsonb_build_array(jsonb_build_object(
                                'agent_id', $2::uuid::text,
                                'message_type', $4::text,
                                'queued_at', $5::timestamptz
                            ))
                            ELSE cs.agent_queue END,
                        updated_at = NOW()
                    FROM decision d
                    WHERE cs.contact_id = d.contact_id
                    RETURNING d.outcome,
                              d.previous_agent_id,
                              cs.active_agent_id,
                              jsonb_array_length(cs.agent_queue) AS queue_length
                    """,
                    _uuid(contact_id),
                    _uuid(agent_id),
                    priority,
                    message_type,
                    now,
                )
        return ArbitrationResult(**_row_to_dict(row))

    async def list_states_with_queue(self) -> list[ConversationState]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_STATE_COLUMNS}
                FROM conversation_state
                WHERE jsonb_array_length(agent_queue) > 0
                """
            )
        return [ConversationState(**_row_to_dict(row)) for row in rows]

    async def promote_queue_head(
        self,
        contact_id: str,
        expected_active_agent_id: Optional[str],
        expected_head_agent_id: str,
        priority: int,
    ) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE conversation_state
                SET active_agent_id = (agent_queue->0->>'agent_id')::uuid,
                    agent_priority = $3,
                    agent_queue = agent_queue - 0,
                    updated_at = NOW()
                WHERE contact_id = $1
                  AND jsonb_array_length(agent_queue) > 0
                  AND active_agent_id IS NOT DISTINCT FROM $2::uuid
                  AND agent_queue->0->>'agent_id' = $4::uuid::text
                """,
                _uuid(contact_id),
                _uuid(expected_active_agent_id),
                priority,
                _uuid(expected_head_agent_id),
            )
        return result == "UPDATE 1"

    async def drop_queue_head(self, contact_id: str, expected_head_agent_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE conversation_state
                SET agent_queue = agent_queue - 0, updated_at = NOW()
                WHERE contact_id = $1
                  AND jsonb_array_length(agent_queue) > 0
                  AND agent_queue->0->>'agent_id' = $2::uuid::text
                """,
                _uuid(contact_id),
                _uuid(expected_head_agent_id),
            )
        return result == "UPDATE 1"

    async def acquire_send_lease(
        self,
        contact_id: str,
        token: str,
        now: datetime,
        throttle: ThrottleConfig,
        lease_seconds: int,
    ) -> bool:
        async with self.pool.acquire() as conn:
            await self._ensure_state_row(conn, contact_id)
            result = await conn.execute(
                """
                UPDATE conversation_state
                SET send_lease_token = $2,
                    send_lease_until = $3 + make_interval(secs => $4),
                    updated_at = NOW()
                WHERE contact_id = $1
                  AND (send_lease_until IS NULL OR send_lease_until <= $3)
                  AND (waiting_until IS NULL OR waiting_until <= $3)
                  AND messages_sent_today < $5
                  AND messages_sent_this_week < $6
                  AND (last_message_sent_at IS NULL
                       OR last_message_sent_at <= $3 - make_interval(secs => $7))
                  AND (NOT $8 OR (
                      (SELECT COUNT(*) FROM scheduled_messages sm
                       WHERE sm.contact_id = $1 AND sm.status = 'sent'
                         AND sm.sent_at > $3 - INTERVAL '24 hours') < $5
                      AND
                      (SELECT COUNT(*) FROM scheduled_messages sm
                       WHERE sm.contact_id = $1 AND sm.status = 'sent'
                         AND sm.sent_at > $3 - INTERVAL '7 days') < $6
                  ))
                """,
                _uuid(contact_id),
                _uuid(token),
                now,
                float(lease_seconds),
                throttle.max_messages_per_day,
                throttle.max_messages_per_week,
                float(throttle.min_hours_between_messages * 3600),
                throttle.enforce_rolling_windows,
            )
        return result == "UPDATE 1"

    async def complete_send_lease(self, contact_id: str, token: str, now: datetime) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE conversation_state
                SET messages_sent_today = messages_sent_today + 1,
                    messages_sent_this_week = messages_sent_this_week + 1,
                    last_message_sent_at = $3,
                    send_lease_token = NULL,
                    send_lease_until = NULL,
                    updated_at = NOW()
                WHERE contact_id = $1 AND send_lease_token = $2
                """,
                _uuid(contact_id),
                _uuid(token),
                now,
            )
        return result == "UPDATE 1"

    async def release_send_lease(self, contact_id: str, token: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE conversation_state
                SET send_lease_token = NULL, send_lease_until = NULL, updated_at = NOW()
                WHERE contact_id = $1 AND send_lease_token = $2
                """,
                _uuid(contact_id),
                _uuid(token),
            )
        return result == "UPDATE 1"

    async def reset_daily_counters(self) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE conversation_state SET messages_sent_today = 0, updated_at = NOW()"
            )
        return _affected(result)

    async def reset_weekly_counters(self) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE conversation_state SET messages_sent_this_week = 0, updated_at = NOW()"
            )
        return _affected(result)

    async def last_counter_reset(self, kind: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT MAX(period) FROM counter_resets WHERE kind = $1",
                kind,
            )

    async def record_counter_reset(self, kind: str, period: str, now: datetime) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                INSERT INTO counter_resets (kind, period, reset_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (kind, period) DO NOTHING
                """,
                kind,
                period,
                now,
            )
        return _affected(result) == 1

    async def reset_counters_for_period(
        self, kind: str, period: str, now: datetime
    ) -> Optional[int]:
        column = "messages_sent_today" if kind == "daily" else "messages_sent_this_week"
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.execute(
                    """
                    INSERT INTO counter_resets (kind, period, reset_at)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (kind, period) DO NOTHING
                    """,
                    kind,
                    period,
                    now,
                )
                if _affected(inserted) != 1:
                    return None
                result = await conn.execute(
                    f"UPDATE conversation_state SET {column} = 0, updated_at = NOW()"
                )
        return _affected(result)

    # ------------------------------------------------------------------
    # Scheduled messages
    # ------------------------------------------------------------------

    async def create_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO scheduled_messages (
                    contact_id, agent_id, message_type, channel, scheduled_for,
                    status, subject, body, retry_count, requeued_from, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, COALESCE($11, NOW()))
                RETURNING {_MESSAGE_COLUMNS}
                """,
                _uuid(message.contact_id),
                _uuid(message.agent_id),
                message.message_type,
                message.channel,
                message.scheduled_for,
                message.status,
                message.subject,
                message.body,
                message.retry_count,
                _uuid(message.requeued_from),
                message.created_at,
            )
        return ScheduledMessage(**_row_to_dict(row))

    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_MESSAGE_COLUMNS} FROM scheduled_messages WHERE id = $1",
                _uuid(message_id),
            )
        return ScheduledMessage(**_row_to_dict(row)) if row else None

    async def fetch_due_messages(
        self, now: datetime, limit: int, lease_seconds: int
    ) -> list[ScheduledMessage]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM scheduled_messages
                WHERE status = 'pending'
                  AND scheduled_for <= $1
                  AND (claim_token IS NULL
                       OR claimed_at <= $1 - make_interval(secs => $3))
                ORDER BY scheduled_for ASC
                LIMIT $2
                """,
                now,
                limit,
                float(lease_seconds),
            )
        return [ScheduledMessage(**_row_to_dict(row)) for row in rows]

    async def claim_message(
        self, message_id: str, token: str, now: datetime, lease_seconds: int
    ) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE scheduled_messages
                SET claim_token = $2, claimed_at = $3, updated_at = NOW()
                WHERE id = $1
                  AND status = 'pending'
                  AND (claim_token IS NULL
                       OR claimed_at <= $3 - make_interval(secs => $4))
                """,
                _uuid(message_id),
                _uuid(token),
                now,
                float(lease_seconds),
            )
        return result == "UPDATE 1"

    async def release_claim(self, message_id: str, token: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE scheduled_messages
                SET claim_token = NULL, claimed_at = NULL, updated_at = NOW()
                WHERE id = $1 AND claim_token = $2
                """,
                _uuid(message_id),
                _uuid(token),
            )
        return result == "UPDATE 1"

    async def commit_transition(self, message: ScheduledMessage, token: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE scheduled_messages
                SET status = $2,
                    retry_count = $3,
                    error_message = $4,
                    sent_at = $5,
                    claim_token = NULL,
                    updated_at = NOW()
                WHERE id = $1 AND status = 'pending' AND claim_token = $6
                """,
                _uuid(message.id),
                message.status,
                message.retry_count,
                message.error_message,
                message.sent_at,
                _uuid(token),
            )
        return result == "UPDATE 1"

    async def count_messages_since(
        self, contact_id: str, message_type: str, since: datetime
    ) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM scheduled_messages
                WHERE contact_id = $1 AND message_type = $2 AND created_at >= $3
                """,
                _uuid(contact_id),
                message_type,
                since,
            )

    # ------------------------------------------------------------------
    # Activity, conversation history, embeddings
    # ------------------------------------------------------------------

    async def count_activities_since(
        self, contact_id: str, activity_type: str, since: datetime
    ) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM contact_activities
                WHERE contact_id = $1 AND activity_type = $2 AND created_at >= $3
                """,
                _uuid(contact_id),
                activity_type,
                since,
            )

    async def last_activity_at(self, contact_id: str) -> Optional[datetime]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT MAX(created_at) FROM contact_activities WHERE contact_id = $1",
                _uuid(contact_id),
            )

    async def append_activity(self, record: ActivityRecord) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO contact_activities (contact_id, activity_type, description, metadata, created_at)
                VALUES ($1, $2, $3, $4, COALESCE($5, NOW()))
                """,
                _uuid(record.contact_id),
                record.activity_type,
                record.description,
                record.metadata,
                record.created_at,
            )

    async def append_conversation_message(self, entry: ConversationLogEntry) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO conversation_messages (contact_id, agent_id, direction, channel, body, created_at)
                VALUES ($1, $2, $3, $4, $5, COALESCE($6, NOW()))
                """,
                _uuid(entry.contact_id),
                _uuid(entry.agent_id),
                entry.direction,
                entry.channel,
                entry.body,
                entry.created_at,
            )

    async def recent_conversation(self, contact_id: str, limit: int) -> list[ConversationLogEntry]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT contact_id, agent_id, direction, channel, body, created_at
                FROM conversation_messages
                WHERE contact_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                _uuid(contact_id),
                limit,
            )
        return [ConversationLogEntry(**_row_to_dict(row)) for row in rows]

    async def save_embedding(self, message_id: str, embedding: list[float]) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO message_embeddings (message_id, embedding)
                VALUES ($1, $2)
                ON CONFLICT (message_id) DO UPDATE SET embedding = EXCLUDED.embedding
                """,
                _uuid(message_id),
                embedding,
            )

    # ------------------------------------------------------------------
    # Trigger firing ledger
    # ------------------------------------------------------------------

    async def has_trigger_fired(self, agent_id: str, kind: str, dedupe_key: str) -> bool:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM trigger_firings
                    WHERE agent_id = $1 AND trigger_kind = $2 AND dedupe_key = $3
                )
                """,
                _uuid(agent_id),
                kind,
                dedupe_key,
            )

    async def record_trigger_firing(
        self, agent_id: str, kind: str, dedupe_key: str, now: datetime
    ) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                INSERT INTO trigger_firings (agent_id, trigger_kind, dedupe_key, fired_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT DO NOTHING
                """,
                _uuid(agent_id),
                kind,
                dedupe_key,
                now,
            )
        return _affected(result) == 1

    async def close(self) -> None:
        """Close the shared pool (see database.pool)."""
        await close_pool()
