"""
Pydantic models for the outreach engine.

Covers the persisted entities (Contact, Agent, ConversationState,
ScheduledMessage), the ephemeral TriggerEvent passed from the evaluator to the
scheduler, and the small value objects exchanged with external collaborators.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AgentStatus(str, Enum):
    """Lifecycle status of a product agent."""
    ACTIVE = "active"
    EXPIRED = "expired"


class MessageStatus(str, Enum):
    """Status of a scheduled message. PENDING moves once to SENT or FAILED."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class MessageType(str, Enum):
    """Purpose of an outbound message."""
    INTRODUCTION = "introduction"
    CHECK_IN = "check_in"
    UPSELL = "upsell"
    RETENTION = "retention"
    EXPIRATION_NOTICE = "expiration_notice"
    ONBOARDING = "onboarding"


class Channel(str, Enum):
    """Outbound delivery channel."""
    SMS = "sms"
    EMAIL = "email"


class TriggerKind(str, Enum):
    """Trigger rules evaluated for every active agent."""
    NO_ENGAGEMENT_7_DAYS = "no_engagement_7_days"
    DAY_1_CHECKIN = "day_1_checkin"
    WEEK_1_PROGRESS = "week_1_progress"
    EXPIRATION_WARNING = "expiration_warning"
    HIGH_ENGAGEMENT_UPSELL = "high_engagement_upsell"
    PRODUCT_CHURN_RISK = "product_churn_risk"
    CAMPAIGN_OUTREACH = "campaign_outreach"
    CAMPAIGN_MILESTONE = "campaign_milestone"


class MilestoneEvent(str, Enum):
    """Contact behaviours a campaign milestone can react to."""
    LESSON_COMPLETED = "lesson_completed"
    NO_ACTIVITY = "no_activity"
    NO_LOGIN = "no_login"
    HIGH_USAGE = "high_usage"
    NO_ENGAGEMENT = "no_engagement"


class ArbitrationOutcome(str, Enum):
    """Result of asking the arbiter for the right to message a contact."""
    ACCEPTED = "accepted"    # slot was free or already ours
    PREEMPTED = "preempted"  # took the slot from a lower-or-equal agent
    DEFERRED = "deferred"    # queued behind a strictly higher agent


class Contact(BaseModel):
    """The subset of a CRM contact the engine reads."""
    id: str
    full_name: str = ""
    phone_number: Optional[str] = None
    email: Optional[str] = None
    engagement_score: int = 0
    total_spent: float = 0.0


class Agent(BaseModel):
    """One assignment of a product/purpose to a contact."""
    id: str
    contact_id: str
    product_type: str
    status: AgentStatus = AgentStatus.ACTIVE
    assigned_date: datetime
    expiration_date: datetime
    messages_sent: int = 0
    last_engagement_at: Optional[datetime] = None
    context: dict[str, Any] = Field(default_factory=dict)

    class Config:
        use_enum_values = True


class QueuedRequest(BaseModel):
    """A deferred request to message a contact, waiting behind a higher agent."""
    agent_id: str
    message_type: str
    queued_at: datetime


class ConversationState(BaseModel):
    """
    Per-contact throttle and ownership ledger. Exactly one row per contact.

    The send lease fields are held by a dispatcher between the dispatch-time
    gate check and the counter increment so sends to one contact serialize
    across processes.
    """
    contact_id: str
    active_agent_id: Optional[str] = None
    agent_priority: int = 0
    agent_queue: list[QueuedRequest] = Field(default_factory=list)
    messages_sent_today: int = 0
    messages_sent_this_week: int = 0
    last_message_sent_at: Optional[datetime] = None
    last_engagement_at: Optional[datetime] = None
    waiting_until: Optional[datetime] = None
    send_lease_token: Optional[str] = None
    send_lease_until: Optional[datetime] = None


class ScheduledMessage(BaseModel):
    """One queued, sent or failed delivery attempt."""
    id: Optional[str] = None  # UUID, generated by the store
    contact_id: str
    agent_id: Optional[str] = None
    message_type: MessageType
    channel: Channel = Channel.SMS
    scheduled_for: datetime
    status: MessageStatus = MessageStatus.PENDING
    subject: Optional[str] = None  # email only
    body: str
    retry_count: int = 0
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    requeued_from: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        use_enum_values = True

    @property
    def is_terminal(self) -> bool:
        return self.status != MessageStatus.PENDING


class TriggerEvent(BaseModel):
    """
    Output of one trigger rule for one agent/contact pair. Never persisted.

    dedupe_key identifies the trigger window (e.g. the assignment day number)
    so a fired trigger is scheduled at most once per window.
    """
    kind: TriggerKind
    message_type: MessageType
    context: dict[str, Any] = Field(default_factory=dict)
    channel: Channel = Channel.SMS
    dedupe_key: str = ""

    class Config:
        use_enum_values = True


class ComposedMessage(BaseModel):
    """Composer output."""
    subject: Optional[str] = None
    body: str


class SendResult(BaseModel):
    """Channel sender outcome for a single attempt."""
    success: bool
    error: Optional[str] = None
    provider_message_id: Optional[str] = None


class ArbitrationResult(BaseModel):
    """What the arbiter decided and the contact's ownership afterwards."""
    outcome: ArbitrationOutcome
    active_agent_id: Optional[str] = None
    previous_agent_id: Optional[str] = None
    queue_length: int = 0

    class Config:
        use_enum_values = True

    @property
    def accepted(self) -> bool:
        return self.outcome != ArbitrationOutcome.DEFERRED


class ActivityRecord(BaseModel):
    """Append-only audit entry for a contact."""
    contact_id: str
    activity_type: str
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ConversationLogEntry(BaseModel):
    """A line in the customer-facing conversation history."""
    contact_id: str
    agent_id: Optional[str] = None
    direction: str = "outbound"
    channel: Channel = Channel.SMS
    body: str
    created_at: Optional[datetime] = None

    class Config:
        use_enum_values = True
