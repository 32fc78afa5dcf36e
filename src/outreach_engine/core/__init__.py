"""Core models and configuration."""

from outreach_engine.core.config import EngineConfig, load_config
from outreach_engine.core.models import (
    Agent,
    AgentStatus,
    Channel,
    Contact,
    ConversationState,
    MessageStatus,
    MessageType,
    ScheduledMessage,
    TriggerEvent,
    TriggerKind,
)

__all__ = [
    "EngineConfig",
    "load_config",
    "Agent",
    "AgentStatus",
    "Channel",
    "Contact",
    "ConversationState",
    "MessageStatus",
    "MessageType",
    "ScheduledMessage",
    "TriggerEvent",
    "TriggerKind",
]
