"""
Engine configuration.

Every operational knob (sweep intervals, throttle caps, trigger offsets,
priority table, gateway URLs) lives here. Values come from defaults, an
optional JSON file, then environment variables (``.env`` is loaded first).

Usage:
    from outreach_engine.core.config import load_config

    config = load_config()                      # defaults + env
    config = load_config(Path("engine.json"))   # defaults + file + env
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from outreach_engine.core.models import Channel, MessageType, MilestoneEvent
from outreach_engine.errors import ConfigurationError

# Priority rank per agent type. Higher wins; ties favor the incumbent.
DEFAULT_AGENT_PRIORITIES: dict[str, int] = {
    "customer_service": 10,
    "sales_agent": 5,
    "webinar": 3,
    "textbook": 3,
    "flashcards": 3,
    "algo_monthly": 3,
    "ccta": 3,
    "influencer_outreach": 3,
    "lead_nurture": 1,
}

# Days an agent stays active after assignment.
DEFAULT_EXPIRATION_DAYS: dict[str, int] = {
    "customer_service": 36500,  # effectively indefinite
    "sales_agent": 90,
    "textbook": 90,
    "flashcards": 60,
    "webinar": 30,
    "algo_monthly": 90,
    "ccta": 90,
    "lead_nurture": 90,
    "influencer_outreach": 90,
}


class ThrottleConfig(BaseModel):
    """Per-contact frequency caps."""
    max_messages_per_day: int = 2
    max_messages_per_week: int = 5
    min_hours_between_messages: float = 12.0
    enforce_rolling_windows: bool = True  # also count sent messages in trailing 24h/7d at dispatch

    @field_validator("max_messages_per_day", "max_messages_per_week")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("message caps must be at least 1")
        return v


class ChurnRule(BaseModel):
    """Product-specific churn rule: no activity of a kind within a window."""
    activity_type: str = "login"
    inactive_days: int = 7
    min_days_since_assigned: int = 7


class ScheduledOutreach(BaseModel):
    """A message sent on a fixed day of an agent type's campaign."""
    day: int
    type: str
    goal: MessageType = MessageType.CHECK_IN
    channel: Channel = Channel.SMS

    class Config:
        use_enum_values = True


class MilestoneTrigger(BaseModel):
    """A message sent when the contact's behaviour reaches a milestone."""
    event: MilestoneEvent
    type: str
    goal: MessageType = MessageType.CHECK_IN
    channel: Channel = Channel.SMS
    threshold: Optional[int] = None  # lesson_completed: 3, high_usage: 5
    days: Optional[int] = None       # no_activity / no_login: 7, no_engagement: 5

    class Config:
        use_enum_values = True


class CampaignConfig(BaseModel):
    """
    Campaign for one agent type. When present it replaces the default rules
    for agents of that type.
    """
    duration_days: int = 90
    outreach_schedule: list[ScheduledOutreach] = Field(default_factory=list)
    milestone_triggers: list[MilestoneTrigger] = Field(default_factory=list)


class TriggerConfig(BaseModel):
    """Trigger rule parameters."""
    no_engagement_days: int = 7
    day_1_offset_days: int = 1
    week_1_offset_days: int = 7
    expiration_warning_days: int = 5
    upsell_min_engagement_score: int = 60
    upsell_min_days_since_assigned: int = 7
    upsell_lookback_days: int = 7
    trigger_catch_up_days: int = 0  # 0 = exact day equality
    churn_rules: dict[str, ChurnRule] = Field(
        default_factory=lambda: {"algo_monthly": ChurnRule()}
    )
    recent_conversation_lines: int = 3
    campaigns: dict[str, CampaignConfig] = Field(default_factory=dict)  # keyed by agent type


class DispatchConfig(BaseModel):
    """Dispatcher parameters."""
    batch_size: int = 100
    claim_lease_seconds: int = 600  # a claim older than this may be re-claimed
    send_lease_seconds: int = 120   # per-contact send lease held across the gateway call
    max_retries: int = 3            # bound for operator-driven requeue of failed messages


class SweepConfig(BaseModel):
    """Polling loop parameters for both sweeps."""
    trigger_interval_seconds: int = 900
    dispatch_interval_seconds: int = 60
    max_workers: int = 10
    max_backoff_seconds: int = 300
    timezone: str = "UTC"  # local clock for midnight / week-start resets
    week_start_day: int = 0  # Monday, as datetime.weekday()
    queue_promotion_enabled: bool = True
    queue_promotion_idle_hours: float = 48.0

    @field_validator("week_start_day")
    @classmethod
    def validate_weekday(cls, v: int) -> int:
        if not 0 <= v <= 6:
            raise ValueError("week_start_day must be between 0 (Monday) and 6 (Sunday)")
        return v


class IntegrationConfig(BaseModel):
    """External collaborators (composer, gateways, embeddings)."""
    composer_url: Optional[str] = None
    sms_gateway_url: Optional[str] = None
    email_gateway_url: Optional[str] = None
    embeddings_url: Optional[str] = None
    api_key: Optional[str] = None
    http_timeout_seconds: float = 30.0
    default_email_subject: str = "Message from our team"
    side_effect_workers: int = 2


class EngineConfig(BaseModel):
    """Top-level configuration for the outreach engine."""
    database_url: Optional[str] = None
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    triggers: TriggerConfig = Field(default_factory=TriggerConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    integrations: IntegrationConfig = Field(default_factory=IntegrationConfig)
    agent_priorities: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_AGENT_PRIORITIES)
    )
    default_priority: int = 1
    expiration_days: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_EXPIRATION_DAYS)
    )
    default_expiration_days: int = 90

    def priority_for(self, product_type: str) -> int:
        return self.agent_priorities.get(product_type, self.default_priority)

    def expiration_days_for(self, product_type: str) -> int:
        return self.expiration_days.get(product_type, self.default_expiration_days)


# env var -> (section, field, type); section None means top level
_ENV_OVERRIDES: dict[str, tuple[Optional[str], str, type]] = {
    "DATABASE_URL": (None, "database_url", str),
    "TRIGGER_INTERVAL_SECONDS": ("sweep", "trigger_interval_seconds", int),
    "DISPATCH_INTERVAL_SECONDS": ("sweep", "dispatch_interval_seconds", int),
    "SWEEP_MAX_WORKERS": ("sweep", "max_workers", int),
    "ENGINE_TIMEZONE": ("sweep", "timezone", str),
    "WEEK_START_DAY": ("sweep", "week_start_day", int),
    "MAX_MESSAGES_PER_DAY": ("throttle", "max_messages_per_day", int),
    "MAX_MESSAGES_PER_WEEK": ("throttle", "max_messages_per_week", int),
    "MIN_HOURS_BETWEEN_MESSAGES": ("throttle", "min_hours_between_messages", float),
    "DISPATCH_BATCH_SIZE": ("dispatch", "batch_size", int),
    "COMPOSER_URL": ("integrations", "composer_url", str),
    "SMS_GATEWAY_URL": ("integrations", "sms_gateway_url", str),
    "EMAIL_GATEWAY_URL": ("integrations", "email_gateway_url", str),
    "EMBEDDINGS_URL": ("integrations", "embeddings_url", str),
    "GATEWAY_API_KEY": ("integrations", "api_key", str),
    "HTTP_TIMEOUT_SECONDS": ("integrations", "http_timeout_seconds", float),
}


def _apply_env(data: dict, environ: dict[str, str]) -> dict:
    for env_name, (section, field, cast) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = cast(raw.strip())
        except ValueError as e:
            raise ConfigurationError(f"{env_name}={raw!r} is not a valid {cast.__name__}") from e
        if section is None:
            data[field] = value
        else:
            data.setdefault(section, {})[field] = value
    return data


def load_config(path: Optional[Path] = None, environ: Optional[dict[str, str]] = None) -> EngineConfig:
    """
    Build an EngineConfig from defaults, an optional JSON file and the environment.

    Args:
        path: Optional JSON file with any subset of EngineConfig fields.
        environ: Environment mapping; defaults to os.environ after loading .env.

    Returns:
        Validated EngineConfig.

    Raises:
        ConfigurationError: If the file is unreadable or any value is invalid.
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    data: dict = {}
    if path is not None:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

    data = _apply_env(data, environ)
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
