"""Per-contact throttling: the frequency gate and counter maintenance."""

from outreach_engine.throttle.frequency_gate import FrequencyGate, may_message, rejection_reason

__all__ = [
    "FrequencyGate",
    "may_message",
    "rejection_reason",
]
