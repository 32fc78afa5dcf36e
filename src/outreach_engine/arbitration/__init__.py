"""Agent priority arbitration."""

from outreach_engine.arbitration.arbiter import AgentPriorityArbiter, apply_decision, decide

__all__ = [
    "AgentPriorityArbiter",
    "apply_decision",
    "decide",
]
