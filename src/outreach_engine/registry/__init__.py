"""Agent assignment."""

from outreach_engine.registry.agents import AgentRegistry, AssignmentResult

__all__ = [
    "AgentRegistry",
    "AssignmentResult",
]
