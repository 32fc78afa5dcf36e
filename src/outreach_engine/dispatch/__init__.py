"""Delivery of scheduled messages."""

from outreach_engine.dispatch.dispatcher import Dispatcher
from outreach_engine.dispatch.side_effects import SideEffectQueue
from outreach_engine.dispatch.state_machine import apply_transition

__all__ = [
    "Dispatcher",
    "SideEffectQueue",
    "apply_transition",
]
