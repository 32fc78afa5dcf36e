"""Trigger rules, campaigns and the periodic trigger sweep."""

from outreach_engine.triggers.campaign import evaluate_campaign
from outreach_engine.triggers.evaluator import TriggerEvaluator
from outreach_engine.triggers.rules import evaluate_rules

__all__ = [
    "TriggerEvaluator",
    "evaluate_campaign",
    "evaluate_rules",
]
