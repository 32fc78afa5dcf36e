"""
Outreach Engine - multi-agent message scheduling and delivery for a CRM.

Many product agents may want to message the same contact. This package
periodically evaluates triggers for every active agent, arbitrates which
agent owns a contact, throttles how often a contact is messaged, and
dispatches queued messages through SMS/email gateways with failure
accounting.
"""

__version__ = "1.0.0"
