"""External collaborators: composer, channel gateways, embeddings."""

from outreach_engine.integrations.channels import ConsoleChannelSender, HttpChannelSender
from outreach_engine.integrations.composer import HttpComposer
from outreach_engine.integrations.embeddings import HttpEmbedder

__all__ = [
    "ConsoleChannelSender",
    "HttpChannelSender",
    "HttpComposer",
    "HttpEmbedder",
]
