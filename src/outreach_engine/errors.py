"""Exception hierarchy for the outreach engine."""


class EngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(EngineError):
    """Raised when engine configuration is missing or invalid."""


class ComposerError(EngineError):
    """Raised when the composer cannot produce message content."""


class ChannelSendError(EngineError):
    """Raised when a channel gateway rejects or fails a send."""


class InvalidTransitionError(EngineError):
    """Raised on an attempt to move a ScheduledMessage out of a terminal state."""
