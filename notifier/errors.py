"""
Exception types raised by the notifier package.

The lifecycle service turns these into OperationResult outcomes; they only
escape to callers that use the registry, stores or senders directly.
"""


class NotifierError(Exception):
    """Base class for notifier errors."""
    pass


class InvalidTime(NotifierError, ValueError):
    """Raised when an hour/minute pair or timezone is outside its domain."""
    pass


class JobNotFound(NotifierError, LookupError):
    """Raised when a job id has no registered schedule handle."""
    pass


class DurableStoreUnavailable(NotifierError):
    """Raised when the durable job store or task store cannot be reached."""
    pass


class SendFailed(NotifierError):
    """Raised when a notification could not be dispatched."""
    pass
