"""Error taxonomy shared by the store adapters and the services."""


class ChatSyncError(Exception):
    """Base class for all synchronization errors."""


class InvalidArgument(ChatSyncError, ValueError):
    """Raised for malformed input such as an empty conversation id."""


class NotFound(ChatSyncError):
    """Raised when a document that must exist is missing."""


class AlreadyExists(ChatSyncError):
    """Raised when a conditional create finds the document already present."""


class PermissionDenied(ChatSyncError):
    """Raised when the remote store rejects the caller's credentials."""


class RemoteFailure(ChatSyncError):
    """Raised for network or store errors.

    ``transient`` failures (timeouts, unavailable backend) are safe to retry.
    """

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class Conflict(ChatSyncError):
    """Raised when a conditional update finds the document changed since it was read."""
