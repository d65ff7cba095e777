"""Exception hierarchy for the synchronization engine.

Every error carries a ``category`` used as the suffix of result counters and
history rows, and a ``retryable`` flag that decides whether a failed queue
item is rescheduled.
"""


class SyncError(Exception):
    """Base exception class for sync-specific errors."""

    default_message = "An unexpected synchronization error occurred"
    default_category = "error"
    default_retryable = True

    def __init__(self, message=None, details=None, category=None, retryable=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details
        self.category = category or self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable

class RemoteStoreError(SyncError):
    """Transient failure talking to the remote document store (timeout, 5xx)."""

    default_message = "Remote store error"
    default_category = "remote_error"

    def __init__(self, message=None, details=None, status_code=None, **kwargs):
        super().__init__(message=message, details=details, **kwargs)
        self.status_code = status_code

class RemoteStoreRejected(RemoteStoreError):
    """The remote store refused the request; repeating it will not help."""

    default_message = "Remote store rejected the request"
    default_category = "rejected"
    default_retryable = False

class RemoteUnavailableError(RemoteStoreError):
    """The remote store is unreachable for the whole cycle (circuit open)."""

    default_message = "Remote store unavailable"
    default_category = "unavailable"

class MappingError(SyncError):
    """A document or entity could not be translated between representations."""

    default_message = "Invalid data"
    default_category = "invalid_data"
    default_retryable = False

class DanglingReferenceError(MappingError):
    """A remote document references a local row that does not exist."""

    default_message = "Referenced entity does not exist locally"

class NotCreatableError(SyncError):
    """The entity type cannot be created from remote data."""

    default_message = "Entity not found locally and cannot be created from remote data"
    default_category = "not_found"
    default_retryable = False

class QueueError(SyncError):
    """Invalid operation on the sync queue."""

    default_message = "Invalid sync queue operation"
    default_category = "queue"
    default_retryable = False
