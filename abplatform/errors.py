"""
Exceptions raised by the assignment engine and its services.

Nothing here is retried internally; callers decide. Only StoreError is
worth retrying (with backoff).
"""


class PlatformError(Exception):
    """Base class for every error this package raises on purpose."""


class NotFoundError(PlatformError):
    """Referenced experiment, flag or assignment does not exist."""


class InvalidStateError(PlatformError):
    """Operation is not legal in the entity's current lifecycle state."""


class ConflictError(PlatformError):
    """Entity already exists (duplicate name, second manual assignment)."""


class ValidationError(PlatformError):
    """Input was rejected before anything was written."""


class StoreError(PlatformError):
    """Persistence layer failed (I/O, timeout, lost connection)."""
