"""
Exception hierarchy for LDAP Lifecycle.

Directory and persistence failures propagate to the caller of an operation.
Validation failures are raised before any I/O and converted into a failed
OperationResult by the service layer. PartialItemError only ever travels
as far as the batch loop that processes the offending item.
"""


class LifecycleError(Exception):
    """Base exception for all LDAP Lifecycle errors."""
    pass


class DirectoryError(LifecycleError):
    """Base exception for directory connection, bind and search failures."""
    pass


class DirectoryConnectionError(DirectoryError):
    """Raised when the service account cannot connect or bind."""
    pass


class DirectoryAuthError(DirectoryError):
    """Raised when the directory rejects a set of credentials."""
    pass


class DirectoryQueryError(DirectoryError):
    """Raised when a search, add or modify request fails."""
    pass


class DirectoryTimeoutError(DirectoryQueryError):
    """Raised when a search does not complete within its time limit."""
    pass


class ValidationError(LifecycleError):
    """Raised when input is rejected before any directory call."""
    pass


class PersistenceError(LifecycleError):
    """Raised when a database transaction cannot be committed."""
    pass


class PartialItemError(LifecycleError):
    """Raised when a single entry inside a batch cannot be processed."""

    def __init__(self, item: str, reason: str):
        self.item = item
        self.reason = reason
        super().__init__(f"Skipped {item}: {reason}")
