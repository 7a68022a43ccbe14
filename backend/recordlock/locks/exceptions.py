"""Errors raised by the locking core.

Conflicts are recoverable and meant to be shown to the user. Store failures
are hard failures. Notification and partition failures are logged where they
happen and never reach the caller.
"""

from __future__ import annotations

from datetime import datetime


class LockingError(Exception):
    """Base exception for the locking core."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class LockConflict(LockingError):
    """Another actor holds a live lock on the record."""

    def __init__(self, resource_type: str, resource_id: str, owner_id: str | None = None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.owner_id = owner_id
        super().__init__(lock_conflict_message(resource_id))


class VersionConflict(LockingError):
    """The record changed after the client loaded it."""

    def __init__(self, expected: datetime | None, current: datetime | None, message: str | None = None):
        self.expected = expected
        self.current = current
        super().__init__(
            message or VERSION_CONFLICT_MESSAGE,
            f"expected {expected.isoformat() if expected else 'nothing'}, "
            f"found {current.isoformat() if current else 'nothing'}",
        )


class StoreUnavailable(LockingError):
    """The lock store could not be read or written."""

    def __init__(self, operation: str, original_error: Exception | None = None):
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"lock store unavailable during {operation}", str(original_error) if original_error else None)


class NotificationFailure(LockingError):
    """A lock event could not be delivered."""

    def __init__(self, channel: str, original_error: Exception | None = None):
        self.channel = channel
        self.original_error = original_error
        super().__init__(f"could not publish to {channel}", str(original_error) if original_error else None)


class PartitionResolutionFailure(LockingError):
    """A sweep partition (tenant) could not be resolved to a domain or store."""

    def __init__(self, partition: str, reason: str):
        self.partition = partition
        self.reason = reason
        super().__init__(f"cannot resolve partition {partition}", reason)


VERSION_CONFLICT_MESSAGE = "This record has been changed by someone else. Please reload the page."
LOCKED_MESSAGE = "This record is currently locked."


def lock_conflict_message(resource_id: str) -> str:
    return f"Record #{resource_id} is already locked by another user."
