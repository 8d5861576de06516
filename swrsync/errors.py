"""
Error types raised or recorded by the sync layer.

Most failures never leave the layer that started the async operation: they
are stored on cache entries or reported through a notifier. Only misuse of
transaction snapshots raises to the caller.
"""
from typing import Optional


class SWRSyncError(Exception):
    """Base class for all swrsync errors."""


class ChannelError(SWRSyncError):
    """The push channel failed to connect or dropped."""


class ApiError(SWRSyncError):
    """A REST call returned a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MutationError(SWRSyncError):
    """The network half of an optimistic mutation failed."""

    def __init__(self, txn_id: str, cause: BaseException):
        super().__init__(f"Mutation {txn_id} failed: {cause}")
        self.txn_id = txn_id
        self.cause = cause


class SnapshotError(SWRSyncError):
    """A transaction snapshot was used incorrectly."""


class SnapshotMissingError(SnapshotError):
    """No snapshot exists for the transaction being rolled back."""


class SnapshotConsumedError(SnapshotError):
    """The transaction handle was already committed or rolled back."""
