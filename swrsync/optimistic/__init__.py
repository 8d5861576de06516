"""
Optimistic mutations: apply locally, confirm remotely, roll back on failure.
"""
from .state import SliceStore
from .snapshots import Snapshot, SnapshotArena, TransactionHandle, generate_txn_id
from .manager import MutationMessages, MutationResult, OptimisticMutationManager

__all__ = [
    # State
    "SliceStore",
    # Snapshots
    "Snapshot",
    "SnapshotArena",
    "TransactionHandle",
    "generate_txn_id",
    # Manager
    "MutationMessages",
    "MutationResult",
    "OptimisticMutationManager",
]
