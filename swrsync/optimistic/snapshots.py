"""
Transaction snapshots for optimistic mutations.

Every optimistic write is preceded by a snapshot of the state it is about
to change. The arena hands back an opaque TransactionHandle; the snapshot
can be restored or discarded through that handle exactly once.
"""
import copy
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

from swrsync.errors import SnapshotConsumedError, SnapshotMissingError

logger = logging.getLogger("optimistic.snapshots")


def generate_txn_id() -> str:
    """Fresh transaction id, e.g. txn_1718000000000_3f2a9c1b0."""
    return f"txn_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class TransactionHandle:
    """
    Opaque, single-use reference to a saved snapshot.

    Only the arena that issued a handle can resolve it. Once committed or
    rolled back the handle is spent.
    """

    __slots__ = ("txn_id", "_arena_id", "_slot", "_consumed")

    def __init__(self, txn_id: str, arena_id: int, slot: int):
        self.txn_id = txn_id
        self._arena_id = arena_id
        self._slot = slot
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    def __repr__(self) -> str:
        status = "consumed" if self._consumed else "open"
        return f"<TransactionHandle {self.txn_id} {status}>"


@dataclass(frozen=True)
class Snapshot:
    """Deep copy of a state subtree taken before an optimistic write."""
    txn_id: str
    slice_name: str
    path: Tuple[str, ...]
    prior_state: Any
    created_at: float = field(default_factory=time.time)


class SnapshotArena:
    """
    Snapshot table partitioned by transaction.

    Slots are integers issued from a counter and never reused, so
    concurrent transactions cannot collide or see each other's state.
    """

    _arena_ids = itertools.count(1)

    def __init__(self):
        self._id = next(self._arena_ids)
        self._slots: Dict[int, Snapshot] = {}
        self._next_slot = itertools.count(1)

    def save(
        self,
        slice_name: str,
        path: Sequence[str],
        state: Any,
        txn_id: Optional[str] = None,
    ) -> TransactionHandle:
        """
        Snapshot state for a new transaction.

        Args:
            slice_name: Slice the transaction will modify
            path: Location of state inside the slice
            state: Current value; deep-copied
            txn_id: Transaction id, generated when omitted

        Returns:
            Handle to pass to restore() or discard()
        """
        txn_id = txn_id or generate_txn_id()
        slot = next(self._next_slot)
        self._slots[slot] = Snapshot(
            txn_id=txn_id,
            slice_name=slice_name,
            path=tuple(path),
            prior_state=copy.deepcopy(state),
        )
        logger.debug(f"Saved snapshot for {txn_id} ({slice_name}/{'.'.join(path)})")
        return TransactionHandle(txn_id, self._id, slot)

    def peek(self, handle: TransactionHandle) -> Snapshot:
        """Read a snapshot without consuming its handle."""
        if handle.consumed:
            raise SnapshotConsumedError(f"Transaction {handle.txn_id} already finished")
        return self._lookup(handle)

    def restore(self, handle: TransactionHandle) -> Snapshot:
        """
        Consume the handle and hand back its snapshot for rollback.

        The slot is freed; the returned prior_state is the caller's to
        write back.
        """
        snapshot = self._take(handle)
        logger.debug(f"Restoring snapshot for {handle.txn_id}")
        return snapshot

    def discard(self, handle: TransactionHandle) -> None:
        """Consume the handle and drop its snapshot after a commit."""
        self._take(handle)
        logger.debug(f"Discarded snapshot for {handle.txn_id}")

    def _take(self, handle: TransactionHandle) -> Snapshot:
        if handle.consumed:
            raise SnapshotConsumedError(f"Transaction {handle.txn_id} already finished")
        snapshot = self._lookup(handle)
        handle._consumed = True
        del self._slots[handle._slot]
        return snapshot

    def _lookup(self, handle: TransactionHandle) -> Snapshot:
        snapshot = None
        if handle._arena_id == self._id:
            snapshot = self._slots.get(handle._slot)
        if snapshot is None:
            logger.error(f"No snapshot found for transaction {handle.txn_id}")
            raise SnapshotMissingError(f"No snapshot for transaction {handle.txn_id}")
        return snapshot

    def clear(self) -> int:
        """Drop every pending snapshot. Returns how many were dropped."""
        count = len(self._slots)
        self._slots.clear()
        return count

    def __contains__(self, handle: TransactionHandle) -> bool:
        return handle._arena_id == self._id and handle._slot in self._slots

    def __len__(self) -> int:
        return len(self._slots)
