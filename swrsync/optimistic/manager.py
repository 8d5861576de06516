"""
Optimistic mutations with guaranteed rollback.

Every mutation runs the same sequence:

    1. generate a transaction id
    2. snapshot the affected state
    3. show a loading notification keyed by the transaction
    4. apply the local change
    5. run the network call
    6. on success: notify, discard the snapshot, optionally reconcile
    7. on failure: notify, restore the snapshot (which discards it)

Network failures, validation failures and conflicts all roll back the same
way; callers decide whether to retry.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

from swrsync.errors import MutationError
from swrsync.notifications import LoggingNotifier, Notifier

from .snapshots import SnapshotArena, TransactionHandle, generate_txn_id
from .state import SliceStore

logger = logging.getLogger("optimistic.manager")


@dataclass(frozen=True)
class MutationMessages:
    """Notification texts; `error` may contain an {error} placeholder."""
    loading: str = "Saving..."
    success: str = "Saved successfully"
    error: str = "{error}"

    def format_error(self, error: BaseException) -> str:
        detail = str(error) or "Operation failed"
        return self.error.format(error=detail)


@dataclass
class MutationResult:
    """Outcome of OptimisticMutationManager.run()."""
    txn_id: str
    ok: bool
    value: Any = None
    error: Optional[MutationError] = None
    rolled_back: bool = False
    reconciled: bool = False


class OptimisticMutationManager:
    """
    Applies local state changes before the server confirms them.

    Usage:
        manager = OptimisticMutationManager(state, notifier)
        result = await manager.run(
            "principal",
            ["students", "list"],
            apply=lambda students: [s for s in students if s["id"] != 7],
            commit=lambda: api.delete_student(7),
            reconcile=lambda: api.list_students(),
            messages=MutationMessages("Deleting student...", "Student deleted successfully"),
        )
    """

    def __init__(
        self,
        state: SliceStore,
        notifier: Optional[Notifier] = None,
        arena: Optional[SnapshotArena] = None,
    ):
        self._state = state
        self._notifier = notifier or LoggingNotifier()
        self._arena = arena or SnapshotArena()

    @property
    def state(self) -> SliceStore:
        return self._state

    @property
    def pending(self) -> int:
        """Transactions that have not committed or rolled back yet."""
        return len(self._arena)

    async def run(
        self,
        slice_name: str,
        path: Sequence[str],
        apply: Callable[[Any], Any],
        commit: Callable[[], Awaitable[Any]],
        reconcile: Optional[Callable[[], Awaitable[Any]]] = None,
        messages: Optional[MutationMessages] = None,
    ) -> MutationResult:
        """
        Run one optimistic mutation.

        Args:
            slice_name: State slice to modify
            path: Location of the affected subtree inside the slice
            apply: Pure function from the current subtree to the optimistic one
            commit: Zero-argument coroutine function doing the network call
            reconcile: Optional coroutine function run after a successful
                commit; a non-None result replaces the subtree with the
                server's authoritative value
            messages: Notification texts

        Returns:
            MutationResult; failures are reported in it, not raised
        """
        messages = messages or MutationMessages()
        txn_id = generate_txn_id()
        handle = self._arena.save(slice_name, path, self._state.get_in(slice_name, path), txn_id=txn_id)
        self._notifier.loading(messages.loading, key=txn_id)

        try:
            self._state.apply_in(slice_name, path, apply)
            value = await commit()
        except asyncio.CancelledError:
            self._rollback(handle)
            raise
        except Exception as e:
            logger.warning(f"Mutation {txn_id} failed, rolling back: {e}")
            self._notifier.error(messages.format_error(e), key=txn_id)
            self._rollback(handle)
            return MutationResult(
                txn_id=txn_id,
                ok=False,
                error=MutationError(txn_id, e),
                rolled_back=True,
            )

        self._notifier.success(messages.success, key=txn_id)
        self._arena.discard(handle)

        reconciled = False
        if reconcile is not None:
            reconciled = await self._reconcile(txn_id, slice_name, path, reconcile)
        return MutationResult(txn_id=txn_id, ok=True, value=value, reconciled=reconciled)

    def _rollback(self, handle: TransactionHandle) -> None:
        snapshot = self._arena.restore(handle)
        self._state.set_in(snapshot.slice_name, snapshot.path, snapshot.prior_state)
        logger.info(f"Rolled back {handle.txn_id}")

    async def _reconcile(
        self,
        txn_id: str,
        slice_name: str,
        path: Sequence[str],
        reconcile: Callable[[], Awaitable[Any]],
    ) -> bool:
        try:
            authoritative = await reconcile()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The commit already succeeded; keep the optimistic state.
            logger.warning(f"Reconcile after {txn_id} failed: {e}")
            return False
        if authoritative is not None:
            self._state.set_in(slice_name, path, authoritative)
        return True
