"""
Named application state slices that optimistic mutations operate on.
"""
import itertools
import logging
from typing import Any, Callable, Dict, Optional, Sequence

from swrsync.utils.helpers import get_in, set_in

logger = logging.getLogger("optimistic.state")

SliceListener = Callable[[str, Any], None]


class SliceStore:
    """
    Holds one JSON-like value per slice name ("principal", "faculty", ...).

    Values are treated as immutable: every write replaces the slice with a
    new object built by set_in(), so a reference taken before a write is
    never changed by it.

    Usage:
        state = SliceStore({"principal": {"students": {"list": [...]}}})
        state.apply_in("principal", ["students", "list"], drop_student)
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._slices: Dict[str, Any] = dict(initial or {})
        self._listeners: Dict[int, SliceListener] = {}
        self._tokens = itertools.count(1)

    def get(self, slice_name: str, default: Any = None) -> Any:
        return self._slices.get(slice_name, default)

    def get_in(self, slice_name: str, path: Sequence[str], default: Any = None) -> Any:
        """Read a nested value inside a slice."""
        return get_in(self._slices.get(slice_name), path, default)

    def replace(self, slice_name: str, value: Any) -> None:
        """Replace a whole slice."""
        self._slices[slice_name] = value
        self._emit(slice_name)

    def set_in(self, slice_name: str, path: Sequence[str], value: Any) -> None:
        """Replace the value at path inside a slice."""
        self._slices[slice_name] = set_in(self._slices.get(slice_name), path, value)
        self._emit(slice_name)

    def apply(self, slice_name: str, fn: Callable[[Any], Any]) -> Any:
        """Replace a slice with fn(current). Returns the new value."""
        value = fn(self._slices.get(slice_name))
        self.replace(slice_name, value)
        return value

    def apply_in(self, slice_name: str, path: Sequence[str], fn: Callable[[Any], Any]) -> Any:
        """Replace the value at path with fn(current). Returns the new value."""
        value = fn(self.get_in(slice_name, path))
        self.set_in(slice_name, path, value)
        return value

    def subscribe(self, listener: SliceListener) -> Callable[[], None]:
        """Call listener(slice_name, value) after every write. Returns an unsubscribe function."""
        token = next(self._tokens)
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def _emit(self, slice_name: str) -> None:
        value = self._slices.get(slice_name)
        for listener in list(self._listeners.values()):
            try:
                listener(slice_name, value)
            except Exception as e:
                logger.warning(f"Slice listener for {slice_name} raised: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._slices)
