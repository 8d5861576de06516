"""
User-facing notifications.

The UI layer plugs in its own toast / message implementation; the sync
layer only calls this interface. Transaction-scoped notifications share a
key so a loading indicator can be replaced by its success or error.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

logger = logging.getLogger("notifications")


class Notifier(Protocol):
    """Interface for showing messages to the user."""

    def info(self, message: str, key: Optional[str] = None) -> None:
        ...

    def success(self, message: str, key: Optional[str] = None) -> None:
        ...

    def error(self, message: str, key: Optional[str] = None) -> None:
        ...

    def loading(self, message: str, key: Optional[str] = None) -> None:
        ...


class LoggingNotifier:
    """Default notifier that writes messages to the log."""

    def info(self, message: str, key: Optional[str] = None) -> None:
        logger.info(self._format(message, key))

    def success(self, message: str, key: Optional[str] = None) -> None:
        logger.info(self._format(message, key))

    def error(self, message: str, key: Optional[str] = None) -> None:
        logger.error(self._format(message, key))

    def loading(self, message: str, key: Optional[str] = None) -> None:
        logger.debug(self._format(message, key))

    @staticmethod
    def _format(message: str, key: Optional[str]) -> str:
        return f"[{key}] {message}" if key else message


@dataclass
class Notification:
    """A recorded notification."""
    level: str  # "info", "success", "error", "loading"
    message: str
    key: Optional[str] = None
    created_at: str = ""


class RecordingNotifier:
    """
    Keeps every notification in memory.

    Keyed notifications replace the previous one with the same key in
    `active`, the way a toast is updated in place.
    """

    def __init__(self):
        self.history: List[Notification] = []

    def _record(self, level: str, message: str, key: Optional[str]) -> None:
        self.history.append(Notification(
            level=level,
            message=message,
            key=key,
            created_at=datetime.utcnow().isoformat() + "Z",
        ))

    def info(self, message: str, key: Optional[str] = None) -> None:
        self._record("info", message, key)

    def success(self, message: str, key: Optional[str] = None) -> None:
        self._record("success", message, key)

    def error(self, message: str, key: Optional[str] = None) -> None:
        self._record("error", message, key)

    def loading(self, message: str, key: Optional[str] = None) -> None:
        self._record("loading", message, key)

    @property
    def active(self) -> List[Notification]:
        """Latest notification per key, plus every unkeyed one."""
        latest = {}
        unkeyed = []
        for note in self.history:
            if note.key is None:
                unkeyed.append(note)
            else:
                latest[note.key] = note
        return unkeyed + list(latest.values())

    def levels(self) -> List[str]:
        return [note.level for note in self.history]

    def messages(self) -> List[str]:
        return [note.message for note in self.history]
