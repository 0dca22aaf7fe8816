"""
Notification bus: the core's outward-facing message surface.

The core decides what to say (confirmations, rollbacks, rejections,
undo/redo outcomes); subscribers decide how to show it, typically as a
transient toast.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

ALL = "*"

MUTATION_CONFIRMED = "mutation_confirmed"
MUTATION_ROLLED_BACK = "mutation_rolled_back"
VALIDATION_REJECTED = "validation_rejected"
UNDO = "undo"
REDO = "redo"
UNDO_FAILED = "undo_failed"
REDO_FAILED = "redo_failed"


@dataclass
class Notification:
    kind: str
    message: str
    level: str = "info"  # "info" | "success" | "warning" | "error"
    data: Dict[str, Any] = field(default_factory=dict)


class NotificationBus:
    """Routes notifications to subscribers by kind."""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable[[Notification], Any]]] = {}
        self.history: List[Notification] = []
        self.max_history = 100

    def subscribe(self, kind: str, callback: Callable[[Notification], Any]) -> Callable[[], None]:
        """Register a callback for a kind ("*" for every kind). Returns an unsubscribe function."""
        if kind not in self.subscribers:
            self.subscribers[kind] = []
        self.subscribers[kind].append(callback)
        return lambda: self.unsubscribe(kind, callback)

    def unsubscribe(self, kind: str, callback: Callable[[Notification], Any]) -> None:
        callbacks = self.subscribers.get(kind, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self.subscribers.pop(kind, None)

    def emit(
        self,
        kind: str,
        message: str,
        level: str = "info",
        **data: Any,
    ) -> Notification:
        """Deliver a notification. Subscriber errors are logged, not raised."""
        note = Notification(kind=kind, message=message, level=level, data=data)
        self.history.append(note)
        if len(self.history) > self.max_history:
            self.history.pop(0)

        for callback in self.subscribers.get(kind, []) + self.subscribers.get(ALL, []):
            try:
                callback(note)
            except Exception:
                logger.exception(f"Error in {kind} subscriber")
        return note

    def last(self, kind: Optional[str] = None) -> Optional[Notification]:
        """Most recent notification, optionally of a given kind."""
        for note in reversed(self.history):
            if kind is None or note.kind == kind:
                return note
        return None
