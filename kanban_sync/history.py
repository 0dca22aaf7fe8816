"""
Undo/redo history for committed task mutations.

Every confirmed mutation is recorded as a ChangeRecord holding value
snapshots of the state before and after. Replaying a record is delegated
to the handler registered for its ActionType:

    handler(target_state, source_state, metadata, is_undo)

Handlers may be plain functions or coroutines. While a replay is in flight
record_change() is ignored so the replay does not record itself.
"""
import inspect
import logging
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from .schema import ActionType, ChangeRecord, Task, snapshot, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_STACK_SIZE = 50

ChangeHandler = Callable[[Any, Any, Dict[str, Any], bool], Any]


def generate_change_id() -> str:
    ts = int(time.time() * 1000)
    rand = uuid.uuid4().hex[:9]
    return f"change-{ts}-{rand}"


def changed_fields(old: Optional[Task], new: Optional[Task]) -> List[Dict[str, Any]]:
    """Field-level diff between two task versions, in plain-dict terms."""
    old_data = old.to_dict() if old else {}
    new_data = new.to_dict() if new else {}
    changes = []
    for key in sorted(set(old_data) | set(new_data)):
        if old_data.get(key) != new_data.get(key):
            changes.append({
                "field": key,
                "old_value": old_data.get(key),
                "new_value": new_data.get(key),
            })
    return changes


def describe_action(action_type: ActionType, metadata: Dict[str, Any]) -> str:
    """Human-readable text for toasts and undo/redo affordances."""
    title = metadata.get("task_title", "")
    count = metadata.get("task_count", 0)
    descriptions = {
        ActionType.CREATE_TASK: f"Create task \"{title}\"",
        ActionType.UPDATE_TASK: f"Update task \"{title}\"",
        ActionType.DELETE_TASK: f"Delete task \"{title}\"",
        ActionType.MOVE_TASK: f"Move task \"{title}\"",
        ActionType.BULK_UPDATE: f"Update {count} tasks",
        ActionType.BULK_STATUS: f"Change status of {count} tasks",
        ActionType.BULK_DELETE: f"Delete {count} tasks",
    }
    return descriptions.get(action_type, action_type.value)


class UndoRedoManager:
    """Bounded undo/redo stacks with per-action replay handlers."""

    def __init__(self, max_stack_size: int = DEFAULT_MAX_STACK_SIZE):
        if max_stack_size < 1:
            raise ValueError("max_stack_size must be at least 1")
        self.max_stack_size = max_stack_size
        self._undo: Deque[ChangeRecord] = deque(maxlen=max_stack_size)
        self._redo: List[ChangeRecord] = []
        self._handlers: Dict[ActionType, ChangeHandler] = {}
        self._applying = False

    @property
    def is_applying_change(self) -> bool:
        return self._applying

    # ── Handler registry ─────────────────────────────────────

    def register_change_handler(self, action_type: ActionType, handler: ChangeHandler) -> None:
        """Associate a replay function with an action type. Replaces any previous one."""
        self._handlers[ActionType(action_type)] = handler

    def unhandled_action_types(self) -> Set[ActionType]:
        """Action types that would be skipped on replay."""
        return set(ActionType) - set(self._handlers)

    # ── Recording ────────────────────────────────────────────

    def record_change(
        self,
        action_type: ActionType,
        previous_state: Any,
        new_state: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ChangeRecord]:
        """Push a committed change. Ignored while an undo/redo is applying."""
        if self._applying:
            return None

        action_type = ActionType(action_type)
        meta = dict(metadata or {})
        meta["timestamp"] = utc_now()
        meta["description"] = describe_action(action_type, meta)

        record = ChangeRecord(
            id=generate_change_id(),
            action_type=action_type,
            previous_state=snapshot(previous_state),
            new_state=snapshot(new_state),
            metadata=meta,
        )
        # deque(maxlen) drops the oldest entry on overflow
        self._undo.append(record)
        self._redo.clear()
        logger.debug(f"Recorded {action_type.value}: {record.description}")
        return record

    def record_task_creation(self, task: Task) -> Optional[ChangeRecord]:
        return self.record_change(ActionType.CREATE_TASK, None, task, {
            "task_id": task.id,
            "task_title": task.title,
        })

    def record_task_update(self, old_task: Task, new_task: Task) -> Optional[ChangeRecord]:
        """Record an edit. Nothing is recorded when the two versions are equal."""
        if old_task == new_task:
            return None
        return self.record_change(ActionType.UPDATE_TASK, old_task, new_task, {
            "task_id": old_task.id,
            "task_title": old_task.title,
            "changes": changed_fields(old_task, new_task),
        })

    def record_task_move(self, old_task: Task, new_task: Task) -> Optional[ChangeRecord]:
        """Record a status change (drag between columns)."""
        if old_task == new_task:
            return None
        return self.record_change(ActionType.MOVE_TASK, old_task, new_task, {
            "task_id": old_task.id,
            "task_title": old_task.title,
            "from_status": old_task.status.value,
            "to_status": new_task.status.value,
        })

    def record_task_deletion(self, task: Task) -> Optional[ChangeRecord]:
        return self.record_change(ActionType.DELETE_TASK, task, None, {
            "task_id": task.id,
            "task_title": task.title,
        })

    def record_bulk_operation(
        self,
        kind: str,
        tasks: Iterable[Task],
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[ChangeRecord]:
        """
        Record one operation over many tasks. `kind` is "update", "status"
        or "delete"; `changes` is the patch applied to each task (None for
        deletions).
        """
        tasks = list(tasks)
        action_type = ActionType.bulk(kind)
        if action_type == ActionType.BULK_DELETE or changes is None:
            new_state = None
        else:
            new_state = [t.with_changes(changes) for t in tasks]
        return self.record_change(action_type, tasks, new_state, {
            "task_count": len(tasks),
            "task_ids": [t.id for t in tasks],
            "changes": dict(changes or {}),
        })

    # ── Replay ───────────────────────────────────────────────

    async def undo(self) -> Optional[ChangeRecord]:
        """Revert the most recent change. None when there is nothing to undo."""
        if not self._undo:
            return None
        record = self._undo.pop()
        self._redo.append(record)
        logger.info(f"Undoing {record.action_type.value}: {record.description}")
        await self._apply(record, is_undo=True)
        return record

    async def redo(self) -> Optional[ChangeRecord]:
        """Re-apply the most recently undone change."""
        if not self._redo:
            return None
        record = self._redo.pop()
        self._undo.append(record)
        logger.info(f"Redoing {record.action_type.value}: {record.description}")
        await self._apply(record, is_undo=False)
        return record

    async def _apply(self, record: ChangeRecord, is_undo: bool) -> Any:
        # Stacks are already swapped; a failing handler leaves them that way.
        handler = self._handlers.get(record.action_type)
        if handler is None:
            logger.warning(f"No handler registered for {record.action_type.value}")
            return None

        if is_undo:
            target, source = record.previous_state, record.new_state
        else:
            target, source = record.new_state, record.previous_state

        self._applying = True
        try:
            result = handler(snapshot(target), snapshot(source), dict(record.metadata), is_undo)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            self._applying = False

    # ── Introspection ────────────────────────────────────────

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def get_undo_description(self) -> Optional[str]:
        return self._undo[-1].description if self._undo else None

    def get_redo_description(self) -> Optional[str]:
        return self._redo[-1].description if self._redo else None

    def get_history(self) -> Dict[str, List[Dict[str, Any]]]:
        """Both stacks, most recent first."""
        return {
            "undo_stack": [r.summary() for r in reversed(self._undo)],
            "redo_stack": [r.summary() for r in reversed(self._redo)],
        }

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()
