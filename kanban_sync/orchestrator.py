"""
Task mutation orchestrator: composes validator, tracker, history and store.

Every mutation follows the same path:

    validate → optimistic apply + track → store call → confirm / rollback → record

The orchestrator owns the local board (`tasks`), which is what a UI would
render. Local state is only ever replaced with value copies, so history
snapshots and pending originals never alias it.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .events import (
    MUTATION_CONFIRMED,
    MUTATION_ROLLED_BACK,
    REDO,
    REDO_FAILED,
    UNDO,
    UNDO_FAILED,
    VALIDATION_REJECTED,
    NotificationBus,
)
from .history import UndoRedoManager
from .optimistic import OptimisticUpdateTracker
from .schema import ActionType, ChangeRecord, Task, TaskStatus, snapshot
from .workflow import ValidationResult, WorkflowValidator

logger = logging.getLogger(__name__)

# Fields the store owns; never sent back as part of a replay patch.
_STORE_MANAGED = ("id", "updated_at")


@dataclass
class MutationResult:
    """Outcome of an orchestrated mutation. Falsy when nothing was committed."""
    ok: bool
    data: Any = None
    reason: Optional[str] = None
    rule_id: Optional[str] = None

    def __bool__(self) -> bool:
        return self.ok


def _is_status_change(task: Task, value) -> bool:
    try:
        return TaskStatus.from_str(value) != task.status
    except ValueError:
        return True  # let the validator reject it


def replay_patch(target: Task, source: Task) -> Dict[str, Any]:
    """Fields to send so that `source` becomes `target` on the store."""
    target_data = target.to_dict()
    source_data = source.to_dict()
    patch = {
        k: v for k, v in target_data.items()
        if k not in _STORE_MANAGED and source_data.get(k) != v
    }
    for k in source_data:
        if k not in target_data and k not in _STORE_MANAGED:
            patch[k] = None  # store drops the extra field
    return patch


class TaskMutationOrchestrator:
    """Runs task mutations through the reconciliation pipeline."""

    def __init__(
        self,
        store,
        validator: WorkflowValidator,
        tracker: OptimisticUpdateTracker,
        history: UndoRedoManager,
        notifier: Optional[NotificationBus] = None,
    ):
        self.store = store
        self.validator = validator
        self.tracker = tracker
        self.history = history
        self.notifier = notifier or NotificationBus()
        self.tasks: Dict[str, Task] = {}
        self._register_handlers()

    # ── Board state ──────────────────────────────────────────

    def load(self, tasks: Iterable[Task]) -> None:
        """Replace the local board with copies of `tasks`."""
        self.tasks = {t.id: t.copy() for t in tasks}

    def get(self, task_id: str) -> Optional[Task]:
        task = self.tasks.get(task_id)
        return task.copy() if task else None

    def _apply_local(self, state: Dict[str, Optional[Task]]) -> None:
        for task_id, task in state.items():
            if task is None:
                self.tasks.pop(task_id, None)
            else:
                self.tasks[task_id] = task.copy()

    # ── Optimistic plumbing ──────────────────────────────────

    def _begin(
        self,
        tracking_id: str,
        original: Dict[str, Optional[Task]],
        desired: Dict[str, Optional[Task]],
        description: str,
    ) -> str:
        self._apply_local(desired)

        def on_success(server_data):
            self.notifier.emit(
                MUTATION_CONFIRMED, description, "success", tracking_id=tracking_id,
            )

        def on_error(error, original_data):
            # also reached by forced rollback on expiry
            self._apply_local(original_data)
            self.notifier.emit(
                MUTATION_ROLLED_BACK, f"{description} failed: {error}", "error",
                tracking_id=tracking_id, error=error,
            )

        self.tracker.track_update(tracking_id, original, desired, on_success, on_error)
        return tracking_id

    def _fail(
        self,
        tracking_id: str,
        error: BaseException,
        original: Dict[str, Optional[Task]],
        description: str,
    ) -> MutationResult:
        logger.warning(f"Store call failed for {tracking_id}: {error}")
        if self.tracker.rollback_update(tracking_id, error) is None:
            # Tracking already expired, so on_error will not run: restore here
            self._apply_local(original)
            self.notifier.emit(
                MUTATION_ROLLED_BACK, f"{description} failed: {error}", "error",
                tracking_id=tracking_id, error=error,
            )
        return MutationResult(False, reason=str(error))

    def _reject(self, task: Task, verdict: ValidationResult) -> MutationResult:
        self.notifier.emit(
            VALIDATION_REJECTED, verdict.reason, "warning",
            task_id=task.id, rule_id=verdict.rule_id,
        )
        return MutationResult(False, reason=verdict.reason, rule_id=verdict.rule_id)

    def _missing(self, task_id: str) -> MutationResult:
        return MutationResult(False, reason=f"Task {task_id} not found")

    # ── Single-task mutations ────────────────────────────────

    async def create_task(self, data: Dict[str, Any]) -> MutationResult:
        tracking_id = self.tracker.generate_tracking_id()
        local_id = data.get("id") or tracking_id
        draft = Task.from_dict({**data, "id": local_id})
        # a duplicate id must not erase the task already on the board
        original = {local_id: snapshot(self.tasks.get(local_id))}
        description = f"Create task \"{draft.title}\""
        self._begin(tracking_id, original, {local_id: draft}, description)

        try:
            created = await self.store.create_task(dict(data))
        except Exception as e:
            return self._fail(tracking_id, e, original, description)

        self._apply_local({local_id: None, created.id: created})
        self.tracker.confirm_update(tracking_id, created)
        self.history.record_task_creation(created)
        return MutationResult(True, created.copy())

    async def update_task(self, task_id: str, patch: Dict[str, Any]) -> MutationResult:
        """Edit fields. A patch that changes status is validated first."""
        current = self.tasks.get(task_id)
        if current is None:
            return self._missing(task_id)

        if "status" in patch and _is_status_change(current, patch["status"]):
            verdict = await self.validator.validate_transition(current, patch["status"])
            if not verdict:
                return self._reject(current, verdict)

        desired = current.with_changes(patch)
        if desired == current:
            return MutationResult(True, current.copy())

        return await self._commit_update(
            current, desired, patch, f"Update task \"{current.title}\"",
            self.history.record_task_update,
        )

    async def change_status(self, task_id: str, new_status) -> MutationResult:
        """Move a task to another column."""
        current = self.tasks.get(task_id)
        if current is None:
            return self._missing(task_id)

        verdict = await self.validator.validate_transition(current, new_status)
        if not verdict:
            return self._reject(current, verdict)

        status = TaskStatus.from_str(new_status)
        patch = {"status": status.value}
        desired = current.with_changes(patch)
        return await self._commit_update(
            current, desired, patch,
            f"Move task \"{current.title}\" to {status.value}",
            self.history.record_task_move,
        )

    async def _commit_update(self, current, desired, patch, description, record) -> MutationResult:
        original = snapshot(current)
        tracking_id = self.tracker.generate_tracking_id()
        self._begin(tracking_id, {current.id: original}, {current.id: desired}, description)

        try:
            updated = await self.store.update_task(current.id, dict(patch))
        except Exception as e:
            return self._fail(tracking_id, e, {current.id: original}, description)

        self._apply_local({updated.id: updated})
        self.tracker.confirm_update(tracking_id, updated)
        record(original, updated)
        return MutationResult(True, updated.copy())

    async def delete_task(self, task_id: str) -> MutationResult:
        current = self.tasks.get(task_id)
        if current is None:
            return self._missing(task_id)

        original = snapshot(current)
        tracking_id = self.tracker.generate_tracking_id()
        description = f"Delete task \"{current.title}\""
        self._begin(tracking_id, {task_id: original}, {task_id: None}, description)

        try:
            await self.store.delete_task(task_id)
        except Exception as e:
            return self._fail(tracking_id, e, {task_id: original}, description)

        self.tracker.confirm_update(tracking_id, None)
        self.history.record_task_deletion(original)
        return MutationResult(True, original)

    # ── Bulk mutations ───────────────────────────────────────

    async def bulk_change_status(self, task_ids: Iterable[str], new_status) -> MutationResult:
        """Move several tasks. Nothing moves unless every transition is legal."""
        try:
            status = TaskStatus.from_str(new_status)
        except ValueError:
            return MutationResult(False, reason=f"Unknown status: {new_status}")
        return await self._bulk_update(list(task_ids), {"status": status.value}, "status")

    async def bulk_update(self, task_ids: Iterable[str], patch: Dict[str, Any]) -> MutationResult:
        return await self._bulk_update(list(task_ids), dict(patch), "update")

    async def _bulk_update(self, task_ids: List[str], patch: Dict[str, Any], kind: str) -> MutationResult:
        tasks = [self.tasks.get(tid) for tid in task_ids]
        missing = [tid for tid, t in zip(task_ids, tasks) if t is None]
        if missing:
            return self._missing(", ".join(missing))

        if "status" in patch:
            movers = [t for t in tasks if _is_status_change(t, patch["status"])]
            results = await self.validator.validate_bulk(movers, patch["status"])
            for task in movers:
                if not results[task.id]:
                    verdict = results[task.id]
                    return self._reject(task, ValidationResult.reject(
                        verdict.rule_id, f"\"{task.title}\": {verdict.reason}",
                    ))

        originals = [snapshot(t) for t in tasks]

        async def update_one(task: Task) -> Task:
            tracking_id = self.tracker.generate_tracking_id()
            description = f"Update task \"{task.title}\""
            self._begin(tracking_id, {task.id: task}, {task.id: task.with_changes(patch)}, description)
            try:
                updated = await self.store.update_task(task.id, dict(patch))
            except Exception as e:
                self._fail(tracking_id, e, {task.id: task}, description)
                raise
            self._apply_local({updated.id: updated})
            self.tracker.confirm_update(tracking_id, updated)
            return updated

        outcomes = await asyncio.gather(*(update_one(t) for t in originals), return_exceptions=True)
        return self._finish_bulk(kind, originals, outcomes, patch)

    async def bulk_delete(self, task_ids: Iterable[str]) -> MutationResult:
        task_ids = list(task_ids)
        tasks = [self.tasks.get(tid) for tid in task_ids]
        missing = [tid for tid, t in zip(task_ids, tasks) if t is None]
        if missing:
            return self._missing(", ".join(missing))

        originals = [snapshot(t) for t in tasks]

        async def delete_one(task: Task) -> Task:
            tracking_id = self.tracker.generate_tracking_id()
            description = f"Delete task \"{task.title}\""
            self._begin(tracking_id, {task.id: task}, {task.id: None}, description)
            try:
                await self.store.delete_task(task.id)
            except Exception as e:
                self._fail(tracking_id, e, {task.id: task}, description)
                raise
            self.tracker.confirm_update(tracking_id, None)
            return task

        outcomes = await asyncio.gather(*(delete_one(t) for t in originals), return_exceptions=True)
        return self._finish_bulk("delete", originals, outcomes, None)

    def _finish_bulk(self, kind, originals, outcomes, changes) -> MutationResult:
        committed = [o for o, r in zip(originals, outcomes) if not isinstance(r, BaseException)]
        errors = [r for r in outcomes if isinstance(r, BaseException)]
        if committed:
            self.history.record_bulk_operation(kind, committed, changes)
        results = [r for r in outcomes if not isinstance(r, BaseException)]
        if errors:
            return MutationResult(
                False, data=results,
                reason=f"{len(errors)} of {len(originals)} tasks failed: {errors[0]}",
            )
        return MutationResult(True, data=results)

    # ── Undo / redo ──────────────────────────────────────────

    async def undo(self) -> Optional[ChangeRecord]:
        """Undo the last change. Replay errors are announced and re-raised."""
        description = self.history.get_undo_description()
        try:
            record = await self.history.undo()
        except Exception as e:
            self.notifier.emit(UNDO_FAILED, f"Undo failed: {description}: {e}", "error", error=e)
            raise
        if record is not None:
            self.notifier.emit(UNDO, f"Undone: {record.description}", "success", change_id=record.id)
        return record

    async def redo(self) -> Optional[ChangeRecord]:
        description = self.history.get_redo_description()
        try:
            record = await self.history.redo()
        except Exception as e:
            self.notifier.emit(REDO_FAILED, f"Redo failed: {description}: {e}", "error", error=e)
            raise
        if record is not None:
            self.notifier.emit(REDO, f"Redone: {record.description}", "success", change_id=record.id)
        return record

    # ── Replay handlers ──────────────────────────────────────

    def _register_handlers(self) -> None:
        handlers = {
            ActionType.CREATE_TASK: self._replay_task,
            ActionType.UPDATE_TASK: self._replay_task,
            ActionType.DELETE_TASK: self._replay_task,
            ActionType.MOVE_TASK: self._replay_task,
            ActionType.BULK_UPDATE: self._replay_bulk,
            ActionType.BULK_STATUS: self._replay_bulk,
            ActionType.BULK_DELETE: self._replay_bulk,
        }
        unhandled = set(ActionType) - set(handlers)
        if unhandled:
            raise ValueError(f"No replay handler for {sorted(a.value for a in unhandled)}")
        for action_type, handler in handlers.items():
            self.history.register_change_handler(action_type, handler)

    async def _replay_task(self, target, source, metadata, is_undo) -> None:
        await self._reconcile(target, source)

    async def _replay_bulk(self, target, source, metadata, is_undo) -> None:
        targets = {t.id: t for t in target or []}
        sources = {t.id: t for t in source or []}
        for task_id in metadata.get("task_ids") or list({**sources, **targets}):
            await self._reconcile(targets.get(task_id), sources.get(task_id))

    async def _reconcile(self, target: Optional[Task], source: Optional[Task]) -> None:
        """Drive the store (and local board) from `source` to `target`."""
        if target is None and source is None:
            return
        if target is None:
            await self.store.delete_task(source.id)
            self._apply_local({source.id: None})
        elif source is None:
            created = await self.store.create_task(target.to_dict())
            self._apply_local({created.id: created})
        else:
            patch = replay_patch(target, source)
            if not patch:
                return
            updated = await self.store.update_task(target.id, patch)
            self._apply_local({updated.id: updated})
