"""
Task Store contract and a SQLite-backed reference implementation.

The core only talks to the store through the async TaskStore protocol:
create_task, update_task, delete_task, can_complete_task. SqliteTaskStore
implements it on a local database (blocking calls run in a worker thread)
and adds the read helpers the orchestrator needs to load a board.
"""
import asyncio
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .schema import Task, TaskStatus, utc_now

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id", "title", "status", "priority", "labels", "assignee_id", "due_date",
    "updated_at", "description", "completion_percentage", "extra",
)


class TaskStoreError(Exception):
    """Raised when the store cannot perform a request."""
    pass


class TaskNotFound(TaskStoreError):
    """Raised when a task id does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


@dataclass
class CompletionCheck:
    """Answer to "can this task move to done?"."""
    can_complete: bool
    blocking_tasks: List[Task] = field(default_factory=list)


class TaskStore(Protocol):
    """What the core needs from the remote task service."""

    async def create_task(self, data: Dict[str, Any]) -> Task: ...

    async def update_task(self, task_id: str, patch: Dict[str, Any]) -> Task: ...

    async def delete_task(self, task_id: str) -> None: ...

    async def can_complete_task(self, task_id: str) -> CompletionCheck: ...


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with FK enforcement and WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def new_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


class SqliteTaskStore:
    """SQLite-backed task store."""

    def __init__(self, db_path: str = None):
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "kanban-sync" / "tasks.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'todo',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    labels TEXT,  -- JSON list
                    assignee_id TEXT,
                    due_date TEXT,
                    updated_at TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    completion_percentage INTEGER DEFAULT 0,
                    extra TEXT  -- JSON object
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_dependencies (
                    task_id TEXT NOT NULL,
                    depends_on_task_id TEXT NOT NULL,
                    PRIMARY KEY (task_id, depends_on_task_id),
                    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE,
                    FOREIGN KEY (depends_on_task_id) REFERENCES tasks(id) ON DELETE CASCADE
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            conn.commit()

    # ── TaskStore contract ───────────────────────────────────

    async def create_task(self, data: Dict[str, Any]) -> Task:
        return await asyncio.to_thread(self._create, dict(data))

    async def update_task(self, task_id: str, patch: Dict[str, Any]) -> Task:
        return await asyncio.to_thread(self._update, task_id, dict(patch))

    async def delete_task(self, task_id: str) -> None:
        await asyncio.to_thread(self._delete, task_id)

    async def can_complete_task(self, task_id: str) -> CompletionCheck:
        return await asyncio.to_thread(self._can_complete, task_id)

    # ── Read helpers ─────────────────────────────────────────

    def get_task(self, task_id: str) -> Optional[Task]:
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        with _connect(self.db_path) as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM tasks ORDER BY rowid").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE status = ? ORDER BY rowid",
                    (TaskStatus.from_str(status).value,),
                ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def add_dependency(self, task_id: str, depends_on_task_id: str) -> None:
        """Make `task_id` blocked until `depends_on_task_id` is done."""
        if task_id == depends_on_task_id:
            raise TaskStoreError("A task cannot depend on itself")
        try:
            with _connect(self.db_path) as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
                    (task_id, depends_on_task_id),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise TaskStoreError(f"Cannot link {task_id} → {depends_on_task_id}: {e}") from e

    def remove_dependency(self, task_id: str, depends_on_task_id: str) -> None:
        with _connect(self.db_path) as conn:
            conn.execute(
                "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
                (task_id, depends_on_task_id),
            )
            conn.commit()

    # ── Blocking implementations ─────────────────────────────

    def _create(self, data: Dict[str, Any]) -> Task:
        data.setdefault("id", None)
        if not data["id"]:
            data["id"] = new_task_id()
        data.setdefault("updated_at", utc_now().isoformat())
        task = Task.from_dict(data)
        try:
            with _connect(self.db_path) as conn:
                conn.execute(
                    f"INSERT INTO tasks ({', '.join(_COLUMNS)}) VALUES ({', '.join('?' * len(_COLUMNS))})",
                    self._task_to_row(task),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise TaskStoreError(f"Cannot create task {task.id}: {e}") from e
        logger.debug(f"Created task {task.id}")
        return task

    def _update(self, task_id: str, patch: Dict[str, Any]) -> Task:
        current = self.get_task(task_id)
        if current is None:
            raise TaskNotFound(task_id)
        patch.pop("id", None)
        patch["updated_at"] = utc_now().isoformat()
        task = current.with_changes(patch)
        values = self._task_to_row(task)
        with _connect(self.db_path) as conn:
            conn.execute(
                f"UPDATE tasks SET {', '.join(f'{c} = ?' for c in _COLUMNS[1:])} WHERE id = ?",
                (*values[1:], task_id),
            )
            conn.commit()
        logger.debug(f"Updated task {task_id}: {sorted(patch)}")
        return task

    def _delete(self, task_id: str) -> None:
        with _connect(self.db_path) as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            conn.commit()
        if cur.rowcount == 0:
            raise TaskNotFound(task_id)
        logger.debug(f"Deleted task {task_id}")

    def _can_complete(self, task_id: str) -> CompletionCheck:
        with _connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT t.* FROM task_dependencies d
                JOIN tasks t ON t.id = d.depends_on_task_id
                WHERE d.task_id = ? AND t.status != ?
                ORDER BY t.rowid
                """,
                (task_id, TaskStatus.DONE.value),
            ).fetchall()
        blocking = [self._row_to_task(r) for r in rows]
        return CompletionCheck(can_complete=not blocking, blocking_tasks=blocking)

    # ── Row mapping ──────────────────────────────────────────

    def _task_to_row(self, task: Task) -> tuple:
        data = task.to_dict()
        return (
            task.id,
            task.title,
            data["status"],
            data["priority"],
            json.dumps(data["labels"]),
            task.assignee_id,
            data["due_date"],
            data["updated_at"],
            task.description,
            task.completion_percentage,
            json.dumps(task.extra, default=str),
        )

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        data = dict(row)
        for key, fallback in (("labels", []), ("extra", {})):
            try:
                data[key] = json.loads(data[key]) if data.get(key) else fallback
            except (json.JSONDecodeError, TypeError):
                data[key] = fallback
        return Task.from_dict(data)
