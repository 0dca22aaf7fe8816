"""
Task schema and mutation records.

Task lifecycle:
  Todo → In Progress → Review → Done
  (In Progress may fall back to Todo, Review to In Progress, Done to Review)

Tasks are owned by the Task Store. The core only ever holds value
snapshots of them: ChangeRecord for committed history, PendingUpdate for
speculative local state.
"""
import copy
from enum import Enum
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any, Callable, Set


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class TaskStatus(Enum):
    """Board columns."""
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"

    @classmethod
    def from_str(cls, value) -> "TaskStatus":
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


class TaskPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_str(cls, value) -> "TaskPriority":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.MEDIUM


class ActionType(Enum):
    """Every kind of mutation the undo history knows how to replay."""
    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"
    MOVE_TASK = "move_task"
    BULK_UPDATE = "bulk_update"
    BULK_STATUS = "bulk_status"
    BULK_DELETE = "bulk_delete"

    @classmethod
    def bulk(cls, kind: str) -> "ActionType":
        """Resolve a bulk kind ("update", "status", "delete") to its action type."""
        return cls(f"bulk_{kind}")

    @property
    def is_bulk(self) -> bool:
        return self.value.startswith("bulk_")


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass
class Task:
    """A task as the core sees it. Unknown fields ride along in `extra`."""

    id: str
    title: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    labels: Set[str] = field(default_factory=set)
    assignee_id: Optional[str] = None
    due_date: Optional[date] = None
    updated_at: datetime = field(default_factory=utc_now)
    description: str = ""
    completion_percentage: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Timestamps are always UTC-aware, however the task was built
        self.updated_at = _parse_datetime(self.updated_at) or utc_now()
        self.due_date = _parse_date(self.due_date)

    def copy(self) -> "Task":
        """Structural value copy; shares no mutable state with self."""
        return replace(
            self,
            labels=set(self.labels),
            extra=copy.deepcopy(self.extra),
        )

    def with_changes(self, patch: Dict[str, Any]) -> "Task":
        """
        Return a copy with `patch` applied (plain-dict field names). A None
        value for a key outside the Task fields removes that extra field.
        """
        data = self.to_dict()
        data.update(patch)
        known = {f.name for f in fields(self)}
        for key, value in patch.items():
            if value is None and key not in known:
                data.pop(key, None)
        return Task.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the plain-dict shape the Task Store speaks."""
        data = {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "priority": self.priority.value,
            "labels": sorted(self.labels),
            "assignee_id": self.assignee_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "description": self.description,
            "completion_percentage": self.completion_percentage,
        }
        for key, value in self.extra.items():
            data.setdefault(key, copy.deepcopy(value))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Deserialize from dict. Keys that are not Task fields land in `extra`."""
        known = {f.name for f in fields(cls)}
        extra = dict(data.get("extra") or {})
        for key, value in data.items():
            if key not in known:
                extra[key] = copy.deepcopy(value)

        labels = data.get("labels") or []
        if isinstance(labels, str):
            labels = [part.strip() for part in labels.split(",") if part.strip()]

        return cls(
            id=str(data.get("id") or ""),
            title=data.get("title") or "",
            status=TaskStatus.from_str(data.get("status") or "todo"),
            priority=TaskPriority.from_str(data.get("priority") or "medium"),
            labels=set(labels),
            assignee_id=data.get("assignee_id"),
            due_date=_parse_date(data.get("due_date")),
            updated_at=_parse_datetime(data.get("updated_at")) or utc_now(),
            description=data.get("description") or "",
            completion_percentage=int(data.get("completion_percentage") or 0),
            extra=extra,
        )


def snapshot(value):
    """
    Take an independent value copy of a task, a collection of tasks, or any
    opaque state. Dates and datetimes are immutable and kept as objects.
    """
    if value is None:
        return None
    if isinstance(value, Task):
        return value.copy()
    if isinstance(value, dict):
        return {k: snapshot(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [snapshot(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return set(value)
    if isinstance(value, (str, int, float, bool, date, datetime, Enum)):
        return value
    return copy.deepcopy(value)


@dataclass
class ChangeRecord:
    """One committed, reversible mutation."""
    id: str
    action_type: ActionType
    previous_state: Any = None
    new_state: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def description(self) -> str:
        return self.metadata.get("description", self.action_type.value)

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.metadata.get("timestamp")

    def summary(self) -> Dict[str, Any]:
        """Compact form used by history listings."""
        return {
            "id": self.id,
            "action_type": self.action_type.value,
            "description": self.description,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class PendingUpdate:
    """A local mutation shown ahead of server confirmation."""
    tracking_id: str
    original_data: Any
    desired_data: Any
    timestamp: float
    on_success: Optional[Callable[[Any], Any]] = None
    on_error: Optional[Callable[[BaseException, Any], Any]] = None

    def age(self, now: float) -> float:
        return now - self.timestamp
