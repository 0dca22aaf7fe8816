"""
Workflow validation: decides whether a proposed status change is legal
before it is applied locally, sent to the store, or recorded for undo.

Checks run in a fixed order and stop at the first failure:
  1. Reachability: the target must be a direct edge in the transition graph
  2. Dependencies: moving to done requires no open blocking tasks
  3. Rules: declarative predicates, evaluated in order

A rejection is an ordinary result, never an exception.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from .schema import Task, TaskPriority, TaskStatus, utc_now

logger = logging.getLogger(__name__)

TRANSITION_RULE_ID = "status-transition"
DEPENDENCY_RULE_ID = "blocking-dependencies"
DEPENDENCY_CHECK_FAILED_ID = "dependency-check-failed"

DEFAULT_STATUS_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.TODO: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.REVIEW, TaskStatus.TODO}),
    TaskStatus.REVIEW: frozenset({TaskStatus.DONE, TaskStatus.IN_PROGRESS}),
    TaskStatus.DONE: frozenset({TaskStatus.REVIEW}),  # reopen only via review
}


# ── Results and rules ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a transition check. Truthy when the transition is allowed."""
    ok: bool
    rule_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls) -> "ValidationResult":
        return cls(ok=True)

    @classmethod
    def reject(cls, rule_id: str, reason: str) -> "ValidationResult":
        return cls(ok=False, rule_id=rule_id, reason=reason)

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class WorkflowRule:
    """A named predicate over (task, proposed_status). False means rejected."""
    id: str
    predicate: Callable[[Task, TaskStatus], bool]
    error_message: str

    def check(self, task: Task, proposed: TaskStatus) -> bool:
        return bool(self.predicate(task, proposed))


class WorkflowRuleSet:
    """
    Transition graph plus ordered rules. Built once at startup; the
    mapping and rule tuple are read-only afterwards.
    """

    def __init__(
        self,
        status_transitions: Optional[Mapping[TaskStatus, Iterable[TaskStatus]]] = None,
        rules: Iterable[WorkflowRule] = (),
    ):
        graph = status_transitions if status_transitions is not None else DEFAULT_STATUS_TRANSITIONS
        self.status_transitions: Mapping[TaskStatus, FrozenSet[TaskStatus]] = MappingProxyType(
            {TaskStatus.from_str(src): frozenset(TaskStatus.from_str(d) for d in dests)
             for src, dests in graph.items()}
        )
        self.rules: Tuple[WorkflowRule, ...] = tuple(rules)

    def allowed_targets(self, status: TaskStatus) -> FrozenSet[TaskStatus]:
        return self.status_transitions.get(status, frozenset())

    def can_transition(self, current: TaskStatus, proposed: TaskStatus) -> bool:
        return proposed in self.allowed_targets(current)


# ── Default rules ────────────────────────────────────────────────────────────

def _bug_fix_verified(task: Task, proposed: TaskStatus) -> bool:
    if "bug" in task.labels and proposed == TaskStatus.DONE:
        text = (task.description or "").lower()
        return "verified" in text or "tested" in text or task.completion_percentage == 100
    return True


def _urgent_client_prioritized(task: Task, proposed: TaskStatus) -> bool:
    if {"client", "urgent"} <= task.labels and proposed == TaskStatus.TODO:
        return task.priority in (TaskPriority.HIGH, TaskPriority.URGENT)
    return True


def _features_reviewed(task: Task, proposed: TaskStatus) -> bool:
    if (task.labels & {"feature", "deployment"}
            and task.status == TaskStatus.IN_PROGRESS
            and proposed == TaskStatus.DONE):
        return False
    return True


def review_dwell_rule(
    dwell: timedelta = timedelta(minutes=5),
    clock: Callable[[], datetime] = utc_now,
) -> WorkflowRule:
    """High-priority tasks must sit in review for `dwell` before completion."""
    minutes = int(dwell.total_seconds() // 60)

    def predicate(task: Task, proposed: TaskStatus) -> bool:
        if (task.priority == TaskPriority.HIGH
                and task.status == TaskStatus.REVIEW
                and proposed == TaskStatus.DONE):
            return clock() - task.updated_at >= dwell
        return True

    return WorkflowRule(
        id="review-approval",
        predicate=predicate,
        error_message=(
            f"High priority tasks require approval before completion "
            f"({minutes} min review time)"
        ),
    )


def default_rule_set(
    review_dwell: timedelta = timedelta(minutes=5),
    clock: Callable[[], datetime] = utc_now,
) -> WorkflowRuleSet:
    """The stock board workflow: standard graph and the four lab rules."""
    return WorkflowRuleSet(
        DEFAULT_STATUS_TRANSITIONS,
        [
            WorkflowRule(
                id="bug-fix-verification",
                predicate=_bug_fix_verified,
                error_message="Bug fixes must be tested and verified before marking as done",
            ),
            WorkflowRule(
                id="client-task-priority",
                predicate=_urgent_client_prioritized,
                error_message="Urgent client tasks must be set to high priority",
            ),
            review_dwell_rule(review_dwell, clock),
            WorkflowRule(
                id="deployment-review",
                predicate=_features_reviewed,
                error_message="Features must go through review before deployment",
            ),
        ],
    )


# ── Validator ────────────────────────────────────────────────────────────────

class WorkflowValidator:
    """Gates status transitions. Holds no mutable state."""

    def __init__(self, rule_set: Optional[WorkflowRuleSet] = None, store=None):
        self.rule_set = rule_set or default_rule_set()
        self.store = store  # optional; enables the dependency gate

    async def validate_transition(self, task: Task, proposed_status) -> ValidationResult:
        try:
            proposed = TaskStatus.from_str(proposed_status)
        except ValueError:
            return ValidationResult.reject(
                TRANSITION_RULE_ID, f"Unknown status: {proposed_status}"
            )

        if not self.rule_set.can_transition(task.status, proposed):
            return ValidationResult.reject(
                TRANSITION_RULE_ID,
                f"Cannot move from {task.status.value} to {proposed.value}",
            )

        if proposed == TaskStatus.DONE and self.store is not None:
            gate = await self._check_dependencies(task)
            if not gate:
                return gate

        for rule in self.rule_set.rules:
            if not rule.check(task, proposed):
                logger.debug(f"Rule {rule.id} rejected {task.id} → {proposed.value}")
                return ValidationResult.reject(rule.id, rule.error_message)

        return ValidationResult.accept()

    async def validate_bulk(self, tasks: Iterable[Task], proposed_status) -> Dict[str, ValidationResult]:
        """Validate every task against the same target. Keyed by task id."""
        results: Dict[str, ValidationResult] = {}
        for task in tasks:
            results[task.id] = await self.validate_transition(task, proposed_status)
        return results

    async def _check_dependencies(self, task: Task) -> ValidationResult:
        try:
            check = await self.store.can_complete_task(task.id)
        except Exception as e:
            logger.warning(f"Dependency check failed for {task.id}: {e}")
            return ValidationResult.reject(
                DEPENDENCY_CHECK_FAILED_ID,
                f"Could not verify dependencies for \"{task.title}\": {e}",
            )

        if check.can_complete:
            return ValidationResult.accept()

        titles = ", ".join(f"\"{t.title}\"" for t in check.blocking_tasks) or "unknown tasks"
        return ValidationResult.reject(
            DEPENDENCY_RULE_ID,
            f"Cannot complete \"{task.title}\": blocked by {titles}",
        )
