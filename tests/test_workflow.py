"""
Tests for workflow validation: transition graph, dependency gate, rules.
"""
import asyncio
import itertools
from datetime import timedelta

import pytest

from kanban_sync.schema import Task, TaskPriority, TaskStatus
from kanban_sync.store import CompletionCheck
from kanban_sync.workflow import (
    DEFAULT_STATUS_TRANSITIONS,
    DEPENDENCY_CHECK_FAILED_ID,
    DEPENDENCY_RULE_ID,
    TRANSITION_RULE_ID,
    ValidationResult,
    WorkflowRule,
    WorkflowRuleSet,
    WorkflowValidator,
    default_rule_set,
)


def validate(validator, task, status):
    return asyncio.run(validator.validate_transition(task, status))


class StubStore:
    """Answers can_complete_task from a fixed table."""

    def __init__(self, blocking=None, error=None):
        self.blocking = blocking or {}
        self.error = error
        self.calls = []

    async def can_complete_task(self, task_id):
        self.calls.append(task_id)
        if self.error:
            raise self.error
        blockers = self.blocking.get(task_id, [])
        return CompletionCheck(can_complete=not blockers, blocking_tasks=blockers)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Transition graph
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_todo_to_in_progress_is_allowed(wall_clock):
    validator = WorkflowValidator(default_rule_set(clock=wall_clock))
    result = validate(validator, Task(id="t1", status=TaskStatus.TODO), "in_progress")
    assert result
    assert result.ok
    assert result.reason is None


@pytest.mark.parametrize("priority", list(TaskPriority))
@pytest.mark.parametrize("labels", [set(), {"bug"}, {"feature"}, {"client", "urgent"}])
def test_todo_to_done_is_always_rejected(priority, labels, wall_clock):
    validator = WorkflowValidator(default_rule_set(clock=wall_clock), store=StubStore())
    task = Task(
        id="t1",
        status=TaskStatus.TODO,
        priority=priority,
        labels=labels,
        description="verified and tested",
        completion_percentage=100,
        updated_at=wall_clock() - timedelta(days=1),
    )
    result = validate(validator, task, TaskStatus.DONE)
    assert not result
    assert result.rule_id == TRANSITION_RULE_ID
    assert result.reason == "Cannot move from todo to done"


def test_graph_edges_match_board_workflow():
    rules = WorkflowRuleSet()
    expected = {
        ("todo", "in_progress"),
        ("in_progress", "review"),
        ("in_progress", "todo"),
        ("review", "done"),
        ("review", "in_progress"),
        ("done", "review"),
    }
    for src, dst in itertools.product(TaskStatus, TaskStatus):
        assert rules.can_transition(src, dst) == ((src.value, dst.value) in expected)


def test_rule_set_is_read_only():
    rules = WorkflowRuleSet(DEFAULT_STATUS_TRANSITIONS)
    with pytest.raises(TypeError):
        rules.status_transitions[TaskStatus.TODO] = frozenset({TaskStatus.DONE})


def test_unknown_status_is_rejected_not_raised():
    validator = WorkflowValidator(WorkflowRuleSet())
    result = validate(validator, Task(id="t1"), "archived")
    assert not result
    assert result.rule_id == TRANSITION_RULE_ID


def test_validation_does_not_mutate_task(wall_clock):
    validator = WorkflowValidator(default_rule_set(clock=wall_clock))
    task = Task(id="t1", status=TaskStatus.IN_PROGRESS, labels={"feature"})
    before = task.copy()
    validate(validator, task, "review")
    validate(validator, task, "done")
    assert task == before


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Rules
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_high_priority_needs_review_dwell(wall_clock):
    validator = WorkflowValidator(default_rule_set(clock=wall_clock))
    task = Task(
        id="t1",
        status=TaskStatus.REVIEW,
        priority=TaskPriority.HIGH,
        updated_at=wall_clock(),
    )
    result = validate(validator, task, "done")
    assert not result
    assert result.rule_id == "review-approval"
    assert result.reason == (
        "High priority tasks require approval before completion (5 min review time)"
    )

    wall_clock.advance(timedelta(minutes=4, seconds=59))
    assert not validate(validator, task, "done")

    wall_clock.advance(timedelta(seconds=1))
    assert validate(validator, task, "done")


def test_dwell_rule_accepts_naive_timestamps(wall_clock):
    validator = WorkflowValidator(default_rule_set(clock=wall_clock))
    task = Task(
        id="t1",
        status=TaskStatus.REVIEW,
        priority=TaskPriority.HIGH,
        updated_at=wall_clock().replace(tzinfo=None),
    )
    result = validate(validator, task, "done")
    assert result.rule_id == "review-approval"

    wall_clock.advance(timedelta(minutes=5))
    assert validate(validator, task, "done")


def test_dwell_only_applies_to_high_priority(wall_clock):
    validator = WorkflowValidator(default_rule_set(clock=wall_clock))
    task = Task(id="t1", status=TaskStatus.REVIEW, priority=TaskPriority.URGENT,
                updated_at=wall_clock())
    assert validate(validator, task, "done")


def test_bug_requires_verification(wall_clock):
    validator = WorkflowValidator(default_rule_set(clock=wall_clock))
    task = Task(id="t1", status=TaskStatus.REVIEW, labels={"bug"}, description="fixed it")
    result = validate(validator, task, "done")
    assert result.rule_id == "bug-fix-verification"

    assert validate(validator, task.with_changes({"description": "Fix Verified on bench"}), "done")
    assert validate(validator, task.with_changes({"completion_percentage": 100}), "done")


def test_urgent_client_task_must_be_prioritized(wall_clock):
    validator = WorkflowValidator(default_rule_set(clock=wall_clock))
    task = Task(id="t1", status=TaskStatus.IN_PROGRESS, labels={"client", "urgent"},
                priority=TaskPriority.LOW)
    result = validate(validator, task, "todo")
    assert result.rule_id == "client-task-priority"
    assert result.reason == "Urgent client tasks must be set to high priority"

    assert validate(validator, task.with_changes({"priority": "urgent"}), "todo")


def test_feature_must_pass_review():
    # The stock graph already forbids in_progress → done; widen it to reach the rule.
    graph = dict(DEFAULT_STATUS_TRANSITIONS)
    graph[TaskStatus.IN_PROGRESS] = graph[TaskStatus.IN_PROGRESS] | {TaskStatus.DONE}
    stock = default_rule_set()
    validator = WorkflowValidator(WorkflowRuleSet(graph, stock.rules))

    task = Task(id="t1", status=TaskStatus.IN_PROGRESS, labels={"deployment"})
    result = validate(validator, task, "done")
    assert result.rule_id == "deployment-review"
    assert validate(validator, Task(id="t2", status=TaskStatus.IN_PROGRESS), "done")


def test_first_failing_rule_wins():
    seen = []

    def failing(rule_id):
        def predicate(task, proposed):
            seen.append(rule_id)
            return False
        return predicate

    rules = WorkflowRuleSet(rules=[
        WorkflowRule("passes", lambda t, s: True, "never"),
        WorkflowRule("first", failing("first"), "first failed"),
        WorkflowRule("second", failing("second"), "second failed"),
    ])
    result = validate(WorkflowValidator(rules), Task(id="t1"), "in_progress")
    assert result == ValidationResult.reject("first", "first failed")
    assert seen == ["first"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Dependency gate
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_blocking_tasks_prevent_completion():
    blockers = [Task(id="b1", title="Order reagents"), Task(id="b2", title="Book centrifuge")]
    store = StubStore(blocking={"t1": blockers})
    validator = WorkflowValidator(WorkflowRuleSet(), store=store)

    result = validate(validator, Task(id="t1", title="Run assay", status=TaskStatus.REVIEW), "done")
    assert not result
    assert result.rule_id == DEPENDENCY_RULE_ID
    assert "\"Order reagents\"" in result.reason
    assert "\"Book centrifuge\"" in result.reason


def test_dependency_gate_runs_before_rules():
    store = StubStore(blocking={"t1": [Task(id="b1", title="Blocker")]})
    rules = WorkflowRuleSet(rules=[WorkflowRule("always", lambda t, s: False, "rule failed")])
    result = validate(WorkflowValidator(rules, store=store),
                      Task(id="t1", status=TaskStatus.REVIEW), "done")
    assert result.rule_id == DEPENDENCY_RULE_ID


def test_dependency_gate_only_for_done():
    store = StubStore(blocking={"t1": [Task(id="b1")]})
    validator = WorkflowValidator(WorkflowRuleSet(), store=store)
    assert validate(validator, Task(id="t1", status=TaskStatus.REVIEW), "in_progress")
    assert store.calls == []


def test_dependency_check_failure_is_a_rejection():
    store = StubStore(error=ConnectionError("store offline"))
    validator = WorkflowValidator(WorkflowRuleSet(), store=store)
    result = validate(validator, Task(id="t1", status=TaskStatus.REVIEW), "done")
    assert not result
    assert result.rule_id == DEPENDENCY_CHECK_FAILED_ID
    assert "store offline" in result.reason


def test_validate_bulk_reports_each_task():
    validator = WorkflowValidator(WorkflowRuleSet())
    tasks = [
        Task(id="a", status=TaskStatus.TODO),
        Task(id="b", status=TaskStatus.REVIEW),
    ]
    results = asyncio.run(validator.validate_bulk(tasks, "in_progress"))
    assert results["a"].ok
    assert results["b"].ok

    results = asyncio.run(validator.validate_bulk(tasks, "done"))
    assert not results["a"].ok
    assert results["b"].ok
