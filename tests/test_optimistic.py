"""Tests for the optimistic update tracker."""
import asyncio
import re

import pytest

from kanban_sync.optimistic import (
    OptimisticUpdateTracker,
    PendingUpdateExpired,
    generate_tracking_id,
)


def test_tracking_ids_are_unique():
    ids = {generate_tracking_id() for _ in range(500)}
    assert len(ids) == 500
    assert all(re.match(r"^update-\d+-[0-9a-f]{8}$", i) for i in ids)


def test_confirm_calls_on_success_and_clears():
    tracker = OptimisticUpdateTracker()
    received = []
    server = {"status": "in_progress", "updated_at": "2024-06-01T12:00:00Z"}

    tracker.track_update(
        "tr1", {"status": "todo"}, {"status": "in_progress"},
        on_success=received.append,
    )
    assert tracker.is_pending("tr1")

    assert tracker.confirm_update("tr1", server) is True
    assert received == [server]
    assert not tracker.is_pending("tr1")
    assert len(tracker) == 0


def test_confirm_unknown_id_is_noop():
    tracker = OptimisticUpdateTracker()
    assert tracker.confirm_update("missing", {"x": 1}) is False


def test_rollback_returns_original_once():
    tracker = OptimisticUpdateTracker()
    errors = []
    original = {"status": "todo", "labels": ["a"]}
    tracker.track_update(
        "tr1", original, {"status": "in_progress"},
        on_error=lambda err, orig: errors.append((err, orig)),
    )

    failure = RuntimeError("server said no")
    restored = tracker.rollback_update("tr1", failure)
    assert restored == original
    assert errors == [(failure, original)]

    assert tracker.rollback_update("tr1", failure) is None
    assert len(errors) == 1


def test_original_snapshot_is_isolated_from_caller():
    tracker = OptimisticUpdateTracker()
    original = {"labels": ["a"]}
    tracker.track_update("tr1", original, {"labels": ["a", "b"]})
    original["labels"].append("mutated")

    assert tracker.get_original_data("tr1") == {"labels": ["a"]}
    returned = tracker.get_original_data("tr1")
    returned["labels"].append("again")
    assert tracker.rollback_update("tr1") == {"labels": ["a"]}


def test_confirm_then_rollback_second_call_is_noop():
    tracker = OptimisticUpdateTracker()
    tracker.track_update("tr1", {"v": 1}, {"v": 2})
    tracker.confirm_update("tr1", {"v": 2})
    assert tracker.rollback_update("tr1", RuntimeError("late")) is None


def test_callback_failure_still_removes_entry():
    tracker = OptimisticUpdateTracker()

    def boom(_):
        raise ValueError("ui crashed")

    tracker.track_update("tr1", {}, {}, on_success=boom)
    tracker.confirm_update("tr1", {})
    assert not tracker.is_pending("tr1")


def test_get_original_data_unknown_is_none():
    assert OptimisticUpdateTracker().get_original_data("nope") is None


# ── Expiry ───────────────────────────────────────────────


def test_sweep_expires_old_entries(monotonic_clock):
    tracker = OptimisticUpdateTracker(timeout=30.0, clock=monotonic_clock)
    tracker.track_update("old", {"v": 1}, {"v": 2})
    monotonic_clock.advance(20)
    tracker.track_update("young", {"v": 1}, {"v": 3})

    monotonic_clock.advance(10)
    assert tracker.sweep() == ["old"]
    assert not tracker.is_pending("old")
    assert tracker.is_pending("young")

    # Late server answers on an expired id are silent no-ops
    assert tracker.confirm_update("old", {"v": 2}) is False
    assert tracker.rollback_update("old", RuntimeError("late")) is None


def test_expiry_without_rollback_does_not_call_on_error(monotonic_clock):
    tracker = OptimisticUpdateTracker(timeout=5, clock=monotonic_clock)
    calls = []
    tracker.track_update("tr1", {"v": 1}, {"v": 2}, on_error=lambda e, o: calls.append(o))
    monotonic_clock.advance(5)
    tracker.sweep()
    assert calls == []


def test_expiry_with_rollback_restores_original(monotonic_clock):
    tracker = OptimisticUpdateTracker(timeout=5, rollback_on_expiry=True, clock=monotonic_clock)
    calls = []
    tracker.track_update("tr1", {"v": 1}, {"v": 2}, on_error=lambda e, o: calls.append((e, o)))
    monotonic_clock.advance(6)
    tracker.sweep()

    assert len(calls) == 1
    error, original = calls[0]
    assert isinstance(error, PendingUpdateExpired)
    assert error.tracking_id == "tr1"
    assert original == {"v": 1}
    assert not tracker.is_pending("tr1")


def test_timer_expires_on_running_loop():
    async def scenario():
        tracker = OptimisticUpdateTracker(timeout=0.01)
        tracker.track_update("tr1", {"v": 1}, {"v": 2})
        assert tracker.is_pending("tr1")
        await asyncio.sleep(0.1)
        return tracker

    tracker = asyncio.run(scenario())
    assert not tracker.is_pending("tr1")


def test_confirm_cancels_timer():
    async def scenario():
        tracker = OptimisticUpdateTracker(timeout=0.05, rollback_on_expiry=True)
        calls = []
        tracker.track_update("tr1", {"v": 1}, {"v": 2}, on_error=lambda e, o: calls.append(e))
        tracker.confirm_update("tr1", {"v": 2})
        await asyncio.sleep(0.1)
        return calls

    assert asyncio.run(scenario()) == []


def test_pending_listing_and_clear_all(monotonic_clock):
    tracker = OptimisticUpdateTracker(clock=monotonic_clock)
    tracker.track_update("a", {"v": 1}, {"v": 2})
    monotonic_clock.advance(3)
    listing = tracker.get_pending_updates()
    assert listing[0]["id"] == "a"
    assert listing[0]["age"] == pytest.approx(3)
    assert listing[0]["desired_data"] == {"v": 2}

    tracker.clear_all()
    assert len(tracker) == 0
    assert not tracker.is_pending("a")
