"""
Optimistic update tracking.

The UI applies a mutation locally, registers it here under a tracking id,
then calls the store. Exactly one of confirm_update / rollback_update is
expected per id; whichever comes second (or any call after expiry) is a
silent no-op.

Expiry bounds memory for updates nobody resolves. By default it only drops
bookkeeping; with rollback_on_expiry it forces a rollback so on_error can
restore the UI.
"""
import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from .schema import PendingUpdate, snapshot

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECS = 30.0


class PendingUpdateExpired(Exception):
    """Passed to on_error when an update is rolled back by expiry."""

    def __init__(self, tracking_id: str, timeout: float):
        super().__init__(f"Update {tracking_id} not confirmed within {timeout:g}s")
        self.tracking_id = tracking_id
        self.timeout = timeout


def generate_tracking_id() -> str:
    """Sortable, session-unique id (ms-precision timestamp + random hex)."""
    ts = int(time.time() * 1000)
    rand = uuid.uuid4().hex[:8]
    return f"update-{ts}-{rand}"


class OptimisticUpdateTracker:
    """Pending local mutations keyed by tracking id."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECS,
        rollback_on_expiry: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.rollback_on_expiry = rollback_on_expiry
        self._clock = clock
        self._pending: Dict[str, PendingUpdate] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._pending)

    generate_tracking_id = staticmethod(generate_tracking_id)

    def track_update(
        self,
        tracking_id: str,
        original_data: Any,
        desired_data: Any,
        on_success: Optional[Callable[[Any], Any]] = None,
        on_error: Optional[Callable[[BaseException, Any], Any]] = None,
    ) -> PendingUpdate:
        """Register a speculative update and schedule its expiry."""
        self._cancel_timer(tracking_id)
        update = PendingUpdate(
            tracking_id=tracking_id,
            original_data=snapshot(original_data),
            desired_data=snapshot(desired_data),
            timestamp=self._clock(),
            on_success=on_success,
            on_error=on_error,
        )
        self._pending[tracking_id] = update
        self._schedule_expiry(tracking_id)
        return update

    def confirm_update(self, tracking_id: str, server_data: Any = None) -> bool:
        """Server accepted the update. Returns False if the id was unknown."""
        update = self._pending.get(tracking_id)
        if update is None:
            logger.debug(f"confirm_update: {tracking_id} not pending")
            return False

        try:
            if update.on_success:
                update.on_success(server_data)
        except Exception:
            logger.exception(f"on_success callback failed for {tracking_id}")
        finally:
            self._cleanup(tracking_id)
        return True

    def rollback_update(self, tracking_id: str, error: Optional[BaseException] = None) -> Any:
        """
        Server rejected the update. Returns the original snapshot so the
        caller can restore it, or None if there is nothing to restore.
        """
        update = self._pending.get(tracking_id)
        if update is None:
            return None

        logger.info(f"Rolling back {tracking_id}: {error}")
        try:
            if update.on_error:
                update.on_error(error, snapshot(update.original_data))
        except Exception:
            logger.exception(f"on_error callback failed for {tracking_id}")
        finally:
            self._cleanup(tracking_id)
        return snapshot(update.original_data)

    def is_pending(self, tracking_id: str) -> bool:
        return tracking_id in self._pending

    def get_original_data(self, tracking_id: str) -> Any:
        update = self._pending.get(tracking_id)
        return snapshot(update.original_data) if update else None

    def get_pending_updates(self) -> List[Dict[str, Any]]:
        """Debug view of everything still pending."""
        now = self._clock()
        return [
            {
                "id": tid,
                "original_data": snapshot(u.original_data),
                "desired_data": snapshot(u.desired_data),
                "timestamp": u.timestamp,
                "age": u.age(now),
            }
            for tid, u in self._pending.items()
        ]

    def sweep(self) -> List[str]:
        """Expire every entry older than the timeout. Returns the expired ids."""
        now = self._clock()
        stale = [tid for tid, u in self._pending.items() if u.age(now) >= self.timeout]
        for tid in stale:
            self.expire(tid)
        return stale

    def expire(self, tracking_id: str) -> None:
        """Drop (or roll back, if configured) an abandoned update."""
        if tracking_id not in self._pending:
            self._timers.pop(tracking_id, None)
            return
        if self.rollback_on_expiry:
            self.rollback_update(tracking_id, PendingUpdateExpired(tracking_id, self.timeout))
        else:
            logger.debug(f"Expired pending update {tracking_id}")
            self._cleanup(tracking_id)

    def clear_all(self) -> None:
        """Forget every pending update and cancel their timers."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._pending.clear()

    # ── internals ────────────────────────────────────────────

    def _schedule_expiry(self, tracking_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: rely on sweep()
        self._timers[tracking_id] = loop.call_later(self.timeout, self.expire, tracking_id)

    def _cancel_timer(self, tracking_id: str) -> None:
        handle = self._timers.pop(tracking_id, None)
        if handle is not None:
            handle.cancel()

    def _cleanup(self, tracking_id: str) -> None:
        self._pending.pop(tracking_id, None)
        self._cancel_timer(tracking_id)
