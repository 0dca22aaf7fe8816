"""
Service wiring: build the core once at application start, pass it to
whatever drives mutations, shut it down explicitly.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .config import Config, configure_logging
from .events import NotificationBus
from .history import UndoRedoManager
from .optimistic import OptimisticUpdateTracker
from .orchestrator import TaskMutationOrchestrator
from .store import SqliteTaskStore
from .workflow import WorkflowRuleSet, WorkflowValidator, default_rule_set

logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    config: Config
    store: object
    validator: WorkflowValidator
    tracker: OptimisticUpdateTracker
    history: UndoRedoManager
    notifier: NotificationBus
    orchestrator: TaskMutationOrchestrator

    def shutdown(self) -> None:
        """Drop pending updates (cancelling their timers) and history."""
        pending = len(self.tracker)
        self.tracker.clear_all()
        self.history.clear()
        logger.info(f"Core shut down ({pending} pending updates discarded)")


def build_services(
    config: Optional[Config] = None,
    store=None,
    rule_set: Optional[WorkflowRuleSet] = None,
    setup_logging: bool = False,
) -> CoreServices:
    """Construct every core service from config. `store` defaults to SQLite at config.db_path."""
    config = config or Config.load()
    if setup_logging:
        configure_logging(config.log_level)

    if store is None:
        store = SqliteTaskStore(config.db_path)
    if rule_set is None:
        rule_set = default_rule_set(review_dwell=timedelta(seconds=config.review_dwell_secs))

    validator = WorkflowValidator(rule_set, store=store)
    tracker = OptimisticUpdateTracker(
        timeout=config.pending_timeout_secs,
        rollback_on_expiry=config.rollback_on_expiry,
    )
    history = UndoRedoManager(max_stack_size=config.max_undo_stack)
    notifier = NotificationBus()
    orchestrator = TaskMutationOrchestrator(store, validator, tracker, history, notifier)

    logger.debug(f"Core services built (store={type(store).__name__})")
    return CoreServices(
        config=config,
        store=store,
        validator=validator,
        tracker=tracker,
        history=history,
        notifier=notifier,
        orchestrator=orchestrator,
    )
