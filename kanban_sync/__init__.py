# Kanban mutation core: validation, optimistic updates, and undo/redo
#
# Components:
#   schema.py       - Data model (Task, TaskStatus, ActionType, ChangeRecord, PendingUpdate)
#   workflow.py     - Status transition graph and declarative workflow rules
#   optimistic.py   - Pending local updates with confirm/rollback and expiry
#   history.py      - Bounded undo/redo stacks with per-action replay handlers
#   store.py        - Task Store contract and SQLite implementation
#   events.py       - Notification bus for user-facing messages
#   orchestrator.py - Runs each mutation through the pipeline above
#   services.py     - Builds and tears down the services
#   config.py       - YAML configuration and logging setup
