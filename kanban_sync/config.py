# kanban-sync — configuration
# Override defaults via a YAML file (config.yaml next to this module, the
# path in $KANBAN_SYNC_CONFIG, or an explicit path) and $KANBAN_SYNC_DB.

import logging
import os
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

CONFIG_PATH = Path(__file__).parent / "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration values are out of range."""
    pass


@dataclass
class Config:
    """Runtime configuration for the mutation core."""

    # Undo/redo history
    max_undo_stack: int = 50

    # Optimistic updates
    pending_timeout_secs: float = 30.0
    rollback_on_expiry: bool = False   # True = expiry also restores the UI

    # Workflow rules
    review_dwell_secs: float = 300.0   # high-priority review → done wait

    # Task store
    db_path: str = "~/.local/share/kanban-sync/tasks.db"

    # Logging
    log_level: str = "INFO"

    def resolve_paths(self):
        """Apply environment overrides and expand ~."""
        env_db = os.environ.get("KANBAN_SYNC_DB")
        if env_db:
            self.db_path = env_db
        self.db_path = str(Path(self.db_path).expanduser())

    def validate(self):
        if self.max_undo_stack < 1:
            raise ConfigError(f"max_undo_stack must be >= 1, got {self.max_undo_stack}")
        if self.pending_timeout_secs <= 0:
            raise ConfigError(
                f"pending_timeout_secs must be positive, got {self.pending_timeout_secs}"
            )
        if self.review_dwell_secs < 0:
            raise ConfigError(f"review_dwell_secs must be >= 0, got {self.review_dwell_secs}")

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        if path is None:
            path = os.environ.get("KANBAN_SYNC_CONFIG")
        cfg_path = Path(path) if path else CONFIG_PATH
        known = {f.name for f in fields(cls)}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls(**{k: v for k, v in data.items() if k in known})
            except (yaml.YAMLError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
                cfg = cls()
        else:
            cfg = cls()
        cfg.resolve_paths()
        cfg.validate()
        return cfg


def configure_logging(level: str = "INFO") -> None:
    """Root logging setup for applications embedding the core."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [kanban-sync] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
