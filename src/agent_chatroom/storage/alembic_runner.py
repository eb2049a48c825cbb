"""Run the chatroom schema migrations without the alembic CLI."""

from __future__ import annotations

import threading
from pathlib import Path

from alembic import command
from alembic.config import Config

_PROJECT_ROOT = Path(__file__).resolve().parents[3]
# Alembic's env module is process-global; serialize concurrent upgrades.
_MIGRATION_LOCK = threading.Lock()


def alembic_config(db_path: Path) -> Config:
    """Alembic config bound to the project's migration scripts and ``db_path``."""

    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring ``db_path`` to the latest schema, creating the file and its directory."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    with _MIGRATION_LOCK:
        command.upgrade(alembic_config(db_path), "head")
