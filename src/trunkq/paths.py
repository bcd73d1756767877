"""Canonical filesystem paths for trunkq configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

TRUNKQ_CONFIG_DIR = Path.home() / ".config" / "trunkq"

_env_db = os.environ.get("TRUNKQ_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else TRUNKQ_CONFIG_DIR / "trunkq.db"

# Per-task workspace containers. Sequential containers alias the main checkout,
# parallel containers hold a dedicated git worktree.
_env_ws = os.environ.get("TRUNKQ_WORKSPACES_DIR")
WORKSPACES_DIR = Path(_env_ws).expanduser() if _env_ws else TRUNKQ_CONFIG_DIR / "workspaces"

LOG_DIR = TRUNKQ_CONFIG_DIR / "logs"
