"""Per-project queue configuration.

Projects can tune the orchestrator in ``.trunkq/queue.toml`` (commit it, or
list ``.trunkq/`` in ``.gitignore``, so the main checkout stays clean)::

    [agent]
    command = "my-agent --non-interactive"
    timeout = 3600

    [queue]
    race_retries = 3
    workspace_retries = 1
    branch_attempts = 5
    retry_backoff = 0.05

Missing keys fall back to defaults. A malformed file is logged and ignored.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

CONFIG_RELATIVE_PATH = Path(".trunkq") / "queue.toml"


@dataclass(frozen=True)
class ProjectConfig:
    agent_command: str | None = None
    # Seconds; None or 0 means the agent may run indefinitely.
    agent_timeout: float | None = None
    race_retries: int = 3
    workspace_retries: int = 1
    branch_attempts: int = 5
    retry_backoff: float = 0.05


DEFAULT_CONFIG = ProjectConfig()


def _read_toml_file(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}


def _int_setting(section: dict[str, Any], key: str, default: int, *, minimum: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        log.warning("queue.toml: ignoring invalid %s=%r", key, value)
        return default
    return value


def _float_setting(section: dict[str, Any], key: str, default: float | None) -> float | None:
    value = section.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        log.warning("queue.toml: ignoring invalid %s=%r", key, value)
        return default
    return float(value)


def load_project_config(project_dir: str | None) -> ProjectConfig:
    """Load ``.trunkq/queue.toml`` from a project directory."""
    if not project_dir:
        return DEFAULT_CONFIG
    raw = _read_toml_file(Path(project_dir) / CONFIG_RELATIVE_PATH)
    if not raw:
        return DEFAULT_CONFIG

    agent = raw.get("agent", {})
    queue = raw.get("queue", {})
    if not isinstance(agent, dict) or not isinstance(queue, dict):
        log.warning("queue.toml: [agent] and [queue] must be tables")
        return DEFAULT_CONFIG

    command = agent.get("command")
    if command is not None and (not isinstance(command, str) or not command.strip()):
        log.warning("queue.toml: ignoring invalid agent command %r", command)
        command = None

    return ProjectConfig(
        agent_command=command.strip() if command else None,
        agent_timeout=_float_setting(agent, "timeout", DEFAULT_CONFIG.agent_timeout) or None,
        race_retries=_int_setting(queue, "race_retries", DEFAULT_CONFIG.race_retries, minimum=0),
        workspace_retries=_int_setting(
            queue, "workspace_retries", DEFAULT_CONFIG.workspace_retries, minimum=0
        ),
        branch_attempts=_int_setting(
            queue, "branch_attempts", DEFAULT_CONFIG.branch_attempts, minimum=1
        ),
        retry_backoff=_float_setting(queue, "retry_backoff", DEFAULT_CONFIG.retry_backoff)
        or 0.0,
    )


def resolve_agent_command(project: dict, config: ProjectConfig) -> str | None:
    """The project's stored agent command wins over the TOML default."""
    return project.get("agent_command") or config.agent_command
