"""Workspace provisioning for task attempts.

Each task gets a container directory ``WORKSPACES_DIR/<task_id>``. For a
sequential task the container holds a symlink to the project's main checkout,
where the task branch is checked out; the checkout is shared, so the project
lock must be held. A parallel task gets its own git worktree inside the
container and never touches the lock.
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path

from trunkq import locks
from trunkq.db import (
    ProjectRow,
    TaskRow,
    get_project,
    get_project_base_branch,
    get_task,
    set_task_workspace,
    set_task_workspace_state,
)
from trunkq.errors import WorkspaceConflict
from trunkq.git_ops import (
    branch_exists,
    checkout,
    create_branch,
    create_worktree,
    delete_branch,
    has_uncommitted_changes,
    remove_worktree,
    rev_parse,
    task_branch_name,
)
from trunkq.paths import WORKSPACES_DIR
from trunkq.project_config import DEFAULT_CONFIG, ProjectConfig

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Workspace:
    task_id: str
    execution_mode: str
    task_branch: str
    target_branch: str
    branch_point: str
    # Container directory recorded on the task.
    workspace_dir: str
    # Where the agent runs: the main checkout or the task's worktree.
    work_dir: str


def container_dir(task_id: str) -> Path:
    return WORKSPACES_DIR / task_id


def resolve_target_branch(conn: sqlite3.Connection, task: TaskRow) -> str:
    return task["target_branch"] or get_project_base_branch(conn, task["project_id"])


def allocate_branch_name(repo_dir: str, task_id: str, title: str, budget: int) -> str:
    """First free ``trunkq/<slug>-<id>[-N]`` name, trying at most ``budget`` names."""
    for suffix in range(1, budget + 1):
        candidate = task_branch_name(task_id, title, suffix)
        if not branch_exists(repo_dir, candidate):
            return candidate
    raise WorkspaceConflict(
        f"No free branch name for task {task_id} after {budget} candidates"
    )


def _load_context(conn: sqlite3.Connection, task_id: str) -> tuple[TaskRow, ProjectRow]:
    task = get_task(conn, task_id)
    if not task:
        raise ValueError(f"Task '{task_id}' not found.")
    project = get_project(conn, task["project_id"])
    if not project:
        raise ValueError(f"Project '{task['project_id']}' not found.")
    return task, project


def _link_main_checkout(task_id: str, repo_dir: str) -> Path:
    container = container_dir(task_id)
    container.mkdir(parents=True, exist_ok=True, mode=0o700)
    link = container / Path(repo_dir).name
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(Path(repo_dir).resolve(), target_is_directory=True)
    return container


def _prepare_sequential(
    conn: sqlite3.Connection, task: TaskRow, project: ProjectRow, config: ProjectConfig
) -> Workspace:
    repo_dir = project["dir"]
    if has_uncommitted_changes(repo_dir):
        raise WorkspaceConflict(
            f"Main checkout {repo_dir} has uncommitted changes; commit or stash them first"
        )
    target = resolve_target_branch(conn, task)
    branch = allocate_branch_name(repo_dir, task["id"], task["title"], config.branch_attempts)
    branch_point = rev_parse(repo_dir, target)
    create_branch(repo_dir, branch, branch_point)
    try:
        checkout(repo_dir, branch)
    except RuntimeError:
        # The retry reuses the same name.
        delete_branch(repo_dir, branch)
        raise
    container = _link_main_checkout(task["id"], repo_dir)
    return Workspace(
        task_id=task["id"],
        execution_mode="sequential",
        task_branch=branch,
        target_branch=target,
        branch_point=branch_point,
        workspace_dir=str(container),
        work_dir=repo_dir,
    )


def _prepare_parallel(
    conn: sqlite3.Connection, task: TaskRow, project: ProjectRow, config: ProjectConfig
) -> Workspace:
    repo_dir = project["dir"]
    target = resolve_target_branch(conn, task)
    branch = allocate_branch_name(repo_dir, task["id"], task["title"], config.branch_attempts)
    branch_point = rev_parse(repo_dir, target)
    container = container_dir(task["id"])
    worktree = container / Path(repo_dir).name
    if worktree.exists() or worktree.is_symlink():
        # Leftover from a previous attempt; its branch stays for inspection.
        _remove_container_entry(repo_dir, worktree)
    create_worktree(repo_dir, str(worktree), branch, branch_point)
    return Workspace(
        task_id=task["id"],
        execution_mode="parallel",
        task_branch=branch,
        target_branch=target,
        branch_point=branch_point,
        workspace_dir=str(container),
        work_dir=str(worktree),
    )


def _prepare_with_retries(
    conn: sqlite3.Connection, task: TaskRow, project: ProjectRow, config: ProjectConfig
) -> Workspace:
    prepare = _prepare_sequential if task["execution_mode"] == "sequential" else _prepare_parallel
    last_error: WorkspaceConflict | None = None
    for attempt in range(config.workspace_retries + 1):
        try:
            return prepare(conn, task, project, config)
        except WorkspaceConflict as exc:
            last_error = exc
        except RuntimeError as exc:
            last_error = WorkspaceConflict(str(exc))
        if attempt < config.workspace_retries:
            log.warning(
                "Workspace for task %s not ready (%s), retrying (%d/%d)",
                task["id"],
                last_error,
                attempt + 1,
                config.workspace_retries,
            )
            time.sleep(config.retry_backoff)
    assert last_error is not None
    raise last_error


def provision(
    conn: sqlite3.Connection,
    task_id: str,
    *,
    config: ProjectConfig = DEFAULT_CONFIG,
) -> Workspace | None:
    """Prepare the branch and working directory for the next attempt of ``task_id``.

    Sequential tasks first take the project lock without blocking; when another
    task holds it this returns None and the task stays queued. On success the
    lock stays held for the attempt. When preparation fails after the bounded
    retries, the workspace is marked failed, the lock is released and
    WorkspaceConflict is raised.
    """
    task, project = _load_context(conn, task_id)
    sequential = task["execution_mode"] == "sequential"
    if sequential and not locks.try_acquire(conn, project["id"], task_id):
        holder = locks.get_holder(conn, project["id"])
        log.info(
            "Project %s is locked by task %s; task %s stays queued",
            project["id"],
            holder["task_id"] if holder else "?",
            task_id,
        )
        return None

    set_task_workspace_state(conn, task_id, "preparing")
    try:
        workspace = _prepare_with_retries(conn, task, project, config)
    except WorkspaceConflict as exc:
        set_task_workspace_state(conn, task_id, "failed")
        if sequential:
            locks.release(conn, project["id"], task_id)
        log.error("Workspace provisioning failed for task %s: %s", task_id, exc)
        raise

    set_task_workspace(
        conn,
        task_id,
        task_branch=workspace.task_branch,
        workspace_dir=workspace.workspace_dir,
        workspace_state="ready",
    )
    log.info(
        "Workspace ready for task %s on branch %s (%s)",
        task_id,
        workspace.task_branch,
        workspace.execution_mode,
    )
    return workspace


def _remove_container_entry(repo_dir: str, entry: Path) -> None:
    if entry.is_symlink():
        entry.unlink()
    elif entry.is_dir():
        remove_worktree(repo_dir, str(entry))
        if entry.exists():
            shutil.rmtree(entry, ignore_errors=True)


def cleanup_workspace(conn: sqlite3.Connection, task_id: str) -> bool:
    """Remove a task's container directory and any worktree in it.

    Branches are kept. Returns False when there was nothing to remove.
    """
    task, project = _load_context(conn, task_id)
    container = container_dir(task_id)
    if not container.exists():
        return False
    for entry in container.iterdir():
        _remove_container_entry(project["dir"], entry)
    shutil.rmtree(container, ignore_errors=True)
    set_task_workspace(
        conn,
        task_id,
        task_branch=task["task_branch"],
        workspace_dir=None,
        workspace_state="uninitialized",
    )
    log.info("Cleaned up workspace for task %s", task_id)
    return True
