"""Queue advancement after an attempt reaches a terminal outcome.

Sequential successes are merged, marked done and followed by the next pending
task. Failures halt the project's queue until an operator resumes it.
"""

from __future__ import annotations

import logging
import sqlite3

from trunkq import locks
from trunkq.db import (
    TASK_TERMINAL_STATUSES,
    AttemptRow,
    TaskRow,
    clear_project_queue_halt,
    count_active_sequential_tasks,
    get_attempt,
    get_latest_attempt,
    get_project,
    get_queue_state,
    get_task,
    halt_project_queue,
    requeue_failed_task,
    set_task_failure,
    update_task_status,
)
from trunkq.errors import (
    ERROR_AGENT_EXECUTION,
    ERROR_MERGE_CONFLICT,
    MergeConflict,
    WorkspaceConflict,
)
from trunkq.git_ops import checkout, current_branch
from trunkq.merge import has_changes, merge_attempt
from trunkq.project_config import ProjectConfig
from trunkq.queue import publish_event
from trunkq.queue_manager import dequeue, get_next
from trunkq.workspace import resolve_target_branch

log = logging.getLogger(__name__)


def _project_name(conn: sqlite3.Connection, project_id: str) -> str:
    project = get_project(conn, project_id)
    return project["name"] if project else ""


def _halt(
    conn: sqlite3.Connection,
    task: TaskRow,
    error_kind: str,
    reason: str | None,
    attempt_id: str | None = None,
) -> dict:
    """Mark ``task`` failed, halt its queue and free the project lock."""
    project_id = task["project_id"]
    set_task_failure(conn, task["id"], error_kind, reason)
    update_task_status(conn, task["id"], "inreview")
    halt_project_queue(conn, project_id, task["id"], f"{error_kind}: {reason or ''}".strip())
    locks.release(conn, project_id, task["id"], attempt_id)
    log.error("Queue of project %s halted by task %s (%s)", project_id, task["id"], error_kind)
    project_name = _project_name(conn, project_id)
    publish_event("task:status", task["id"], "inreview", project=project_name)
    publish_event(
        "queue:halted",
        project_id,
        "halted",
        project=project_name,
        extra={"task_id": task["id"], "error_kind": error_kind},
    )
    return {
        "task_id": task["id"],
        "status": "inreview",
        "error_kind": error_kind,
        "halted": True,
        "next_attempt": None,
    }


def _finish_parallel(
    conn: sqlite3.Connection,
    task: TaskRow,
    outcome: str,
    error_kind: str | None,
    reason: str | None,
) -> dict:
    status = "cancelled" if outcome == "cancelled" else "inreview"
    if error_kind:
        set_task_failure(conn, task["id"], error_kind, reason)
    update_task_status(conn, task["id"], status)
    log.info("Parallel task %s finished: %s", task["id"], outcome)
    publish_event(
        "task:status", task["id"], status, project=_project_name(conn, task["project_id"])
    )
    return {
        "task_id": task["id"],
        "status": status,
        "error_kind": error_kind,
        "halted": False,
        "next_attempt": None,
    }


def _restore_target_checkout(conn: sqlite3.Connection, task: TaskRow) -> None:
    project = get_project(conn, task["project_id"])
    if not project:
        return
    target = resolve_target_branch(conn, task)
    try:
        if current_branch(project["dir"]) != target:
            checkout(project["dir"], target)
    except RuntimeError as exc:
        log.warning("Could not switch %s back to %s: %s", project["dir"], target, exc)


def on_task_terminal(
    conn: sqlite3.Connection,
    task_id: str,
    outcome: str,
    error_kind: str | None = None,
    *,
    attempt_id: str | None = None,
    reason: str | None = None,
) -> dict:
    """Handle the terminal notification for the latest attempt of ``task_id``.

    Returns a summary dict with the task's new status, whether the queue
    halted and the next attempt started, if any.
    """
    task = get_task(conn, task_id)
    if not task:
        raise ValueError(f"Task '{task_id}' not found.")
    if task["status"] in TASK_TERMINAL_STATUSES:
        raise ValueError(f"Task '{task_id}' is already {task['status']}.")
    attempt: AttemptRow | None = (
        get_attempt(conn, attempt_id) if attempt_id else get_latest_attempt(conn, task_id)
    )

    if task["execution_mode"] != "sequential":
        return _finish_parallel(conn, task, outcome, error_kind, reason)

    # Only the task that owns the checkout can report for it.
    if task["status"] != "inprogress":
        raise ValueError(f"Task '{task_id}' is {task['status']}, not in progress.")
    owner = attempt["id"] if attempt else None

    if outcome == "failed":
        return _halt(conn, task, error_kind or ERROR_AGENT_EXECUTION, reason, owner)

    if attempt and (outcome == "succeeded" or has_changes(attempt)):
        try:
            merge_attempt(conn, task, attempt)
        except MergeConflict as exc:
            return _halt(
                conn,
                task,
                ERROR_MERGE_CONFLICT,
                f"{exc}: {', '.join(exc.conflicting_files)}",
                owner,
            )
        except RuntimeError as exc:
            return _halt(conn, task, ERROR_MERGE_CONFLICT, f"Merge failed: {exc}", owner)
    else:
        _restore_target_checkout(conn, task)

    status = "done" if outcome == "succeeded" else "cancelled"
    update_task_status(conn, task_id, status)
    locks.release(conn, task["project_id"], task_id, owner)
    log.info("Sequential task %s is %s", task_id, status)
    publish_event(
        "task:status", task_id, status, project=_project_name(conn, task["project_id"])
    )

    next_attempt = advance(conn, task["project_id"])
    return {
        "task_id": task_id,
        "status": status,
        "error_kind": None,
        "halted": False,
        "next_attempt": next_attempt["id"] if next_attempt else None,
    }


def advance(
    conn: sqlite3.Connection, project_id: str, *, config: ProjectConfig | None = None
) -> AttemptRow | None:
    """Start the head of the queue if nothing blocks it.

    Nothing starts while the queue is halted, the project lock is held or a
    sequential task is already in progress.
    """
    if get_queue_state(conn, project_id)["halted"]:
        log.info("Queue of project %s is halted; not advancing", project_id)
        return None
    holder = locks.get_holder(conn, project_id)
    if holder is not None:
        log.info("Project %s lock held by task %s; not advancing", project_id, holder["task_id"])
        return None
    if count_active_sequential_tasks(conn, project_id) > 0:
        return None
    head = get_next(conn, project_id)
    if head is None:
        log.info("Queue of project %s is empty", project_id)
        return None

    from trunkq.supervisor import start_attempt

    try:
        return start_attempt(conn, head["id"], config=config)
    except WorkspaceConflict as exc:
        log.error("Could not start task %s: %s", head["id"], exc)
        return None


def resume(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    requeue_failed: bool = True,
    config: ProjectConfig | None = None,
) -> dict:
    """Clear a halted queue and advance it.

    With ``requeue_failed`` the task that halted the queue goes back to todo at
    its old position and is retried on a fresh branch; otherwise it leaves the
    queue and stays in review.
    """
    state = get_queue_state(conn, project_id)
    halted_task_id = state["halted_task_id"]
    requeued = None
    removed = None
    if state["halted"] and halted_task_id:
        failed = get_task(conn, halted_task_id)
        if failed and failed["status"] == "inreview" and failed["execution_mode"] == "sequential":
            if requeue_failed:
                if requeue_failed_task(conn, halted_task_id):
                    requeued = halted_task_id
            else:
                dequeue(conn, halted_task_id)
                removed = halted_task_id

    was_halted = clear_project_queue_halt(conn, project_id)
    if was_halted:
        log.info("Queue of project %s resumed", project_id)
        publish_event(
            "queue:resumed", project_id, "resumed", project=_project_name(conn, project_id)
        )

    next_attempt = advance(conn, project_id, config=config)
    return {
        "project_id": project_id,
        "resumed": was_halted,
        "requeued_task_id": requeued,
        "dequeued_task_id": removed,
        "next_attempt": next_attempt["id"] if next_attempt else None,
    }
