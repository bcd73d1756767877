"""Ordering of sequential tasks within a project.

Positions are plain integers, unique per project but not dense. Every
mutation checks the project's queue version inside a ``BEGIN IMMEDIATE``
transaction and bumps it, so a writer working from stale state loses with
QueueRaceError instead of clobbering a concurrent change.
"""

from __future__ import annotations

import logging
import sqlite3
import time

from trunkq.db import (
    TASK_TERMINAL_STATUSES,
    TaskRow,
    get_queue_state,
    get_task,
    immediate_transaction,
    list_tasks,
)
from trunkq.errors import QueueRaceError
from trunkq.project_config import DEFAULT_CONFIG

log = logging.getLogger(__name__)


def _require_task(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    task = get_task(conn, task_id)
    if not task:
        raise ValueError(f"Task '{task_id}' not found.")
    return task


def _check_and_bump_version(conn: sqlite3.Connection, project_id: str, expected: int) -> None:
    """Must run inside an open write transaction."""
    cursor = conn.execute(
        "UPDATE project_queues SET version = version + 1, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE project_id = ? AND version = ?",
        (project_id, expected),
    )
    if cursor.rowcount == 0:
        raise QueueRaceError(
            f"Queue for project {project_id} changed concurrently (expected version {expected})"
        )


def _pending_snapshot(conn: sqlite3.Connection, project_id: str) -> list[tuple[str, int]]:
    rows = conn.execute(
        "SELECT id, queue_position FROM tasks WHERE project_id = ? "
        "AND execution_mode = 'sequential' AND status = 'todo' "
        "AND queue_position IS NOT NULL "
        "ORDER BY queue_position, created_at, rowid",
        (project_id,),
    ).fetchall()
    return [(row["id"], row["queue_position"]) for row in rows]


def get_queue(conn: sqlite3.Connection, project_id: str) -> list[TaskRow]:
    """Pending sequential tasks in execution order."""
    return list_tasks(
        conn,
        project_id,
        status="todo",
        execution_mode="sequential",
        queued_only=True,
        order_by_queue=True,
    )


def get_next(conn: sqlite3.Connection, project_id: str) -> TaskRow | None:
    queue = get_queue(conn, project_id)
    return queue[0] if queue else None


def list_sequential_tasks(conn: sqlite3.Connection, project_id: str) -> list[TaskRow]:
    """Every positioned sequential task, including in-progress and in-review ones."""
    return list_tasks(
        conn,
        project_id,
        execution_mode="sequential",
        queued_only=True,
        order_by_queue=True,
    )


def _enqueue_once(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    task = _require_task(conn, task_id)
    status = task["status"]
    if status in TASK_TERMINAL_STATUSES:
        raise ValueError(f"Cannot enqueue task '{task_id}': it is already {status}.")
    if task["execution_mode"] == "sequential" and task["queue_position"] is not None:
        return task
    if status == "inprogress":
        raise ValueError(f"Cannot enqueue task '{task_id}' while an attempt is in progress.")

    project_id = task["project_id"]
    version = get_queue_state(conn, project_id)["version"]
    try:
        with immediate_transaction(conn):
            _check_and_bump_version(conn, project_id, version)
            row = conn.execute(
                "SELECT MAX(queue_position) FROM tasks WHERE project_id = ?",
                (project_id,),
            ).fetchone()
            position = (row[0] or 0) + 1
            # An in-review task re-enters the queue as a fresh pending task.
            cursor = conn.execute(
                "UPDATE tasks SET execution_mode = 'sequential', queue_position = ?, "
                "status = 'todo', error_kind = NULL, failure_reason = NULL, "
                "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
                "WHERE id = ? AND status = ?",
                (position, task_id, status),
            )
            if cursor.rowcount == 0:
                raise QueueRaceError(f"Task {task_id} changed while being enqueued")
    except sqlite3.IntegrityError as exc:
        raise QueueRaceError(f"Queue position collision enqueueing {task_id}: {exc}") from exc

    log.info("Enqueued task %s at position %d in project %s", task_id, position, project_id)
    enqueued = get_task(conn, task_id)
    assert enqueued is not None
    return enqueued


def enqueue(
    conn: sqlite3.Connection,
    task_id: str,
    *,
    retries: int = 1,
    backoff: float = DEFAULT_CONFIG.retry_backoff,
) -> TaskRow:
    """Mark ``task_id`` sequential and append it to the tail of its project's queue.

    Idempotent for a task that is already queued. A lost race is retried
    ``retries`` times with fresh state before QueueRaceError surfaces.
    """
    for attempt in range(retries + 1):
        try:
            return _enqueue_once(conn, task_id)
        except QueueRaceError:
            if attempt >= retries:
                raise
            log.warning("Enqueue race for task %s, retrying (%d/%d)", task_id, attempt + 1, retries)
            time.sleep(backoff)
    raise AssertionError("unreachable")


def dequeue(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    """Turn a sequential task back into a parallel one. Idempotent.

    The task branch, if any, is left alone.
    """
    task = _require_task(conn, task_id)
    if task["execution_mode"] == "parallel" and task["queue_position"] is None:
        return task
    if task["status"] == "inprogress":
        raise ValueError(f"Cannot dequeue task '{task_id}' while an attempt is in progress.")

    with immediate_transaction(conn):
        cursor = conn.execute(
            "UPDATE tasks SET execution_mode = 'parallel', queue_position = NULL, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
            "WHERE id = ? AND status != 'inprogress'",
            (task_id,),
        )
        if cursor.rowcount == 0:
            raise QueueRaceError(f"Task {task_id} started while being dequeued")
        conn.execute(
            "UPDATE project_queues SET version = version + 1, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE project_id = ?",
            (task["project_id"],),
        )

    log.info("Dequeued task %s from project %s", task_id, task["project_id"])
    dequeued = get_task(conn, task_id)
    assert dequeued is not None
    return dequeued


def _reorder_once(conn: sqlite3.Connection, task_id: str, new_index: int) -> list[TaskRow]:
    task = _require_task(conn, task_id)
    if task["execution_mode"] != "sequential" or task["queue_position"] is None:
        raise ValueError(f"Task '{task_id}' is not in the sequential queue.")
    if task["status"] != "todo":
        raise ValueError(f"Task '{task_id}' is {task['status']}; only pending tasks can move.")

    project_id = task["project_id"]
    version = get_queue_state(conn, project_id)["version"]
    snapshot = _pending_snapshot(conn, project_id)
    ids = [entry[0] for entry in snapshot]
    positions = [entry[1] for entry in snapshot]
    if task_id not in ids:
        raise QueueRaceError(f"Task {task_id} left the pending queue during reorder")

    order = [tid for tid in ids if tid != task_id]
    order.insert(min(new_index, len(order)), task_id)
    if order == ids:
        return get_queue(conn, project_id)

    try:
        with immediate_transaction(conn):
            _check_and_bump_version(conn, project_id, version)
            if _pending_snapshot(conn, project_id) != snapshot:
                raise QueueRaceError(f"Pending queue of project {project_id} changed")
            # Park the subset on negative values so the UNIQUE index never sees
            # two rows sharing a position mid-update.
            for tid, position in snapshot:
                conn.execute(
                    "UPDATE tasks SET queue_position = ? WHERE id = ?", (-position, tid)
                )
            for tid, position in zip(order, positions, strict=True):
                conn.execute(
                    "UPDATE tasks SET queue_position = ?, "
                    "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
                    (position, tid),
                )
    except sqlite3.IntegrityError as exc:
        raise QueueRaceError(f"Queue position collision reordering {task_id}: {exc}") from exc

    log.info("Moved task %s to index %d in project %s", task_id, new_index, project_id)
    return get_queue(conn, project_id)


def reorder(
    conn: sqlite3.Connection,
    task_id: str,
    new_index: int,
    *,
    retries: int = DEFAULT_CONFIG.race_retries,
    backoff: float = DEFAULT_CONFIG.retry_backoff,
) -> list[TaskRow]:
    """Move a pending task to ``new_index`` (0-based, clamped to the queue length).

    Returns the resulting pending queue.
    """
    if new_index < 0:
        raise ValueError("new_index must be >= 0.")
    for attempt in range(retries + 1):
        try:
            return _reorder_once(conn, task_id, new_index)
        except QueueRaceError:
            if attempt >= retries:
                raise
            log.warning("Reorder race for task %s, retrying (%d/%d)", task_id, attempt + 1, retries)
            time.sleep(backoff)
    raise AssertionError("unreachable")
