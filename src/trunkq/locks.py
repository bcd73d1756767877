"""Per-project lock serializing sequential execution.

The lock is a row in ``project_locks`` so it holds across CLI invocations,
rq workers and threads. Acquisition never blocks.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TypedDict, cast

log = logging.getLogger(__name__)


class LockRow(TypedDict):
    project_id: str
    task_id: str
    attempt_id: str | None
    acquired_at: str


def try_acquire(
    conn: sqlite3.Connection, project_id: str, task_id: str, attempt_id: str | None = None
) -> bool:
    """Take the project lock for ``task_id``. Returns False if anyone holds it.

    The lock is not re-entrant: a second caller for the same task loses too,
    so only one provisioning run can own the main checkout.
    """
    cursor = conn.execute(
        "INSERT OR IGNORE INTO project_locks (project_id, task_id, attempt_id) VALUES (?, ?, ?)",
        (project_id, task_id, attempt_id),
    )
    conn.commit()
    if cursor.rowcount > 0:
        log.debug("Project %s locked by task %s", project_id, task_id)
        return True
    return False


def set_attempt(conn: sqlite3.Connection, project_id: str, task_id: str, attempt_id: str) -> bool:
    """Bind a lock taken during provisioning to the attempt it was taken for."""
    cursor = conn.execute(
        "UPDATE project_locks SET attempt_id = ? "
        "WHERE project_id = ? AND task_id = ? AND attempt_id IS NULL",
        (attempt_id, project_id, task_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def release(
    conn: sqlite3.Connection, project_id: str, task_id: str, attempt_id: str | None = None
) -> bool:
    """Drop the lock if ``task_id`` holds it. Releasing a free lock is a no-op.

    With ``attempt_id`` the lock is only dropped when it is bound to that attempt.
    """
    if attempt_id is None:
        cursor = conn.execute(
            "DELETE FROM project_locks WHERE project_id = ? AND task_id = ?",
            (project_id, task_id),
        )
    else:
        cursor = conn.execute(
            "DELETE FROM project_locks WHERE project_id = ? AND task_id = ? AND attempt_id = ?",
            (project_id, task_id, attempt_id),
        )
    conn.commit()
    if cursor.rowcount > 0:
        log.debug("Project %s unlocked by task %s", project_id, task_id)
        return True
    return False


def get_holder(conn: sqlite3.Connection, project_id: str) -> LockRow | None:
    row = conn.execute(
        "SELECT * FROM project_locks WHERE project_id = ?", (project_id,)
    ).fetchone()
    return cast(LockRow, dict(row)) if row else None


def force_release(conn: sqlite3.Connection, project_id: str) -> LockRow | None:
    """Operator escape hatch: drop whatever lock the project holds."""
    holder = get_holder(conn, project_id)
    if holder:
        conn.execute("DELETE FROM project_locks WHERE project_id = ?", (project_id,))
        conn.commit()
        log.warning(
            "Force-released project %s lock held by task %s", project_id, holder["task_id"]
        )
    return holder
