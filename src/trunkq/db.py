"""SQLite database for trunkq state."""

from __future__ import annotations

import contextlib
import sqlite3
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import TypedDict, cast

from trunkq.paths import DEFAULT_DB_PATH

DEFAULT_BASE_BRANCH = "main"
VALID_TASK_STATUSES = {"todo", "inprogress", "inreview", "done", "cancelled"}
TASK_TERMINAL_STATUSES = {"done", "cancelled"}
VALID_EXECUTION_MODES = {"parallel", "sequential"}
VALID_WORKSPACE_STATES = {"uninitialized", "preparing", "ready", "failed"}
VALID_ATTEMPT_OUTCOMES = {"running", "succeeded", "failed", "cancelled"}
ATTEMPT_TERMINAL_OUTCOMES = {"succeeded", "failed", "cancelled"}

# Set once the indexes exist. 0 = fresh database.
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    dir TEXT UNIQUE NOT NULL,
    base_branch TEXT,
    agent_command TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS project_queues (
    project_id TEXT PRIMARY KEY REFERENCES projects(id),
    version INTEGER NOT NULL DEFAULT 0,
    halted INTEGER NOT NULL DEFAULT 0,
    halted_task_id TEXT,
    halted_reason TEXT,
    halted_at TEXT,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS project_locks (
    project_id TEXT PRIMARY KEY REFERENCES projects(id),
    task_id TEXT NOT NULL,
    attempt_id TEXT,
    acquired_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'todo',
    execution_mode TEXT NOT NULL DEFAULT 'parallel',
    queue_position INTEGER,
    target_branch TEXT,
    task_branch TEXT,
    workspace_dir TEXT,
    workspace_state TEXT NOT NULL DEFAULT 'uninitialized',
    before_head_commit TEXT,
    after_head_commit TEXT,
    merge_commit TEXT,
    error_kind TEXT,
    failure_reason TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS task_attempts (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    project_id TEXT NOT NULL REFERENCES projects(id),
    attempt_number INTEGER NOT NULL,
    execution_mode TEXT NOT NULL,
    task_branch TEXT NOT NULL,
    branch_point TEXT,
    workspace_dir TEXT,
    before_head_commit TEXT,
    after_head_commit TEXT,
    merge_commit TEXT,
    outcome TEXT NOT NULL DEFAULT 'running',
    error_kind TEXT,
    failure_reason TEXT,
    pid INTEGER,
    job_id TEXT,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS task_logs (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'task',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""


class ProjectRow(TypedDict):
    id: str
    name: str
    dir: str
    base_branch: str | None
    agent_command: str | None
    created_at: str


class QueueStateRow(TypedDict):
    project_id: str
    version: int
    halted: int
    halted_task_id: str | None
    halted_reason: str | None
    halted_at: str | None
    updated_at: str


class TaskRow(TypedDict):
    id: str
    project_id: str
    title: str
    description: str
    status: str
    execution_mode: str
    queue_position: int | None
    target_branch: str | None
    task_branch: str | None
    workspace_dir: str | None
    workspace_state: str
    before_head_commit: str | None
    after_head_commit: str | None
    merge_commit: str | None
    error_kind: str | None
    failure_reason: str | None
    created_at: str
    updated_at: str


class AttemptRow(TypedDict):
    id: str
    task_id: str
    project_id: str
    attempt_number: int
    execution_mode: str
    task_branch: str
    branch_point: str | None
    workspace_dir: str | None
    before_head_commit: str | None
    after_head_commit: str | None
    merge_commit: str | None
    outcome: str
    error_kind: str | None
    failure_reason: str | None
    pid: int | None
    job_id: str | None
    cancel_requested: int
    started_at: str
    finished_at: str | None


_INSERT_TASK_LOG = (
    "INSERT INTO task_logs (id, task_id, level, message, source) VALUES (?, ?, ?, ?, ?)"
)


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextlib.contextmanager
def immediate_transaction(conn: sqlite3.Connection):
    """Run a block inside ``BEGIN IMMEDIATE`` so the write lock is taken up front.

    Commits on success, rolls back on any exception.
    """
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_tasks_project_id ON tasks(project_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
        CREATE INDEX IF NOT EXISTS idx_tasks_sequential_queue
            ON tasks(project_id, execution_mode, queue_position)
            WHERE execution_mode = 'sequential';
        CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_unique_queue_position
            ON tasks(project_id, queue_position)
            WHERE queue_position IS NOT NULL;
        CREATE INDEX IF NOT EXISTS idx_task_attempts_task_id
            ON task_attempts(task_id, attempt_number);
        CREATE INDEX IF NOT EXISTS idx_task_attempts_outcome ON task_attempts(outcome);
        CREATE INDEX IF NOT EXISTS idx_task_logs_task_id ON task_logs(task_id);
    """)


def _validate_base_branch(base_branch: str | None) -> str | None:
    if base_branch is None:
        return None
    if not isinstance(base_branch, str):
        raise ValueError("base_branch must be a non-empty string or None.")
    normalized = base_branch.strip()
    if not normalized:
        raise ValueError("base_branch must be a non-empty string or None.")
    return normalized


# -- projects --


def add_project(
    conn: sqlite3.Connection, name: str, directory: str, base_branch: str | None = None
) -> dict:
    project_id = uuid.uuid4().hex[:12]
    normalized_base = _validate_base_branch(base_branch)
    conn.execute(
        "INSERT INTO projects (id, name, dir, base_branch) VALUES (?, ?, ?, ?)",
        (project_id, name, directory, normalized_base),
    )
    conn.execute("INSERT INTO project_queues (project_id) VALUES (?)", (project_id,))
    conn.commit()
    return {"id": project_id, "name": name, "dir": directory, "base_branch": normalized_base}


def get_project(conn: sqlite3.Connection, name_or_id: str) -> ProjectRow | None:
    row = conn.execute(
        "SELECT * FROM projects WHERE id = ? OR name = ?", (name_or_id, name_or_id)
    ).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def get_project_by_dir(conn: sqlite3.Connection, directory: str) -> ProjectRow | None:
    row = conn.execute("SELECT * FROM projects WHERE dir = ?", (directory,)).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def list_projects(conn: sqlite3.Connection) -> list[ProjectRow]:
    rows = conn.execute("SELECT * FROM projects ORDER BY created_at, name").fetchall()
    return [cast(ProjectRow, dict(row)) for row in rows]


def set_project_base_branch(
    conn: sqlite3.Connection, project_id: str, base_branch: str | None
) -> None:
    normalized = _validate_base_branch(base_branch)
    conn.execute("UPDATE projects SET base_branch = ? WHERE id = ?", (normalized, project_id))
    conn.commit()


def get_project_base_branch(conn: sqlite3.Connection, project_id: str) -> str:
    row = conn.execute("SELECT base_branch FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return DEFAULT_BASE_BRANCH
    return row["base_branch"] or DEFAULT_BASE_BRANCH


def set_project_agent_command(
    conn: sqlite3.Connection, project_id: str, command: str | None
) -> None:
    value = command.strip() if command else None
    conn.execute("UPDATE projects SET agent_command = ? WHERE id = ?", (value or None, project_id))
    conn.commit()


# -- project queue state --


def get_queue_state(conn: sqlite3.Connection, project_id: str) -> QueueStateRow:
    row = conn.execute(
        "SELECT * FROM project_queues WHERE project_id = ?", (project_id,)
    ).fetchone()
    if row is None:
        # Projects registered before the queue table existed get a row lazily.
        conn.execute(
            "INSERT OR IGNORE INTO project_queues (project_id) VALUES (?)", (project_id,)
        )
        conn.commit()
        row = conn.execute(
            "SELECT * FROM project_queues WHERE project_id = ?", (project_id,)
        ).fetchone()
    return cast(QueueStateRow, dict(row))


def halt_project_queue(
    conn: sqlite3.Connection, project_id: str, task_id: str | None, reason: str
) -> None:
    get_queue_state(conn, project_id)
    conn.execute(
        "UPDATE project_queues SET halted = 1, halted_task_id = ?, halted_reason = ?, "
        "halted_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now'), "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE project_id = ?",
        (task_id, reason, project_id),
    )
    conn.commit()


def clear_project_queue_halt(conn: sqlite3.Connection, project_id: str) -> bool:
    """Clear the halt flag. Returns True only when the queue was halted."""
    cursor = conn.execute(
        "UPDATE project_queues SET halted = 0, halted_task_id = NULL, halted_reason = NULL, "
        "halted_at = NULL, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE project_id = ? AND halted = 1",
        (project_id,),
    )
    conn.commit()
    return cursor.rowcount > 0


# -- tasks --


def _validate_execution_mode(execution_mode: str) -> str:
    if execution_mode not in VALID_EXECUTION_MODES:
        raise ValueError(
            f"Invalid execution mode '{execution_mode}'. Must be one of: {VALID_EXECUTION_MODES}"
        )
    return execution_mode


def create_task(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    title: str,
    description: str = "",
    target_branch: str | None = None,
) -> TaskRow:
    """Insert a parallel task. Sequential placement is the queue manager's job."""
    task_id = uuid.uuid4().hex[:12]
    if target_branch is None:
        target_branch = get_project_base_branch(conn, project_id)
    conn.execute(
        "INSERT INTO tasks (id, project_id, title, description, target_branch) "
        "VALUES (?, ?, ?, ?, ?)",
        (task_id, project_id, title, description, _validate_base_branch(target_branch)),
    )
    conn.commit()
    task = get_task(conn, task_id)
    assert task is not None
    return task


def get_task(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def list_tasks(
    conn: sqlite3.Connection,
    project_id: str | None = None,
    *,
    status: str | None = None,
    statuses: Sequence[str] | None = None,
    execution_mode: str | None = None,
    queued_only: bool = False,
    order_by_queue: bool = False,
) -> list[TaskRow]:
    query = "SELECT * FROM tasks"
    conditions: list[str] = []
    params: list[str] = []
    if project_id:
        conditions.append("project_id = ?")
        params.append(project_id)
    if status:
        conditions.append("status = ?")
        params.append(status)
    elif statuses:
        placeholders = ",".join("?" for _ in statuses)
        conditions.append(f"status IN ({placeholders})")
        params.extend(statuses)
    if execution_mode:
        conditions.append("execution_mode = ?")
        params.append(_validate_execution_mode(execution_mode))
    if queued_only:
        conditions.append("queue_position IS NOT NULL")
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    if order_by_queue:
        query += " ORDER BY queue_position, created_at, rowid"
    else:
        query += " ORDER BY created_at, rowid"
    rows = conn.execute(query, params).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def count_active_sequential_tasks(conn: sqlite3.Connection, project_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM tasks WHERE project_id = ? "
        "AND execution_mode = 'sequential' AND status = 'inprogress'",
        (project_id,),
    ).fetchone()
    return int(row[0])


def update_task_status(conn: sqlite3.Connection, task_id: str, status: str) -> bool:
    """Move a task to ``status``; leaving the active queue clears its position.

    Uses a compare-and-set on the old status so concurrent writers cannot both
    win the same transition.
    """
    if status not in VALID_TASK_STATUSES:
        raise ValueError(f"Invalid task status '{status}'. Must be one of: {VALID_TASK_STATUSES}")
    current = conn.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not current:
        return False
    old_status = current["status"]
    if old_status == status:
        return False

    # Prevent transitions out of terminal statuses (worker race protection).
    if old_status in TASK_TERMINAL_STATUSES:
        return False

    extra_clauses = ""
    if status in TASK_TERMINAL_STATUSES:
        extra_clauses += ", queue_position = NULL"

    cursor = conn.execute(
        "UPDATE tasks SET status = ?,"
        f" updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now'){extra_clauses}"
        " WHERE id = ? AND status = ?",
        (status, task_id, old_status),
    )
    conn.commit()
    return cursor.rowcount > 0


def set_task_workspace(
    conn: sqlite3.Connection,
    task_id: str,
    *,
    task_branch: str | None,
    workspace_dir: str | None,
    workspace_state: str,
) -> bool:
    if workspace_state not in VALID_WORKSPACE_STATES:
        raise ValueError(
            f"Invalid workspace state '{workspace_state}'. "
            f"Must be one of: {VALID_WORKSPACE_STATES}"
        )
    cursor = conn.execute(
        "UPDATE tasks SET task_branch = ?, workspace_dir = ?, workspace_state = ?, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
        (task_branch, workspace_dir, workspace_state, task_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def set_task_workspace_state(conn: sqlite3.Connection, task_id: str, workspace_state: str) -> bool:
    if workspace_state not in VALID_WORKSPACE_STATES:
        raise ValueError(
            f"Invalid workspace state '{workspace_state}'. "
            f"Must be one of: {VALID_WORKSPACE_STATES}"
        )
    cursor = conn.execute(
        "UPDATE tasks SET workspace_state = ?, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
        (workspace_state, task_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def set_task_commits(
    conn: sqlite3.Connection,
    task_id: str,
    *,
    before_head_commit: str | None,
    after_head_commit: str | None,
    merge_commit: str | None,
) -> bool:
    """Record the audit trail of an attempt's commits on the task row."""
    cursor = conn.execute(
        "UPDATE tasks SET before_head_commit = ?, after_head_commit = ?, merge_commit = ?, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
        (before_head_commit, after_head_commit, merge_commit, task_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def set_task_failure(
    conn: sqlite3.Connection, task_id: str, error_kind: str | None, reason: str | None
) -> bool:
    cursor = conn.execute(
        "UPDATE tasks SET error_kind = ?, failure_reason = ?, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
        (error_kind, reason, task_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def requeue_failed_task(conn: sqlite3.Connection, task_id: str) -> bool:
    """Put a failed sequential task back to todo, keeping its queue position.

    The next attempt provisions a fresh workspace, so workspace fields reset.
    """
    cursor = conn.execute(
        "UPDATE tasks SET status = 'todo', error_kind = NULL, failure_reason = NULL, "
        "workspace_state = 'uninitialized', workspace_dir = NULL, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE id = ? AND status = 'inreview' AND execution_mode = 'sequential'",
        (task_id,),
    )
    conn.commit()
    return cursor.rowcount > 0


# -- attempts --


def create_attempt(
    conn: sqlite3.Connection,
    *,
    task_id: str,
    project_id: str,
    execution_mode: str,
    task_branch: str,
    branch_point: str | None,
    workspace_dir: str | None,
    before_head_commit: str | None,
) -> AttemptRow:
    attempt_id = uuid.uuid4().hex[:12]
    row = conn.execute(
        "SELECT COALESCE(MAX(attempt_number), 0) FROM task_attempts WHERE task_id = ?",
        (task_id,),
    ).fetchone()
    attempt_number = int(row[0]) + 1
    conn.execute(
        "INSERT INTO task_attempts (id, task_id, project_id, attempt_number, execution_mode, "
        "task_branch, branch_point, workspace_dir, before_head_commit) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            attempt_id,
            task_id,
            project_id,
            attempt_number,
            _validate_execution_mode(execution_mode),
            task_branch,
            branch_point,
            workspace_dir,
            before_head_commit,
        ),
    )
    conn.commit()
    attempt = get_attempt(conn, attempt_id)
    assert attempt is not None
    return attempt


def get_attempt(conn: sqlite3.Connection, attempt_id: str) -> AttemptRow | None:
    row = conn.execute("SELECT * FROM task_attempts WHERE id = ?", (attempt_id,)).fetchone()
    return cast(AttemptRow, dict(row)) if row else None


def get_latest_attempt(conn: sqlite3.Connection, task_id: str) -> AttemptRow | None:
    row = conn.execute(
        "SELECT * FROM task_attempts WHERE task_id = ? ORDER BY attempt_number DESC LIMIT 1",
        (task_id,),
    ).fetchone()
    return cast(AttemptRow, dict(row)) if row else None


def list_attempts(conn: sqlite3.Connection, task_id: str) -> list[AttemptRow]:
    rows = conn.execute(
        "SELECT * FROM task_attempts WHERE task_id = ? ORDER BY attempt_number",
        (task_id,),
    ).fetchall()
    return [cast(AttemptRow, dict(row)) for row in rows]


def list_running_attempts(
    conn: sqlite3.Connection, project_id: str | None = None
) -> list[AttemptRow]:
    if project_id:
        rows = conn.execute(
            "SELECT * FROM task_attempts WHERE outcome = 'running' AND project_id = ? "
            "ORDER BY started_at",
            (project_id,),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM task_attempts WHERE outcome = 'running' ORDER BY started_at"
        ).fetchall()
    return [cast(AttemptRow, dict(row)) for row in rows]


def set_attempt_worker(conn: sqlite3.Connection, attempt_id: str, *, job_id: str) -> bool:
    """Record the rq job that runs the attempt."""
    cursor = conn.execute(
        "UPDATE task_attempts SET job_id = ? WHERE id = ?",
        (job_id, attempt_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def record_attempt_pid(conn: sqlite3.Connection, attempt_id: str, pid: int) -> bool:
    """Store the agent pid unless the attempt finished or a cancel was requested.

    Returns False when the attempt may no longer run; the caller must stop
    the process it just started.
    """
    cursor = conn.execute(
        "UPDATE task_attempts SET pid = ? "
        "WHERE id = ? AND outcome = 'running' AND cancel_requested = 0",
        (pid, attempt_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def request_attempt_cancel(conn: sqlite3.Connection, attempt_id: str) -> bool:
    cursor = conn.execute(
        "UPDATE task_attempts SET cancel_requested = 1 WHERE id = ? AND outcome = 'running'",
        (attempt_id,),
    )
    conn.commit()
    return cursor.rowcount > 0


def finish_attempt(
    conn: sqlite3.Connection,
    attempt_id: str,
    *,
    outcome: str,
    after_head_commit: str | None,
    error_kind: str | None = None,
    failure_reason: str | None = None,
) -> bool:
    """Move a running attempt to its terminal outcome.

    Only the first caller wins; later calls return False, which keeps the
    terminal notification to exactly one per attempt.
    """
    if outcome not in ATTEMPT_TERMINAL_OUTCOMES:
        raise ValueError(
            f"Invalid attempt outcome '{outcome}'. Must be one of: {ATTEMPT_TERMINAL_OUTCOMES}"
        )
    cursor = conn.execute(
        "UPDATE task_attempts SET outcome = ?, after_head_commit = ?, error_kind = ?, "
        "failure_reason = ?, finished_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE id = ? AND outcome = 'running'",
        (outcome, after_head_commit, error_kind, failure_reason, attempt_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def set_attempt_merge_result(
    conn: sqlite3.Connection,
    attempt_id: str,
    *,
    merge_commit: str | None,
    outcome: str | None = None,
    error_kind: str | None = None,
    failure_reason: str | None = None,
) -> bool:
    """Store the merge result; a conflict also rewrites outcome and error_kind."""
    if outcome is None:
        cursor = conn.execute(
            "UPDATE task_attempts SET merge_commit = ? WHERE id = ?",
            (merge_commit, attempt_id),
        )
    else:
        cursor = conn.execute(
            "UPDATE task_attempts SET merge_commit = ?, outcome = ?, error_kind = ?, "
            "failure_reason = ? WHERE id = ?",
            (merge_commit, outcome, error_kind, failure_reason, attempt_id),
        )
    conn.commit()
    return cursor.rowcount > 0


# -- logs --


def add_task_log(
    conn: sqlite3.Connection,
    *,
    task_id: str,
    level: str,
    message: str,
    source: str = "task",
) -> dict:
    log_id = uuid.uuid4().hex[:12]
    conn.execute(
        _INSERT_TASK_LOG,
        (log_id, task_id, level, message, source),
    )
    conn.commit()
    return {"id": log_id, "task_id": task_id, "level": level, "message": message, "source": source}


def list_task_logs(conn: sqlite3.Connection, task_id: str, level: str | None = None) -> list[dict]:
    if level:
        rows = conn.execute(
            "SELECT * FROM task_logs WHERE task_id = ? AND level = ? ORDER BY created_at, rowid",
            (task_id, level),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM task_logs WHERE task_id = ? ORDER BY created_at, rowid",
            (task_id,),
        ).fetchall()
    return [dict(row) for row in rows]
