"""Execution supervisor: drives one attempt of a task from start to terminal.

``start_attempt`` provisions the workspace and schedules the agent run as an
rq job; the job calls ``run_agent`` and then ``finalize_attempt``, which
commits whatever the agent left behind before the Queue Advancer sees the
terminal outcome.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import sqlite3
import subprocess
from pathlib import Path

from redis.exceptions import RedisError

from trunkq import locks
from trunkq.db import (
    AttemptRow,
    ProjectRow,
    TaskRow,
    count_active_sequential_tasks,
    create_attempt,
    finish_attempt,
    get_attempt,
    get_latest_attempt,
    get_project,
    get_queue_state,
    get_task,
    halt_project_queue,
    list_running_attempts,
    record_attempt_pid,
    request_attempt_cancel,
    set_attempt_worker,
    set_task_commits,
    set_task_failure,
    update_task_status,
)
from trunkq.errors import (
    ERROR_AGENT_EXECUTION,
    ERROR_QUEUE_RACE,
    ERROR_WORKSPACE_CONFLICT,
    QueueRaceError,
    WorkspaceConflict,
)
from trunkq.git_ops import commit_if_dirty, current_branch, rev_parse
from trunkq.project_config import ProjectConfig, load_project_config, resolve_agent_command
from trunkq.queue import cancel_queued_job, enqueue_task_attempt, is_job_active, publish_event
from trunkq.queue_manager import get_next
from trunkq.workspace import provision

log = logging.getLogger(__name__)

# Lines of agent stderr kept in a failure reason.
_STDERR_TAIL_LINES = 20


def _load(conn: sqlite3.Connection, task_id: str) -> tuple[TaskRow, ProjectRow]:
    task = get_task(conn, task_id)
    if not task:
        raise ValueError(f"Task '{task_id}' not found.")
    project = get_project(conn, task["project_id"])
    if not project:
        raise ValueError(f"Project '{task['project_id']}' not found.")
    return task, project


def attempt_work_dir(attempt: AttemptRow, project: ProjectRow) -> str:
    """Directory the agent runs in and where pending changes get committed."""
    if attempt["execution_mode"] == "sequential" or not attempt["workspace_dir"]:
        return project["dir"]
    return str(Path(attempt["workspace_dir"]) / Path(project["dir"]).name)


def _fail_provisioning(
    conn: sqlite3.Connection, task: TaskRow, project: ProjectRow, exc: WorkspaceConflict
) -> None:
    set_task_failure(conn, task["id"], ERROR_WORKSPACE_CONFLICT, str(exc))
    update_task_status(conn, task["id"], "inreview")
    if task["execution_mode"] == "sequential":
        halt_project_queue(conn, project["id"], task["id"], f"{ERROR_WORKSPACE_CONFLICT}: {exc}")
        publish_event(
            "queue:halted",
            project["id"],
            "halted",
            project=project["name"],
            extra={"task_id": task["id"], "error_kind": ERROR_WORKSPACE_CONFLICT},
        )
    publish_event("task:status", task["id"], "inreview", project=project["name"])


def start_attempt(
    conn: sqlite3.Connection,
    task_id: str,
    *,
    config: ProjectConfig | None = None,
    schedule: bool = True,
) -> AttemptRow | None:
    """Start the next attempt of ``task_id``.

    Returns None when a sequential task cannot start right now (queue halted,
    project lock held, another sequential task in progress). Raises ValueError
    when the task is not startable at all and WorkspaceConflict when
    provisioning fails, in which case the task is marked failed and its
    queue halted.
    """
    task, project = _load(conn, task_id)
    if config is None:
        config = load_project_config(project["dir"])
    sequential = task["execution_mode"] == "sequential"

    if sequential:
        if task["status"] != "todo":
            raise ValueError(f"Task '{task_id}' is {task['status']}, not todo.")
        if get_queue_state(conn, project["id"])["halted"]:
            log.info("Queue of project %s is halted; not starting %s", project["name"], task_id)
            return None
        head = get_next(conn, project["id"])
        if head is None or head["id"] != task_id:
            raise ValueError(f"Task '{task_id}' is not at the head of the queue.")
        if count_active_sequential_tasks(conn, project["id"]) > 0:
            log.info("Project %s already has a sequential task running", project["name"])
            return None
    elif task["status"] not in ("todo", "inreview"):
        raise ValueError(f"Task '{task_id}' is {task['status']}; cannot start an attempt.")

    try:
        workspace = provision(conn, task_id, config=config)
    except WorkspaceConflict as exc:
        _fail_provisioning(conn, task, project, exc)
        raise
    if workspace is None:
        return None

    before_head = rev_parse(workspace.work_dir, "HEAD")
    attempt = create_attempt(
        conn,
        task_id=task_id,
        project_id=project["id"],
        execution_mode=task["execution_mode"],
        task_branch=workspace.task_branch,
        branch_point=workspace.branch_point,
        workspace_dir=workspace.workspace_dir,
        before_head_commit=before_head,
    )
    if sequential:
        locks.set_attempt(conn, project["id"], task_id, attempt["id"])

    if not update_task_status(conn, task_id, "inprogress"):
        finish_attempt(
            conn,
            attempt["id"],
            outcome="cancelled",
            after_head_commit=before_head,
            error_kind=ERROR_QUEUE_RACE,
            failure_reason="Task changed status while its attempt was starting",
        )
        if sequential:
            locks.release(conn, project["id"], task_id, attempt["id"])
        raise QueueRaceError(f"Task {task_id} changed status while starting")

    set_task_failure(conn, task_id, None, None)
    set_task_commits(
        conn, task_id, before_head_commit=before_head, after_head_commit=None, merge_commit=None
    )
    log.info(
        "Started attempt %d (%s) of task %s on %s",
        attempt["attempt_number"],
        attempt["id"],
        task_id,
        workspace.task_branch,
    )
    publish_event(
        "task:status",
        task_id,
        "inprogress",
        project=project["name"],
        extra={"attempt_id": attempt["id"], "task_branch": workspace.task_branch},
    )

    if schedule:
        try:
            job = enqueue_task_attempt(attempt["id"])
        except RedisError as exc:
            log.error("Could not schedule attempt %s: %s", attempt["id"], exc)
            finalize_attempt(
                conn,
                attempt["id"],
                "failed",
                error_kind=ERROR_AGENT_EXECUTION,
                reason=f"Could not schedule agent run: {exc}",
            )
        else:
            set_attempt_worker(conn, attempt["id"], job_id=job.id)

    refreshed = get_attempt(conn, attempt["id"])
    assert refreshed is not None
    return refreshed


def _agent_env(task: TaskRow, project: ProjectRow, attempt: AttemptRow) -> dict[str, str]:
    env = dict(os.environ)
    env.update(
        {
            "TRUNKQ_PROJECT": project["name"],
            "TRUNKQ_TASK_ID": task["id"],
            "TRUNKQ_TASK_TITLE": task["title"],
            "TRUNKQ_TASK_DESCRIPTION": task["description"] or "",
            "TRUNKQ_TASK_BRANCH": attempt["task_branch"],
            "TRUNKQ_TARGET_BRANCH": task["target_branch"] or "",
            "TRUNKQ_ATTEMPT_ID": attempt["id"],
            "TRUNKQ_EXECUTION_MODE": attempt["execution_mode"],
        }
    )
    return env


def _tail(text: str | None) -> str:
    if not text:
        return ""
    return "\n".join(text.strip().splitlines()[-_STDERR_TAIL_LINES:])


def run_agent(
    conn: sqlite3.Connection, attempt_id: str, *, config: ProjectConfig | None = None
) -> tuple[str, str | None, str | None]:
    """Run the project's agent command for an attempt and wait for it.

    Returns ``(outcome, error_kind, reason)``.
    """
    attempt = get_attempt(conn, attempt_id)
    if not attempt:
        raise ValueError(f"Attempt '{attempt_id}' not found.")
    task, project = _load(conn, attempt["task_id"])
    if config is None:
        config = load_project_config(project["dir"])

    command = resolve_agent_command(dict(project), config)
    if not command:
        return "failed", ERROR_AGENT_EXECUTION, "No agent command configured for project"
    try:
        args = shlex.split(command)
    except ValueError as exc:
        return "failed", ERROR_AGENT_EXECUTION, f"Invalid agent command: {exc}"

    work_dir = attempt_work_dir(attempt, project)
    # The attempt may have been cancelled (and the checkout handed on) since
    # the job was picked up.
    current = get_attempt(conn, attempt_id)
    if not current or current["outcome"] != "running" or current["cancel_requested"]:
        log.info("Attempt %s was cancelled before its agent started", attempt_id)
        return "cancelled", None, "Cancelled before the agent started"

    log.info("Running agent for task %s in %s: %s", task["id"], work_dir, command)
    try:
        proc = subprocess.Popen(
            args,
            cwd=work_dir,
            env=_agent_env(task, project, attempt),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as exc:
        return "failed", ERROR_AGENT_EXECUTION, f"Agent failed to launch: {exc}"

    if not record_attempt_pid(conn, attempt_id, proc.pid):
        log.info(
            "Attempt %s was cancelled while its agent started; killing pid=%d",
            attempt_id,
            proc.pid,
        )
        proc.kill()
        proc.communicate()
        return "cancelled", None, "Cancelled before the agent started"
    try:
        stdout, stderr = proc.communicate(timeout=config.agent_timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        stdout, stderr = proc.communicate()
        log.error("Agent for task %s timed out after %ss", task["id"], config.agent_timeout)
        return "failed", ERROR_AGENT_EXECUTION, f"Agent timed out after {config.agent_timeout}s"

    if stdout and stdout.strip():
        log.info("Agent output for task %s:\n%s", task["id"], _tail(stdout))

    refreshed = get_attempt(conn, attempt_id)
    if refreshed and refreshed["cancel_requested"]:
        log.info("Agent for task %s stopped after cancel request", task["id"])
        return "cancelled", None, "Cancelled by operator"
    if proc.returncode == 0:
        return "succeeded", None, None

    reason = f"Agent exited with code {proc.returncode}"
    tail = _tail(stderr)
    if tail:
        reason = f"{reason}:\n{tail}"
    log.warning("Agent for task %s failed: %s", task["id"], reason)
    return "failed", ERROR_AGENT_EXECUTION, reason


def _commit_pending_work(attempt: AttemptRow, task: TaskRow, project: ProjectRow) -> str | None:
    """Commit anything the agent left uncommitted on the task branch.

    Returns the task branch head afterwards. Raises RuntimeError when the
    commit fails.
    """
    work_dir = attempt_work_dir(attempt, project)
    if not Path(work_dir).is_dir():
        log.warning("Workspace %s for task %s is gone; nothing to commit", work_dir, task["id"])
    elif current_branch(work_dir) != attempt["task_branch"]:
        log.warning(
            "Checkout %s is not on %s; leaving it untouched", work_dir, attempt["task_branch"]
        )
    else:
        commit_if_dirty(
            work_dir,
            f"trunkq: save work from attempt {attempt['attempt_number']} of "
            f"task {task['id'][:8]} ({task['title']})",
        )
    try:
        return rev_parse(project["dir"], attempt["task_branch"])
    except RuntimeError:
        log.warning("Branch %s no longer resolves", attempt["task_branch"])
        return None


def finalize_attempt(
    conn: sqlite3.Connection,
    attempt_id: str,
    outcome: str,
    *,
    error_kind: str | None = None,
    reason: str | None = None,
) -> bool:
    """Close a running attempt and notify the Queue Advancer exactly once.

    Pending changes are committed first on every path. If that commit fails
    the attempt stays running, the project lock stays held and the error
    propagates. Returns False when the attempt was already finalized.
    """
    attempt = get_attempt(conn, attempt_id)
    if not attempt:
        raise ValueError(f"Attempt '{attempt_id}' not found.")
    if attempt["outcome"] != "running":
        log.info("Attempt %s already finished as %s", attempt_id, attempt["outcome"])
        return False
    task, project = _load(conn, attempt["task_id"])

    after_head = _commit_pending_work(attempt, task, project)
    if not finish_attempt(
        conn,
        attempt_id,
        outcome=outcome,
        after_head_commit=after_head,
        error_kind=error_kind,
        failure_reason=reason,
    ):
        log.info("Attempt %s was finalized concurrently", attempt_id)
        return False

    set_task_commits(
        conn,
        task["id"],
        before_head_commit=attempt["before_head_commit"],
        after_head_commit=after_head,
        merge_commit=None,
    )
    log.info("Attempt %s of task %s finished: %s", attempt_id, task["id"], outcome)
    publish_event(
        "attempt:finished",
        attempt_id,
        outcome,
        project=project["name"],
        extra={"task_id": task["id"], "error_kind": error_kind},
    )

    from trunkq import advancer

    advancer.on_task_terminal(
        conn, task["id"], outcome, error_kind, attempt_id=attempt_id, reason=reason
    )
    return True


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def cancel_attempt(conn: sqlite3.Connection, task_id: str) -> AttemptRow:
    """Cancel the running attempt of ``task_id``.

    A live agent gets SIGTERM and the worker finalizes once it exits. While
    the rq job is still running without a live agent, the worker sees the
    request and finalizes. Otherwise the attempt is finalized here.
    """
    attempt = get_latest_attempt(conn, task_id)
    if not attempt or attempt["outcome"] != "running":
        raise ValueError(f"Task '{task_id}' has no running attempt.")
    request_attempt_cancel(conn, attempt["id"])
    # Re-read: the worker records the pid only while no cancel is pending.
    attempt = get_attempt(conn, attempt["id"])
    assert attempt is not None

    pid = attempt["pid"]
    if pid and _pid_alive(pid):
        log.info("Sending SIGTERM to agent pid=%d for task %s", pid, task_id)
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pid = None
    else:
        pid = None

    if pid is None:
        job_id = attempt["job_id"]
        if job_id and not cancel_queued_job(job_id) and is_job_active(job_id):
            log.info("Worker for attempt %s is running; it will finalize the cancel", attempt["id"])
        else:
            finalize_attempt(conn, attempt["id"], "cancelled", reason="Cancelled by operator")

    refreshed = get_attempt(conn, attempt["id"])
    assert refreshed is not None
    return refreshed


def cancel_task(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    """Cancel a task: its running attempt if there is one, else the task itself."""
    task, project = _load(conn, task_id)
    latest = get_latest_attempt(conn, task_id)
    if latest and latest["outcome"] == "running":
        cancel_attempt(conn, task_id)
    elif task["status"] in ("todo", "inreview"):
        update_task_status(conn, task_id, "cancelled")
        log.info("Cancelled task %s", task_id)
        publish_event("task:status", task_id, "cancelled", project=project["name"])
    else:
        raise ValueError(f"Task '{task_id}' is {task['status']}; nothing to cancel.")
    refreshed = get_task(conn, task_id)
    assert refreshed is not None
    return refreshed


def recover_crashed_attempts(
    conn: sqlite3.Connection, project_id: str | None = None
) -> list[str]:
    """Fail running attempts whose agent died and whose worker is gone too.

    An exited agent whose rq job is still active is left alone: the worker is
    committing or finalizing it.
    """
    recovered = []
    for attempt in list_running_attempts(conn, project_id):
        pid = attempt["pid"]
        if not pid or _pid_alive(pid):
            continue
        if attempt["job_id"] and is_job_active(attempt["job_id"]):
            log.info("Agent of attempt %s exited; its worker is still finishing", attempt["id"])
            continue
        log.warning("Agent pid=%d for attempt %s is gone; marking failed", pid, attempt["id"])
        if finalize_attempt(
            conn,
            attempt["id"],
            "failed",
            error_kind=ERROR_AGENT_EXECUTION,
            reason=f"Agent process {pid} exited without reporting",
        ):
            recovered.append(attempt["id"])
    return recovered
