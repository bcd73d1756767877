from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Iterator
from pathlib import Path

import click

from trunkq import __version__, locks
from trunkq.advancer import advance, on_task_terminal, resume
from trunkq.db import (
    ATTEMPT_TERMINAL_OUTCOMES,
    VALID_EXECUTION_MODES,
    VALID_TASK_STATUSES,
    ProjectRow,
    add_project,
    connect,
    create_task,
    get_latest_attempt,
    get_project,
    get_project_by_dir,
    get_queue_state,
    get_task,
    list_attempts,
    list_projects,
    list_task_logs,
    list_tasks,
    set_project_agent_command,
    set_project_base_branch,
)
from trunkq.errors import VALID_ERROR_KINDS
from trunkq.git_ops import is_git_repo
from trunkq.project_config import load_project_config
from trunkq.queue import get_queue_counts_safe, publish_event
from trunkq.queue_manager import dequeue, enqueue, get_next, get_queue, list_sequential_tasks
from trunkq.queue_manager import reorder as reorder_queue
from trunkq.supervisor import cancel_task, finalize_attempt, recover_crashed_attempts
from trunkq.supervisor import start_attempt as supervisor_start_attempt
from trunkq.workspace import cleanup_workspace

log = logging.getLogger(__name__)


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. Since all
    commands output JSON, this subclass intercepts Click exceptions and emits
    a JSON error object on stdout. Unknown commands get fuzzy-matched
    suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Run agent coding tasks one at a time against a shared repository.

    \b
    Quick start:
      trunkq init                                 Register current repo as a project
      trunkq project set-agent "my-agent --yes"   Command run for every attempt
      trunkq task create "Fix login" --sequential Queue a task on the trunk
      trunkq queue show                           Inspect the queue

    \b
    Key concepts:
      sequential  Runs in the main checkout, one at a time, merged on success
      parallel    Runs in its own git worktree, never merged automatically
      halt        A failed sequential task stops its queue until 'queue resume'
    """


def _emit(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@contextlib.contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (RuntimeError, ValueError) as exc:
        # TrunkqError and git failures are RuntimeErrors.
        raise click.ClickException(str(exc)) from exc


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "project": "Run 'trunkq project list' to see registered projects.",
        "task": "Run 'trunkq task list -p PROJECT' to see tasks.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


def _resolve_project(conn, project_name: str | None) -> ProjectRow:
    """Project by name or id, else the project registered for the current directory."""
    if project_name:
        proj = get_project(conn, project_name)
        if not proj:
            raise _not_found("project", project_name)
        return proj
    cwd = Path.cwd().resolve()
    for candidate in (cwd, *cwd.parents):
        proj = get_project_by_dir(conn, str(candidate))
        if proj:
            return proj
    raise click.ClickException("No project for the current directory. Use -p PROJECT.")


def _require_task(conn, task_id: str):
    t = get_task(conn, task_id)
    if not t:
        raise _not_found("task", task_id)
    return t


_project_option = click.option(
    "--project", "-p", "project_name", default=None, help="Project name or id."
)


# -- init --


@main.command()
@click.argument(
    "path",
    required=False,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)
@click.option("--name", "-n", default=None, help="Project name (default: directory name).")
@click.option("--base-branch", "-b", default=None, help="Default target branch.")
def init(path: str | None, name: str | None, base_branch: str | None):
    """Register a git repository as a trunkq project."""
    target = Path(path) if path else Path.cwd().resolve()
    if not is_git_repo(str(target)):
        raise click.ClickException(f"'{target}' is not a git repository.")
    project_name = name or target.name

    with connect() as conn:
        existing_by_dir = get_project_by_dir(conn, str(target))
        if existing_by_dir:
            _emit(dict(existing_by_dir))
            return
        existing_by_name = get_project(conn, project_name)
        if existing_by_name:
            raise click.ClickException(
                f"Project name '{project_name}' is already registered for "
                f"'{existing_by_name['dir']}'. Use --name to choose a different name."
            )
        with _domain_errors():
            add_project(conn, project_name, str(target), base_branch)
        proj = get_project(conn, project_name)
    _emit(dict(proj) if proj else {})


# -- project --


@main.group()
def project():
    """Register, configure, and inspect projects."""


@project.command("list")
def project_list():
    """List all projects."""
    with connect() as conn:
        _emit([dict(p) for p in list_projects(conn)])


@project.command("show")
@click.argument("name_or_id")
def project_show(name_or_id: str):
    """Show project details with its queue state and effective config."""
    with connect() as conn:
        p = get_project(conn, name_or_id)
        if not p:
            raise _not_found("project", name_or_id)
        payload = dict(p)
        payload["queue"] = get_queue_state(conn, p["id"])
        payload["lock"] = locks.get_holder(conn, p["id"])
    config = load_project_config(p["dir"])
    payload["config"] = {
        "agent_command": config.agent_command,
        "agent_timeout": config.agent_timeout,
        "race_retries": config.race_retries,
        "workspace_retries": config.workspace_retries,
        "branch_attempts": config.branch_attempts,
        "retry_backoff": config.retry_backoff,
    }
    _emit(payload)


@project.command("set-base-branch")
@click.argument("branch", required=False)
@_project_option
@click.option("--reset", is_flag=True, help="Fall back to the default branch name.")
def project_set_base_branch(branch: str | None, project_name: str | None, reset: bool):
    """Set the branch sequential tasks merge into."""
    if not reset and not branch:
        raise click.ClickException("Pass a BRANCH or --reset.")
    with connect() as conn:
        proj = _resolve_project(conn, project_name)
        with _domain_errors():
            set_project_base_branch(conn, proj["id"], None if reset else branch)
        _emit(dict(get_project(conn, proj["id"]) or {}))


@project.command("set-agent")
@click.argument("command", required=False)
@_project_option
@click.option("--reset", is_flag=True, help="Use the command from .trunkq/queue.toml.")
def project_set_agent(command: str | None, project_name: str | None, reset: bool):
    """Set the agent command run for every attempt."""
    if not reset and not command:
        raise click.ClickException("Pass a COMMAND or --reset.")
    with connect() as conn:
        proj = _resolve_project(conn, project_name)
        set_project_agent_command(conn, proj["id"], None if reset else command)
        _emit(dict(get_project(conn, proj["id"]) or {}))


@project.command("unlock")
@_project_option
def project_unlock(project_name: str | None):
    """Force-release the project lock (after a crashed worker)."""
    with connect() as conn:
        proj = _resolve_project(conn, project_name)
        holder = locks.force_release(conn, proj["id"])
    _emit({"project_id": proj["id"], "released": holder})


# -- task --


@main.group()
def task():
    """Create, run, and control tasks."""


@task.command("create")
@click.argument("title")
@_project_option
@click.option("--description", "-d", default="", help="Task description for the agent.")
@click.option("--target-branch", default=None, help="Merge target (default: project base).")
@click.option("--sequential", is_flag=True, help="Append the task to the project queue.")
@click.option("--start", is_flag=True, help="Start the task right away if it can run.")
def task_create(
    title: str,
    project_name: str | None,
    description: str,
    target_branch: str | None,
    sequential: bool,
    start: bool,
):
    """Create a task."""
    with connect() as conn:
        proj = _resolve_project(conn, project_name)
        with _domain_errors():
            t = create_task(
                conn,
                project_id=proj["id"],
                title=title,
                description=description,
                target_branch=target_branch,
            )
            if sequential:
                config = load_project_config(proj["dir"])
                t = enqueue(conn, t["id"], backoff=config.retry_backoff)
            publish_event("task:status", t["id"], "todo", project=proj["name"], source="cli")
            attempt = None
            if start:
                if sequential:
                    attempt = advance(conn, proj["id"])
                else:
                    attempt = supervisor_start_attempt(conn, t["id"])
        payload = dict(get_task(conn, t["id"]) or t)
    payload["attempt"] = attempt
    _emit(payload)


@task.command("show")
@click.argument("task_id")
def task_show(task_id: str):
    """Show task details."""
    with connect() as conn:
        t = _require_task(conn, task_id)
        payload = dict(t)
        payload["latest_attempt"] = get_latest_attempt(conn, task_id)
    _emit(payload)


@task.command("list")
@_project_option
@click.option(
    "--status",
    "-s",
    default=None,
    type=click.Choice(sorted(VALID_TASK_STATUSES), case_sensitive=False),
    help="Filter by status.",
)
@click.option(
    "--mode",
    "execution_mode",
    default=None,
    type=click.Choice(sorted(VALID_EXECUTION_MODES), case_sensitive=False),
    help="Filter by execution mode.",
)
def task_list(project_name: str | None, status: str | None, execution_mode: str | None):
    """List tasks."""
    with connect() as conn:
        proj = _resolve_project(conn, project_name)
        tasks = list_tasks(conn, proj["id"], status=status, execution_mode=execution_mode)
    _emit(tasks)


@task.command("start")
@click.argument("task_id")
def task_start(task_id: str):
    """Start an attempt (sequential tasks must be at the queue head)."""
    with connect() as conn:
        _require_task(conn, task_id)
        with _domain_errors():
            attempt = supervisor_start_attempt(conn, task_id)
        if attempt is None:
            t = get_task(conn, task_id)
            state = get_queue_state(conn, t["project_id"]) if t else None
            holder = locks.get_holder(conn, t["project_id"]) if t else None
            raise click.ClickException(
                f"Task '{task_id}' cannot start now"
                + (" (queue halted)" if state and state["halted"] else "")
                + (f" (project locked by {holder['task_id']})" if holder else "")
                + "."
            )
    _emit(attempt)


@task.command("cancel")
@click.argument("task_id")
def task_cancel(task_id: str):
    """Cancel a task, stopping its running attempt if any."""
    with connect() as conn:
        _require_task(conn, task_id)
        with _domain_errors():
            t = cancel_task(conn, task_id)
    _emit(t)


@task.command("finish")
@click.argument("task_id")
@click.option(
    "--outcome",
    required=True,
    type=click.Choice(sorted(ATTEMPT_TERMINAL_OUTCOMES), case_sensitive=False),
)
@click.option(
    "--error-kind",
    default=None,
    type=click.Choice(sorted(VALID_ERROR_KINDS)),
    help="Error kind for a failed outcome.",
)
@click.option("--reason", default=None, help="Failure reason recorded on the task.")
def task_finish(task_id: str, outcome: str, error_kind: str | None, reason: str | None):
    """Report the terminal outcome of a task's running attempt.

    For execution layers that run the agent themselves instead of through the
    rq worker. Without a running attempt the outcome goes straight to the
    queue advancer.
    """
    with connect() as conn:
        _require_task(conn, task_id)
        with _domain_errors():
            attempt = get_latest_attempt(conn, task_id)
            if attempt and attempt["outcome"] == "running":
                finalize_attempt(
                    conn, attempt["id"], outcome, error_kind=error_kind, reason=reason
                )
                summary = {"task_id": task_id, "attempt_id": attempt["id"], "outcome": outcome}
            else:
                summary = on_task_terminal(conn, task_id, outcome, error_kind, reason=reason)
        summary["task"] = get_task(conn, task_id)
    _emit(summary)


@task.command("attempts")
@click.argument("task_id")
def task_attempts(task_id: str):
    """List a task's attempts with their commits and outcomes."""
    with connect() as conn:
        _require_task(conn, task_id)
        _emit(list_attempts(conn, task_id))


@task.command("logs")
@click.argument("task_id")
@click.option("--level", default=None, help="Filter by level (INFO, WARNING, ERROR).")
def task_logs(task_id: str, level: str | None):
    """Show persisted log records for a task."""
    with connect() as conn:
        _require_task(conn, task_id)
        _emit(list_task_logs(conn, task_id, level=level.upper() if level else None))


@task.command("cleanup")
@click.argument("task_id")
def task_cleanup(task_id: str):
    """Remove a finished task's workspace container (branches are kept)."""
    with connect() as conn:
        t = _require_task(conn, task_id)
        if t["status"] == "inprogress":
            raise click.ClickException(f"Task '{task_id}' is still running.")
        with _domain_errors():
            removed = cleanup_workspace(conn, task_id)
    _emit({"task_id": task_id, "removed": removed})


# -- queue --


@main.group()
def queue():
    """Inspect and reorder a project's sequential queue."""


@queue.command("show")
@_project_option
@click.option("--all", "-a", "show_all", is_flag=True, help="Include running and in-review tasks.")
def queue_show(project_name: str | None, show_all: bool):
    """Show pending sequential tasks in execution order."""
    with connect() as conn:
        proj = _resolve_project(conn, project_name)
        tasks = list_sequential_tasks(conn, proj["id"]) if show_all else get_queue(conn, proj["id"])
        _emit(
            {
                "project": proj["name"],
                "state": get_queue_state(conn, proj["id"]),
                "lock": locks.get_holder(conn, proj["id"]),
                "tasks": tasks,
            }
        )


@queue.command("enqueue")
@click.argument("task_id")
def queue_enqueue(task_id: str):
    """Append a task to the tail of its project's queue."""
    with connect() as conn:
        t = _require_task(conn, task_id)
        proj = get_project(conn, t["project_id"])
        config = load_project_config(proj["dir"] if proj else None)
        with _domain_errors():
            t = enqueue(conn, task_id, backoff=config.retry_backoff)
    _emit(t)


@queue.command("dequeue")
@click.argument("task_id")
def queue_dequeue(task_id: str):
    """Take a task out of the queue; it becomes a parallel task."""
    with connect() as conn:
        _require_task(conn, task_id)
        with _domain_errors():
            t = dequeue(conn, task_id)
    _emit(t)


@queue.command("reorder")
@click.argument("task_id")
@click.argument("new_index", type=int)
def queue_reorder(task_id: str, new_index: int):
    """Move a pending task to NEW_INDEX (0 = next to run)."""
    with connect() as conn:
        t = _require_task(conn, task_id)
        proj = get_project(conn, t["project_id"])
        config = load_project_config(proj["dir"] if proj else None)
        with _domain_errors():
            tasks = reorder_queue(
                conn,
                task_id,
                new_index,
                retries=config.race_retries,
                backoff=config.retry_backoff,
            )
    _emit(tasks)


@queue.command("next")
@_project_option
def queue_next(project_name: str | None):
    """Show the task that would start next."""
    with connect() as conn:
        proj = _resolve_project(conn, project_name)
        _emit(get_next(conn, proj["id"]))


@queue.command("advance")
@_project_option
def queue_advance(project_name: str | None):
    """Start the head of the queue if nothing blocks it."""
    with connect() as conn:
        proj = _resolve_project(conn, project_name)
        with _domain_errors():
            attempt = advance(conn, proj["id"])
    _emit({"project": proj["name"], "attempt": attempt})


@queue.command("resume")
@_project_option
@click.option(
    "--no-requeue",
    is_flag=True,
    help="Drop the failed task from the queue instead of retrying it.",
)
def queue_resume(project_name: str | None, no_requeue: bool):
    """Clear a halted queue and advance it."""
    with connect() as conn:
        proj = _resolve_project(conn, project_name)
        with _domain_errors():
            summary = resume(conn, proj["id"], requeue_failed=not no_requeue)
    _emit(summary)


@queue.command("status")
def queue_status():
    """Show rq job counts for the attempt queue."""
    _emit(get_queue_counts_safe())


# -- recover --


@main.command()
@_project_option
def recover(project_name: str | None):
    """Fail running attempts whose agent process is gone."""
    with connect() as conn:
        project_id = _resolve_project(conn, project_name)["id"] if project_name else None
        with _domain_errors():
            recovered = recover_crashed_attempts(conn, project_id)
    _emit({"recovered": recovered})
