"""Merge a finished sequential task branch back into its target branch."""

from __future__ import annotations

import logging
import sqlite3

from trunkq.db import (
    AttemptRow,
    TaskRow,
    get_project,
    set_attempt_merge_result,
    set_task_commits,
)
from trunkq.errors import ERROR_MERGE_CONFLICT, MergeConflict
from trunkq.git_ops import MergeResult, merge_branch
from trunkq.workspace import resolve_target_branch

log = logging.getLogger(__name__)


def has_changes(attempt: AttemptRow) -> bool:
    """True when the attempt moved its branch past where it started."""
    return bool(attempt["after_head_commit"]) and (
        attempt["after_head_commit"] != attempt["before_head_commit"]
    )


def _merge_message(task: TaskRow) -> str:
    return f"Merge task {task['id'][:8]}: {task['title']}"


def _record_failure(
    conn: sqlite3.Connection, task: TaskRow, attempt: AttemptRow, reason: str
) -> None:
    set_attempt_merge_result(
        conn,
        attempt["id"],
        merge_commit=None,
        outcome="failed" if attempt["outcome"] == "succeeded" else attempt["outcome"],
        error_kind=ERROR_MERGE_CONFLICT,
        failure_reason=reason,
    )
    set_task_commits(
        conn,
        task["id"],
        before_head_commit=attempt["before_head_commit"],
        after_head_commit=attempt["after_head_commit"],
        merge_commit=None,
    )


def merge_attempt(conn: sqlite3.Connection, task: TaskRow, attempt: AttemptRow) -> MergeResult:
    """Integrate ``attempt``'s branch into the task's target branch.

    Fast-forwards when the target has not advanced since the branch point
    (``merge_commit`` stays None, target head equals ``after_head_commit``);
    otherwise records a real merge commit. A conflict leaves the task branch
    untouched, stores the error on the attempt and raises MergeConflict. Any
    other git failure is stored the same way with a ``Merge failed`` reason
    and re-raised as RuntimeError.
    """
    project = get_project(conn, task["project_id"])
    if not project:
        raise ValueError(f"Project '{task['project_id']}' not found.")
    target = resolve_target_branch(conn, task)
    branch = attempt["task_branch"]
    branch_point = attempt["branch_point"] or attempt["before_head_commit"] or ""

    log.info("Merging %s into %s for task %s", branch, target, task["id"])
    try:
        result = merge_branch(
            project["dir"],
            target_branch=target,
            branch=branch,
            branch_point=branch_point,
            message=_merge_message(task),
        )
    except MergeConflict as exc:
        reason = f"{exc}: {', '.join(exc.conflicting_files)}"
        _record_failure(conn, task, attempt, reason)
        log.error("Merge conflict for task %s: %s", task["id"], reason)
        raise
    except RuntimeError as exc:
        reason = f"Merge failed: {exc}"
        _record_failure(conn, task, attempt, reason)
        log.error("Could not merge task %s: %s", task["id"], exc)
        raise

    set_attempt_merge_result(conn, attempt["id"], merge_commit=result.merge_commit)
    set_task_commits(
        conn,
        task["id"],
        before_head_commit=attempt["before_head_commit"],
        after_head_commit=attempt["after_head_commit"],
        merge_commit=result.merge_commit,
    )
    if result.fast_forward:
        log.info("Fast-forwarded %s to %s", target, result.target_head[:12])
    else:
        log.info("Merged %s into %s as %s", branch, target, result.target_head[:12])
    return result
