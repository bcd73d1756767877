"""Tests for the execution supervisor."""

from __future__ import annotations

import subprocess

import pytest

from trunkq import locks, supervisor
from trunkq.db import (
    create_task,
    get_attempt,
    get_latest_attempt,
    get_queue_state,
    get_task,
    halt_project_queue,
    record_attempt_pid,
    request_attempt_cancel,
)
from trunkq.errors import WorkspaceConflict
from trunkq.project_config import ProjectConfig
from trunkq.queue_manager import enqueue
from trunkq.supervisor import (
    cancel_attempt,
    cancel_task,
    finalize_attempt,
    recover_crashed_attempts,
    run_agent,
    start_attempt,
)

FAST = ProjectConfig(workspace_retries=0, retry_backoff=0)


def _sequential(conn, project, title) -> dict:
    task = create_task(conn, project_id=project["id"], title=title)
    return enqueue(conn, task["id"])


def _dead_pid() -> int:
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


def test_start_attempt_records_head_and_schedules(
    db_conn, repo_project, git_repo, _isolate_side_effects
):
    task = _sequential(db_conn, repo_project, "First")
    main_tip = git_repo.head("main")

    attempt = start_attempt(db_conn, task["id"], config=FAST)

    assert attempt["outcome"] == "running"
    assert attempt["attempt_number"] == 1
    assert attempt["before_head_commit"] == main_tip
    assert attempt["branch_point"] == main_tip
    assert attempt["job_id"] == f"attempt-{attempt['id']}"
    _isolate_side_effects.assert_called_once_with(attempt["id"])
    stored = get_task(db_conn, task["id"])
    assert stored["status"] == "inprogress"
    assert stored["before_head_commit"] == main_tip
    assert locks.get_holder(db_conn, repo_project["id"])["attempt_id"] == attempt["id"]


def test_only_queue_head_may_start(db_conn, repo_project, git_repo):
    _sequential(db_conn, repo_project, "First")
    second = _sequential(db_conn, repo_project, "Second")
    with pytest.raises(ValueError, match="head of the queue"):
        start_attempt(db_conn, second["id"], config=FAST)


def test_halted_queue_does_not_start(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    halt_project_queue(db_conn, repo_project["id"], "other", "AgentExecutionFailure: x")
    assert start_attempt(db_conn, task["id"], config=FAST) is None
    assert get_task(db_conn, task["id"])["status"] == "todo"


def test_provisioning_failure_marks_task_and_halts(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    git_repo.write("README.md", "dirty\n")

    with pytest.raises(WorkspaceConflict):
        start_attempt(db_conn, task["id"], config=FAST)

    stored = get_task(db_conn, task["id"])
    assert stored["status"] == "inreview"
    assert stored["error_kind"] == "WorkspaceConflict"
    state = get_queue_state(db_conn, repo_project["id"])
    assert state["halted"] == 1
    assert state["halted_task_id"] == task["id"]
    assert locks.get_holder(db_conn, repo_project["id"]) is None


def test_schedule_failure_fails_attempt(db_conn, repo_project, git_repo, monkeypatch):
    from redis.exceptions import ConnectionError as RedisConnectionError

    def boom(attempt_id):
        raise RedisConnectionError("no redis")

    monkeypatch.setattr(supervisor, "enqueue_task_attempt", boom)
    task = _sequential(db_conn, repo_project, "First")

    attempt = start_attempt(db_conn, task["id"], config=FAST)

    assert attempt["outcome"] == "failed"
    assert attempt["error_kind"] == "AgentExecutionFailure"
    assert get_task(db_conn, task["id"])["status"] == "inreview"
    assert get_queue_state(db_conn, repo_project["id"])["halted"] == 1


def test_run_agent_success_sees_task_env(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    config = ProjectConfig(agent_command="""sh -c 'printf %s "$TRUNKQ_TASK_ID" > id.txt'""")

    outcome, error_kind, reason = run_agent(db_conn, attempt["id"], config=config)

    assert (outcome, error_kind, reason) == ("succeeded", None, None)
    assert (git_repo.path / "id.txt").read_text() == task["id"]
    assert get_attempt(db_conn, attempt["id"])["pid"] is not None


def test_run_agent_nonzero_exit(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    config = ProjectConfig(agent_command="sh -c 'echo nope >&2; exit 3'")

    outcome, error_kind, reason = run_agent(db_conn, attempt["id"], config=config)

    assert outcome == "failed"
    assert error_kind == "AgentExecutionFailure"
    assert "code 3" in reason
    assert "nope" in reason


def test_run_agent_without_command(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    outcome, error_kind, reason = run_agent(db_conn, attempt["id"], config=ProjectConfig())
    assert outcome == "failed"
    assert error_kind == "AgentExecutionFailure"
    assert "No agent command" in reason


def test_run_agent_timeout(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    config = ProjectConfig(agent_command="sleep 10", agent_timeout=0.3)
    outcome, error_kind, reason = run_agent(db_conn, attempt["id"], config=config)
    assert outcome == "failed"
    assert "timed out" in reason


def test_run_agent_launch_error(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    config = ProjectConfig(agent_command="definitely-not-a-real-agent-binary --go")
    outcome, error_kind, reason = run_agent(db_conn, attempt["id"], config=config)
    assert outcome == "failed"
    assert "failed to launch" in reason


def test_finalize_commits_pending_work_then_merges(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    git_repo.write("feature.txt", "agent output\n")

    assert finalize_attempt(db_conn, attempt["id"], "succeeded")

    finished = get_attempt(db_conn, attempt["id"])
    assert finished["outcome"] == "succeeded"
    assert finished["after_head_commit"] != finished["before_head_commit"]
    assert git_repo.head(attempt["task_branch"]) == finished["after_head_commit"]
    stored = get_task(db_conn, task["id"])
    assert stored["status"] == "done"
    assert stored["queue_position"] is None
    assert git_repo.branch() == "main"
    assert (git_repo.path / "feature.txt").exists()
    assert locks.get_holder(db_conn, repo_project["id"]) is None


def test_finalize_runs_once(db_conn, repo_project, git_repo, monkeypatch):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    calls = []
    from trunkq import advancer

    real = advancer.on_task_terminal

    def spy(*args, **kwargs):
        calls.append(args)
        return real(*args, **kwargs)

    monkeypatch.setattr(advancer, "on_task_terminal", spy)
    assert finalize_attempt(db_conn, attempt["id"], "succeeded")
    assert not finalize_attempt(db_conn, attempt["id"], "failed")
    assert len(calls) == 1


def test_commit_failure_keeps_lock_and_attempt_running(
    db_conn, repo_project, git_repo, monkeypatch
):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    git_repo.write("feature.txt", "agent output\n")

    def broken(repo_dir, message):
        raise RuntimeError("git commit failed: disk full")

    monkeypatch.setattr(supervisor, "commit_if_dirty", broken)
    with pytest.raises(RuntimeError, match="disk full"):
        finalize_attempt(db_conn, attempt["id"], "succeeded")

    assert get_attempt(db_conn, attempt["id"])["outcome"] == "running"
    assert locks.get_holder(db_conn, repo_project["id"])["task_id"] == task["id"]
    assert get_task(db_conn, task["id"])["status"] == "inprogress"


def test_cancel_commits_changes_before_lock_release(
    db_conn, repo_project, git_repo, monkeypatch
):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    branch = attempt["task_branch"]
    git_repo.write("half-done.txt", "partial\n")

    seen_at_release = {}
    from trunkq import advancer

    real_release = advancer.locks.release

    def release_spy(conn, project_id, task_id, attempt_id=None):
        seen_at_release["content"] = git_repo.run("show", f"{branch}:half-done.txt")
        return real_release(conn, project_id, task_id, attempt_id)

    monkeypatch.setattr(advancer.locks, "release", release_spy)

    cancelled = cancel_attempt(db_conn, task["id"])

    assert cancelled["outcome"] == "cancelled"
    assert cancelled["cancel_requested"] == 1
    assert seen_at_release["content"] == "partial"
    assert git_repo.run("show", f"{branch}:half-done.txt") == "partial"
    assert get_task(db_conn, task["id"])["status"] == "cancelled"
    assert locks.get_holder(db_conn, repo_project["id"]) is None


def test_cancel_signals_live_agent(db_conn, repo_project, git_repo, monkeypatch):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    record_attempt_pid(db_conn, attempt["id"], 4321)
    signals = []
    monkeypatch.setattr(supervisor, "_pid_alive", lambda pid: True)
    monkeypatch.setattr(supervisor.os, "kill", lambda pid, sig: signals.append((pid, sig)))

    result = cancel_attempt(db_conn, task["id"])

    assert signals == [(4321, supervisor.signal.SIGTERM)]
    assert result["outcome"] == "running"
    assert result["cancel_requested"] == 1


def test_cancel_without_running_attempt(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    with pytest.raises(ValueError, match="no running attempt"):
        cancel_attempt(db_conn, task["id"])


def test_cancel_task_pending(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    cancelled = cancel_task(db_conn, task["id"])
    assert cancelled["status"] == "cancelled"
    assert cancelled["queue_position"] is None


def test_recover_crashed_attempts(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    record_attempt_pid(db_conn, attempt["id"], _dead_pid())

    assert recover_crashed_attempts(db_conn) == [attempt["id"]]

    finished = get_attempt(db_conn, attempt["id"])
    assert finished["outcome"] == "failed"
    assert finished["error_kind"] == "AgentExecutionFailure"
    assert get_task(db_conn, task["id"])["status"] == "inreview"
    assert get_queue_state(db_conn, repo_project["id"])["halted"] == 1
    assert recover_crashed_attempts(db_conn) == []


def test_parallel_attempt_runs_in_worktree(db_conn, repo_project, git_repo):
    task = create_task(db_conn, project_id=repo_project["id"], title="Side quest")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    config = ProjectConfig(agent_command="sh -c 'echo side > side.txt'")

    outcome, _, _ = run_agent(db_conn, attempt["id"], config=config)
    assert outcome == "succeeded"
    assert not (git_repo.path / "side.txt").exists()
    finalize_attempt(db_conn, attempt["id"], outcome)

    assert get_task(db_conn, task["id"])["status"] == "inreview"
    assert git_repo.branch() == "main"
    assert "side.txt" in git_repo.run("ls-tree", "--name-only", attempt["task_branch"])
    assert "side.txt" not in git_repo.run("ls-tree", "--name-only", "main")


def test_cancelled_attempt_never_launches_agent(db_conn, repo_project, git_repo):
    first = _sequential(db_conn, repo_project, "First")
    second = _sequential(db_conn, repo_project, "Second")
    attempt = start_attempt(db_conn, first["id"], config=FAST)
    cancel_attempt(db_conn, first["id"])
    next_attempt = get_latest_attempt(db_conn, second["id"])
    assert git_repo.branch() == next_attempt["task_branch"]

    config = ProjectConfig(agent_command="sh -c 'echo late > late.txt'")
    outcome, error_kind, reason = run_agent(db_conn, attempt["id"], config=config)

    assert (outcome, error_kind) == ("cancelled", None)
    assert "before the agent started" in reason
    assert not (git_repo.path / "late.txt").exists()
    assert get_attempt(db_conn, attempt["id"])["pid"] is None
    assert get_task(db_conn, second["id"])["status"] == "inprogress"


def test_cancel_during_agent_launch_kills_agent(db_conn, repo_project, git_repo, monkeypatch):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    real_record = supervisor.record_attempt_pid
    launched = []

    def cancel_then_record(conn, attempt_id, pid):
        launched.append(pid)
        request_attempt_cancel(conn, attempt_id)
        return real_record(conn, attempt_id, pid)

    monkeypatch.setattr(supervisor, "record_attempt_pid", cancel_then_record)
    config = ProjectConfig(agent_command="sleep 30", agent_timeout=60)

    outcome, _, _ = run_agent(db_conn, attempt["id"], config=config)

    assert outcome == "cancelled"
    assert len(launched) == 1
    assert not supervisor._pid_alive(launched[0])
    assert get_attempt(db_conn, attempt["id"])["pid"] is None


def test_cancel_defers_to_running_worker(db_conn, repo_project, git_repo, monkeypatch):
    first = _sequential(db_conn, repo_project, "First")
    second = _sequential(db_conn, repo_project, "Second")
    attempt = start_attempt(db_conn, first["id"], config=FAST)
    monkeypatch.setattr(supervisor, "is_job_active", lambda job_id: True)

    result = cancel_attempt(db_conn, first["id"])

    assert result["outcome"] == "running"
    assert result["cancel_requested"] == 1
    assert locks.get_holder(db_conn, repo_project["id"])["attempt_id"] == attempt["id"]
    assert get_task(db_conn, second["id"])["status"] == "todo"
    assert git_repo.branch() == attempt["task_branch"]

    config = ProjectConfig(agent_command="sh -c 'echo late > late.txt'")
    outcome, _, _ = run_agent(db_conn, attempt["id"], config=config)
    assert outcome == "cancelled"
    assert not (git_repo.path / "late.txt").exists()
    finalize_attempt(db_conn, attempt["id"], outcome)
    assert get_task(db_conn, second["id"])["status"] == "inprogress"


def test_recover_leaves_attempt_whose_job_is_active(db_conn, repo_project, git_repo, monkeypatch):
    task = _sequential(db_conn, repo_project, "First")
    attempt = start_attempt(db_conn, task["id"], config=FAST)
    record_attempt_pid(db_conn, attempt["id"], _dead_pid())
    checked = []

    def active(job_id):
        checked.append(job_id)
        return True

    monkeypatch.setattr(supervisor, "is_job_active", active)
    assert recover_crashed_attempts(db_conn) == []
    assert checked == [attempt["job_id"]]
    assert get_attempt(db_conn, attempt["id"])["outcome"] == "running"
    assert get_task(db_conn, task["id"])["status"] == "inprogress"

    monkeypatch.setattr(supervisor, "is_job_active", lambda job_id: False)
    assert recover_crashed_attempts(db_conn) == [attempt["id"]]
