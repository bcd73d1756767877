"""Tests for workspace provisioning."""

from __future__ import annotations

from pathlib import Path

import pytest

from trunkq import locks, workspace
from trunkq.db import create_task, get_task
from trunkq.errors import WorkspaceConflict
from trunkq.git_ops import branch_exists, create_branch, task_branch_name
from trunkq.project_config import ProjectConfig
from trunkq.queue_manager import enqueue

FAST = ProjectConfig(workspace_retries=1, retry_backoff=0)


def _sequential(conn, project, title="Add feature") -> dict:
    task = create_task(conn, project_id=project["id"], title=title)
    return enqueue(conn, task["id"])


def test_sequential_checks_out_branch_in_main_repo(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project)
    main_tip = git_repo.head("main")

    ws = workspace.provision(db_conn, task["id"], config=FAST)

    assert ws is not None
    assert ws.task_branch == task_branch_name(task["id"], "Add feature")
    assert ws.branch_point == main_tip
    assert ws.work_dir == str(git_repo.path)
    assert git_repo.branch() == ws.task_branch
    link = Path(ws.workspace_dir) / git_repo.path.name
    assert link.is_symlink()
    assert link.resolve() == git_repo.path.resolve()

    stored = get_task(db_conn, task["id"])
    assert stored["workspace_state"] == "ready"
    assert stored["task_branch"] == ws.task_branch
    assert locks.get_holder(db_conn, repo_project["id"])["task_id"] == task["id"]


def test_sequential_returns_none_when_locked(db_conn, repo_project, git_repo):
    first = _sequential(db_conn, repo_project, "First")
    second = _sequential(db_conn, repo_project, "Second")
    assert workspace.provision(db_conn, first["id"], config=FAST) is not None

    assert workspace.provision(db_conn, second["id"], config=FAST) is None
    stored = get_task(db_conn, second["id"])
    assert stored["workspace_state"] == "uninitialized"
    assert stored["queue_position"] is not None


def test_dirty_main_checkout_fails_fast(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project)
    git_repo.write("README.md", "local edit\n")

    with pytest.raises(WorkspaceConflict, match="uncommitted changes"):
        workspace.provision(db_conn, task["id"], config=FAST)

    assert get_task(db_conn, task["id"])["workspace_state"] == "failed"
    assert locks.get_holder(db_conn, repo_project["id"]) is None
    # Nothing was stashed or discarded.
    assert (git_repo.path / "README.md").read_text() == "local edit\n"
    assert git_repo.branch() == "main"


def test_branch_collision_gets_suffix(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project)
    taken = task_branch_name(task["id"], "Add feature")
    create_branch(str(git_repo.path), taken, "main")

    ws = workspace.provision(db_conn, task["id"], config=FAST)
    assert ws.task_branch == f"{taken}-2"


def test_branch_budget_exhausted(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project)
    for suffix in (1, 2):
        name = task_branch_name(task["id"], "Add feature", suffix)
        create_branch(str(git_repo.path), name, "main")

    config = ProjectConfig(branch_attempts=2, workspace_retries=0, retry_backoff=0)
    with pytest.raises(WorkspaceConflict, match="No free branch name"):
        workspace.provision(db_conn, task["id"], config=config)
    assert locks.get_holder(db_conn, repo_project["id"]) is None


def test_workspace_conflict_is_retried(db_conn, repo_project, git_repo, monkeypatch):
    task = _sequential(db_conn, repo_project)
    real = workspace.has_uncommitted_changes
    calls = {"n": 0}

    def flaky(repo_dir):
        calls["n"] += 1
        return calls["n"] == 1 or real(repo_dir)

    monkeypatch.setattr(workspace, "has_uncommitted_changes", flaky)
    ws = workspace.provision(db_conn, task["id"], config=FAST)
    assert ws is not None
    assert calls["n"] == 2


def test_parallel_task_gets_worktree(db_conn, repo_project, git_repo):
    task = create_task(db_conn, project_id=repo_project["id"], title="Side quest")

    ws = workspace.provision(db_conn, task["id"], config=FAST)

    assert ws.execution_mode == "parallel"
    worktree = Path(ws.work_dir)
    assert worktree.is_dir() and not worktree.is_symlink()
    assert (worktree / "README.md").exists()
    assert git_repo.branch() == "main"
    assert locks.get_holder(db_conn, repo_project["id"]) is None


def test_parallel_ignores_dirty_main_checkout(db_conn, repo_project, git_repo):
    task = create_task(db_conn, project_id=repo_project["id"], title="Side quest")
    git_repo.write("scratch.txt", "wip\n")
    assert workspace.provision(db_conn, task["id"], config=FAST) is not None


def test_cleanup_workspace_removes_container(db_conn, repo_project, git_repo):
    task = create_task(db_conn, project_id=repo_project["id"], title="Side quest")
    ws = workspace.provision(db_conn, task["id"], config=FAST)

    assert workspace.cleanup_workspace(db_conn, task["id"])
    assert not Path(ws.workspace_dir).exists()
    stored = get_task(db_conn, task["id"])
    assert stored["workspace_dir"] is None
    assert stored["task_branch"] == ws.task_branch
    assert not workspace.cleanup_workspace(db_conn, task["id"])


def test_cleanup_sequential_keeps_main_checkout(db_conn, repo_project, git_repo):
    task = _sequential(db_conn, repo_project)
    ws = workspace.provision(db_conn, task["id"], config=FAST)
    workspace.cleanup_workspace(db_conn, task["id"])
    assert not Path(ws.workspace_dir).exists()
    assert (git_repo.path / "README.md").exists()


def test_failed_checkout_drops_branch_before_retry(db_conn, repo_project, git_repo, monkeypatch):
    task = _sequential(db_conn, repo_project)
    real = workspace.checkout
    calls = []

    def flaky(repo_dir, ref):
        calls.append(ref)
        if len(calls) == 1:
            raise RuntimeError("git checkout failed: index.lock exists")
        real(repo_dir, ref)

    monkeypatch.setattr(workspace, "checkout", flaky)
    ws = workspace.provision(db_conn, task["id"], config=FAST)

    first = task_branch_name(task["id"], task["title"])
    assert calls == [first, first]
    assert ws.task_branch == first
    assert git_repo.branch() == first
    second = task_branch_name(task["id"], task["title"], 2)
    assert not branch_exists(str(git_repo.path), second)


def test_failed_checkout_leaves_no_branch(db_conn, repo_project, git_repo, monkeypatch):
    task = _sequential(db_conn, repo_project)

    def broken(repo_dir, ref):
        raise RuntimeError("git checkout failed")

    monkeypatch.setattr(workspace, "checkout", broken)
    with pytest.raises(WorkspaceConflict, match="git checkout failed"):
        workspace.provision(db_conn, task["id"], config=FAST)

    assert not branch_exists(str(git_repo.path), task_branch_name(task["id"], task["title"]))
    assert git_repo.branch() == "main"
    assert locks.get_holder(db_conn, repo_project["id"]) is None
