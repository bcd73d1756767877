"""Shared test fixtures: a template DB for fast per-test isolation, plus git helpers."""

import shutil
import sqlite3
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from trunkq.db import add_project, get_connection


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with full schema + a default project.

    Copying this file is much cheaper than creating the schema from
    scratch in every test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        add_project(conn, "testproj", "/tmp/testproj")
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema + testproj pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def _isolate_side_effects(tmp_path: Path, monkeypatch):
    """Keep workspaces under tmp_path and stop tests from reaching Redis."""
    monkeypatch.setattr("trunkq.workspace.WORKSPACES_DIR", tmp_path / "workspaces")
    enqueue = MagicMock(side_effect=lambda attempt_id: MagicMock(id=f"attempt-{attempt_id}"))
    monkeypatch.setattr("trunkq.supervisor.enqueue_task_attempt", enqueue)
    monkeypatch.setattr("trunkq.supervisor.cancel_queued_job", MagicMock(return_value=False))
    monkeypatch.setattr("trunkq.supervisor.is_job_active", MagicMock(return_value=False))
    for module in ("trunkq.supervisor", "trunkq.advancer", "trunkq.cli"):
        monkeypatch.setattr(f"{module}.publish_event", MagicMock())
    # Deterministic commits regardless of the developer's git config.
    monkeypatch.setenv("GIT_AUTHOR_NAME", "trunkq-test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "trunkq-test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "trunkq-test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "trunkq-test@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    return enqueue


class GitRepo:
    """Small helper around a throwaway repository."""

    def __init__(self, path: Path):
        self.path = path

    def run(self, *args: str) -> str:
        return subprocess.run(
            ["git", *args], cwd=self.path, check=True, capture_output=True, text=True
        ).stdout.strip()

    def write(self, name: str, content: str) -> None:
        target = self.path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)

    def commit_file(self, name: str, content: str, message: str | None = None) -> str:
        self.write(name, content)
        self.run("add", name)
        self.run("commit", "-m", message or f"update {name}")
        return self.head()

    def head(self, ref: str = "HEAD") -> str:
        return self.run("rev-parse", ref)

    def branch(self) -> str:
        return self.run("rev-parse", "--abbrev-ref", "HEAD")


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepo:
    """A git repository on ``main`` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    path = tmp_path / "repo"
    path.mkdir()
    repo = GitRepo(path)
    repo.run("init", "-q")
    repo.run("symbolic-ref", "HEAD", "refs/heads/main")
    repo.commit_file("README.md", "hello\n", "initial commit")
    return repo


@pytest.fixture()
def repo_project(db_conn: sqlite3.Connection, git_repo: GitRepo) -> dict:
    """A project registered for ``git_repo`` with base branch ``main``."""
    return add_project(db_conn, "repo", str(git_repo.path), "main")
