"""Git operations shared by the CLI, the supervisor and job workers.

Functions raise RuntimeError on git failure (not ClickException), so they can
be used from both cli.py and jobs.py. Merge conflicts raise MergeConflict.
"""

from __future__ import annotations

import contextlib
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from trunkq.errors import MergeConflict

log = logging.getLogger(__name__)

BRANCH_PREFIX = "trunkq"


def slugify(text: str, max_len: int = 40) -> str:
    """Turn a title into a branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-") or "task"


def task_branch_name(task_id: str, title: str, suffix: int = 1) -> str:
    """Deterministic branch name for a task; ``suffix`` > 1 disambiguates."""
    base = f"{BRANCH_PREFIX}/{slugify(title)}-{task_id[:8]}"
    return base if suffix <= 1 else f"{base}-{suffix}"


def _git(repo_dir: str, *args: str, check: bool = True) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=repo_dir,
            check=check,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"git {args[0]} failed: {e.stderr.strip()}") from None


def is_git_repo(path: str) -> bool:
    if not Path(path).is_dir():
        return False
    result = _git(path, "rev-parse", "--is-inside-work-tree", check=False)
    return result.returncode == 0 and result.stdout.strip() == "true"


def rev_parse(repo_dir: str, ref: str) -> str:
    """Resolve ``ref`` to a full commit SHA."""
    try:
        return _git(repo_dir, "rev-parse", "--verify", f"{ref}^{{commit}}").stdout.strip()
    except RuntimeError:
        raise RuntimeError(f"Cannot resolve '{ref}' in {repo_dir}") from None


def current_head(repo_dir: str) -> str:
    return rev_parse(repo_dir, "HEAD")


def current_branch(repo_dir: str) -> str | None:
    """Checked-out branch name, or None on a detached HEAD."""
    result = _git(repo_dir, "symbolic-ref", "--quiet", "--short", "HEAD", check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def branch_exists(repo_dir: str, branch: str) -> bool:
    result = _git(repo_dir, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
    return result.returncode == 0


def create_branch(repo_dir: str, branch: str, start_point: str) -> None:
    _git(repo_dir, "branch", branch, start_point)


def delete_branch(repo_dir: str, branch: str) -> None:
    _git(repo_dir, "branch", "-D", branch)


def checkout(repo_dir: str, ref: str) -> None:
    _git(repo_dir, "checkout", ref)


def has_uncommitted_changes(repo_dir: str) -> bool:
    """True when the working tree has staged, unstaged or untracked changes."""
    result = _git(repo_dir, "status", "--porcelain", "--untracked-files=normal")
    return bool(result.stdout.strip())


def commit_if_dirty(repo_dir: str, message: str) -> str | None:
    """Stage and commit everything in ``repo_dir``.

    Returns the new commit SHA, or None when the tree was already clean.
    """
    if not has_uncommitted_changes(repo_dir):
        return None
    _git(repo_dir, "add", "-A")
    _git(repo_dir, "commit", "--no-verify", "-m", message)
    sha = current_head(repo_dir)
    log.info("Committed pending changes in %s as %s", repo_dir, sha[:12])
    return sha


def is_ancestor(repo_dir: str, ancestor: str, descendant: str) -> bool:
    result = _git(repo_dir, "merge-base", "--is-ancestor", ancestor, descendant, check=False)
    if result.returncode not in (0, 1):
        raise RuntimeError(f"git merge-base failed: {result.stderr.strip()}")
    return result.returncode == 0


def changed_files(repo_dir: str, base: str, head: str) -> list[str]:
    result = _git(repo_dir, "diff", "--name-only", f"{base}..{head}")
    return [line for line in result.stdout.splitlines() if line.strip()]


@dataclass(frozen=True)
class MergeResult:
    target_head: str
    merge_commit: str | None
    fast_forward: bool


def merge_branch(
    repo_dir: str,
    *,
    target_branch: str,
    branch: str,
    branch_point: str,
    message: str,
) -> MergeResult:
    """Integrate ``branch`` into ``target_branch`` inside the main checkout.

    Fast-forwards when the target has not moved past ``branch_point`` (or is
    otherwise an ancestor of the branch); ``merge_commit`` is then None.
    Otherwise creates a non-fast-forward merge commit. On textual conflicts
    the merge is aborted and MergeConflict carries the conflicting paths.
    The checkout is left on ``target_branch`` in every case.
    """
    if current_branch(repo_dir) != target_branch:
        checkout(repo_dir, target_branch)

    target_tip = current_head(repo_dir)
    branch_tip = rev_parse(repo_dir, branch)
    if target_tip == branch_tip:
        return MergeResult(target_head=target_tip, merge_commit=None, fast_forward=True)
    if is_ancestor(repo_dir, branch_tip, target_tip):
        # Nothing on the branch that the target does not already have.
        return MergeResult(target_head=target_tip, merge_commit=None, fast_forward=False)

    if target_tip == branch_point or is_ancestor(repo_dir, target_tip, branch_tip):
        _git(repo_dir, "merge", "--ff-only", branch)
        return MergeResult(
            target_head=current_head(repo_dir), merge_commit=None, fast_forward=True
        )

    result = _git(repo_dir, "merge", "--no-ff", "--no-edit", "-m", message, branch, check=False)
    if result.returncode != 0:
        conflicts = _git(repo_dir, "diff", "--name-only", "--diff-filter=U", check=False)
        conflicting_files = [line for line in conflicts.stdout.splitlines() if line.strip()]
        with contextlib.suppress(RuntimeError):
            _git(repo_dir, "merge", "--abort")
        if not conflicting_files:
            raise RuntimeError(f"git merge failed: {(result.stderr or result.stdout).strip()}")
        raise MergeConflict(
            f"Merging '{branch}' into '{target_branch}' conflicts in "
            f"{len(conflicting_files)} file(s)",
            conflicting_files,
        )

    merge_sha = current_head(repo_dir)
    return MergeResult(target_head=merge_sha, merge_commit=merge_sha, fast_forward=False)


def create_worktree(repo_dir: str, worktree_dir: str, branch: str, start_point: str) -> None:
    """Create ``branch`` at ``start_point`` checked out in a new worktree.

    Raises RuntimeError on failure.
    """
    Path(worktree_dir).parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    try:
        subprocess.run(
            ["git", "worktree", "add", "-b", branch, worktree_dir, start_point],
            cwd=repo_dir,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to create worktree: {e.stderr.strip()}") from None


def remove_worktree(repo_dir: str, worktree_dir: str) -> None:
    """Remove a git worktree. Best-effort; the branch is kept for audit."""
    try:
        subprocess.run(
            ["git", "worktree", "remove", "--force", worktree_dir],
            cwd=repo_dir,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as exc:
        log.warning("Failed to remove worktree %s: %s", worktree_dir, exc.stderr.strip())

    # Prune stale worktree records left by manually deleted directories
    with contextlib.suppress(subprocess.CalledProcessError):
        subprocess.run(
            ["git", "worktree", "prune"],
            cwd=repo_dir,
            check=True,
            capture_output=True,
            text=True,
        )
