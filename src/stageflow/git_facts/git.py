# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to fill in trigger defaults (branch, default branch,
# commit SHA, changed files) so nothing else calls subprocess("git ...").

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Every other function in this file builds on top of this one.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    # Strip trailing newlines so callers can do clean string comparisons
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the enclosing repository, as git sees it."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD. Exposed to jobs as CI_COMMIT_SHA."""
    return _git(["rev-parse", "HEAD"], cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    True if the working tree has modified, staged or untracked files.

    `git status --porcelain` is stable, machine-readable output; any
    output at all means the tree is not clean.
    """
    return _git(["status", "--porcelain"], cwd) != ""


def get_current_ref(cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Current branch name, or None on a detached HEAD.
    """
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    return None if ref == "HEAD" else ref


def default_branch(remote: str = "origin", cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    The remote's default branch (what `origin/HEAD` points at).

    Returns None when the remote has no HEAD configured, which is common for
    freshly-initialised local repos.
    """
    try:
        ref = _git(["symbolic-ref", "--short", f"refs/remotes/{remote}/HEAD"], cwd)
    except subprocess.CalledProcessError:
        return None
    # "origin/main" -> "main"
    return ref.split("/", 1)[1] if "/" in ref else ref


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repo root.

    Typical usage:
        files = changed_files(merge_base("origin/main"))
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    # No output means no file-level changes
    return out.splitlines() if out else []


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`: where the branch diverged."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def _lines(args: list[str], cwd: Path) -> List[str]:
    out = _git(args, cwd)
    return out.splitlines() if out else []


def working_changes(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files a `changes:` rule should consider for the current checkout.

    Dirty tree: staged, unstaged and untracked files.
    Clean tree: HEAD against its merge-base with `compare_ref`, falling back
    to HEAD~1 and finally to every tracked file on a first commit.
    """
    root = repo_root(cwd)

    if is_dirty(root):
        files = set()
        files.update(_lines(["diff", "--name-only"], root))
        files.update(_lines(["diff", "--name-only", "--cached"], root))
        files.update(_lines(["ls-files", "--others", "--exclude-standard"], root))
        return sorted(files)

    try:
        base = merge_base(compare_ref, root)
    except subprocess.CalledProcessError:
        # e.g. no remote configured
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", root)
    except subprocess.CalledProcessError:
        # first commit: treat all tracked files as changed
        return _lines(["ls-files"], root)
