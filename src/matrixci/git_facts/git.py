# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError if git exits non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the Git repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the HEAD SHA when detached.
    """
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return head_sha(cwd=cwd)
    return ref


def checkout(source: str | Path, ref: str | None, dest: Path) -> Path:
    """
    Fetch `source` (URL or local repository path) into `dest` at `ref`.

    An existing clone at `dest` is fetched and re-checked-out instead of
    cloned again, so a cell's environment can be reused between runs.

    Raises:
        RuntimeError: if any git operation fails
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        if (dest / ".git").exists():
            _git(["fetch", "--all", "--tags", "--prune"], cwd=dest)
        else:
            _git(["clone", "--quiet", str(source), str(dest)])
        if ref:
            _checkout_ref(ref, dest)
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").strip()
        raise RuntimeError(f"git {' '.join(e.cmd[1:3])} failed: {stderr or e}") from e
    except FileNotFoundError as e:
        raise RuntimeError("git command not found. Please install Git.") from e
    return dest


def _checkout_ref(ref: str, dest: Path) -> None:
    branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
    try:
        _git(["checkout", "--quiet", "--force", branch], cwd=dest)
    except subprocess.CalledProcessError:
        # branches other than the default only exist as remote-tracking refs
        _git(["checkout", "--quiet", "--force", f"origin/{branch}"], cwd=dest)
