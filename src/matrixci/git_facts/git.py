# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from typing import Optional, Tuple


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    """
    The tag pointing exactly at HEAD, or None.

    `git describe --exact-match` fails when HEAD is not tagged; that is the
    normal case on a branch, not an error.
    """
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def current_branch(cwd: Optional[str] = None) -> str:
    """Current branch name ("HEAD" when detached)."""
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> Tuple[str, bool]:
    """
    (ref, is_tag) describing what a push of the current checkout would be.

    A tagged HEAD counts as a tag push, otherwise the current branch.
    """
    tag = exact_tag(cwd=cwd)
    if tag:
        return tag, True
    return current_branch(cwd=cwd), False

