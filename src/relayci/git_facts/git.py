# git.py
# Thin wrapper around the Git CLI. Local runs use it to build a TriggerEvent
# (ref, sha, changed files); nothing else in relayci shells out to git.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Set


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout, stripped.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Fully qualified ref of HEAD (refs/heads/<branch>), or the bare SHA
    when HEAD is detached.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd)


def get_actor(cwd: Optional[str | Path] = None) -> str:
    """Configured user.name, empty when unset."""
    try:
        return _git(["config", "user.name"], cwd)
    except subprocess.CalledProcessError:
        return ""


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True when there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd) != ""


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged + staged + untracked paths, relative to the repo root."""
    files: Set[str] = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd)))
    return sorted(files)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Paths changed between two refs (relative to the repo root)."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and with_ref: where the branch diverged."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def tracked_files(cwd: Optional[str | Path] = None) -> List[str]:
    return _lines(_git(["ls-files"], cwd))
