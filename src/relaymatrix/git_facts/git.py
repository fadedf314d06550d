# git.py
# Read-only wrapper around the Git CLI, used for change-based selection.
# relaymatrix never checks out or modifies the repository.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout without surrounding whitespace.

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


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def merge_base(with_ref: str = "origin/master", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files changed between two refs, relative to the repository root."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd=cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)))
    return sorted(files)
