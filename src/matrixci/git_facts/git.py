# git.py
# Small wrapper around the Git CLI. Everything matrixci needs to know about
# the local checkout (ref, sha, origin, changed paths) comes through here.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError when git exits non-zero and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Fully qualified ref of the checkout: refs/heads/<branch>, or the
    bare SHA when HEAD is detached.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def remote_url(name: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", name], cwd)


def repository_slug(url: str) -> str:
    """'git@github.com:owner/repo.git' / 'https://host/owner/repo' -> 'owner/repo'."""
    tail = url.rstrip("/")
    if tail.endswith(".git"):
        tail = tail[:-4]
    tail = tail.replace(":", "/")
    parts = [p for p in tail.split("/") if p]
    return "/".join(parts[-2:])


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True when there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """Files changed between two refs, relative to the repository root."""
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Commit where HEAD diverged from with_ref."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd)))
    return sorted(files)


def local_changes(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Paths a local run should treat as "changed":
      - dirty tree: working tree changes
      - clean tree: diff against merge-base with compare_ref,
        falling back to HEAD~1, then to every tracked file
    """
    if is_dirty(cwd):
        return working_tree_changes(cwd)

    try:
        base = merge_base(compare_ref, cwd)
    except subprocess.CalledProcessError:
        # e.g. no remote configured
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd)
    except subprocess.CalledProcessError:
        # first commit: everything tracked is new
        return _lines(_git(["ls-files"], cwd))
