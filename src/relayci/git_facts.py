# git_facts.py
# Small wrapper around the Git CLI. The CLI uses it to synthesize a realistic
# event (ref, actor, sha) for a local run when none is given.

from __future__ import annotations

import getpass
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git itself is missing.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the enclosing Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Full ref of the checkout: refs/heads/<branch> on a branch, else the tag
    pointing at HEAD (refs/tags/<tag>).
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        # detached HEAD
        tag = _git(["describe", "--tags", "--exact-match", "HEAD"], cwd)
        return f"refs/tags/{tag}"


def current_user(cwd: Optional[str] = None) -> str:
    """git config user.name, falling back to the OS login name."""
    try:
        name = _git(["config", "user.name"], cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        name = ""
    return name or getpass.getuser()


def is_dirty(cwd: Optional[str] = None) -> bool:
    """True if the working tree has staged, unstaged or untracked changes."""
    return _git(["status", "--porcelain"], cwd) != ""


@dataclass(frozen=True)
class CheckoutFacts:
    ref: str
    actor: str
    sha: Optional[str]


def checkout_facts(cwd: Optional[str] = None) -> CheckoutFacts:
    """
    Best-effort facts about the local checkout. Outside a repository this
    falls back to ref "refs/heads/main" and no sha.
    """
    actor = current_user(cwd)
    try:
        ref = current_ref(cwd)
        sha = head_sha(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return CheckoutFacts(ref="refs/heads/main", actor=actor, sha=None)
    return CheckoutFacts(ref=ref, actor=actor, sha=sha)
