# git.py
# Small, focused wrapper around the Git CLI.
# The only thing the orchestrator needs from git is the trigger context
# (which ref and commit started the run); checkout itself is not our job.

from __future__ import annotations

import subprocess
from typing import Optional

from shipci.model import TriggerContext


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Every other function builds on top of this one. A non-zero exit raises
    subprocess.CalledProcessError, which callers translate into "unknown".

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,   # return output as str instead of bytes
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Return the full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Return the fully qualified ref that best describes HEAD.

    A tag pointing exactly at HEAD wins (that is what a tag push looks like),
    then the checked-out branch. A detached HEAD without a tag yields "".
    """
    try:
        tags = _git(["tag", "--points-at", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        tags = ""
    if tags:
        # several tags on one commit: take the highest sorting one
        return f"refs/tags/{sorted(tags.splitlines())[-1]}"

    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return ""


def trigger_from_git(cwd: Optional[str] = None, event: str = "push") -> TriggerContext:
    """
    Build a TriggerContext from the local checkout.

    Outside a repository (or without git installed) the context is empty,
    which makes tag-gated releases abort rather than fire.
    """
    try:
        return TriggerContext(ref=current_ref(cwd), sha=head_sha(cwd), event=event)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return TriggerContext(ref="", sha="", event=event)
