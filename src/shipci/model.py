# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, Union

if TYPE_CHECKING:
    from .conditions import Predicate


class StepOutcome(str, Enum):
    """Recorded outcome of one step; the values are what conditions compare against."""
    SUCCEEDED = "success"
    FAILED = "failure"
    FAILED_IGNORED = "failure_ignored"
    SKIPPED = "skipped"


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED)


@dataclass(frozen=True)
class Target:
    """
    Where a job runs: `os/arch[/toolchain]`, e.g. "linux/x86_64/gnu".

    `os` doubles as the host-environment discriminator for cache keys.
    """
    os: str
    arch: str = "any"
    toolchain: Optional[str] = None

    @classmethod
    def parse(cls, descriptor: str) -> "Target":
        parts = [p.strip() for p in descriptor.split("/") if p.strip()]
        if not parts:
            raise ValueError("empty target descriptor")
        if len(parts) > 3:
            raise ValueError(f"target must be os/arch[/toolchain], got {descriptor!r}")
        return cls(
            os=parts[0],
            arch=parts[1] if len(parts) > 1 else "any",
            toolchain=parts[2] if len(parts) > 2 else None,
        )

    def __str__(self) -> str:
        bits = [self.os, self.arch]
        if self.toolchain:
            bits.append(self.toolchain)
        return "/".join(bits)


# ---------------------------------------------------------------------
# Actions (what a step does). Execution lives in actions.py.
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ShellAction:
    cmd: str
    cwd: Optional[str] = None

    def describe(self) -> str:
        return self.cmd


@dataclass(frozen=True)
class CallAction:
    """In-process Python callable taking a StepContext."""
    fn: Callable[..., Any]
    label: str = ""

    def describe(self) -> str:
        return self.label or getattr(self.fn, "__name__", repr(self.fn))


Action = Union[ShellAction, CallAction]


@dataclass(frozen=True)
class Step:
    """A single action inside a job."""
    name: str
    action: Action
    id: Optional[str] = None
    condition: Optional["Predicate"] = None
    continue_on_error: bool = False
    timeout: Optional[float] = None

    @property
    def key(self) -> str:
        return self.id or self.name


@dataclass(frozen=True)
class CacheSpec:
    """
    Path set persisted across runs.

    Key is either explicit, or "{os}-{prefix}-{hash of key_files}" computed by the
    executor (see fingerprint.cache_key).
    """
    paths: Tuple[str, ...]
    key: Optional[str] = None
    key_files: Tuple[str, ...] = ()
    prefix: str = "cache"
    keep: int = 3


@dataclass(frozen=True)
class OptionalResource:
    """A best-effort dependency; failing to acquire it degrades, never fails, the job."""
    name: str
    action: Action
    timeout: Optional[float] = None


@dataclass
class Job:
    """
    A build job: target + ordered steps + DAG edges.

    `needs` are names of jobs that must reach a terminal state first.
    `secrets` names entries of the run's secret map injected into this job's env.
    """
    name: str
    steps: List[Step]
    target: Target = field(default_factory=lambda: Target("linux"))
    needs: List[str] = field(default_factory=list)
    condition: Optional["Predicate"] = None
    env: Dict[str, str] = field(default_factory=dict)
    secrets: List[str] = field(default_factory=list)
    cache: Optional[CacheSpec] = None
    optional: List[OptionalResource] = field(default_factory=list)
    timeout: Optional[float] = None


@dataclass(frozen=True)
class AssetSpec:
    """
    One release asset taken from an artifact.

    `path` selects a file inside the artifact; when omitted the artifact must
    contain exactly one file.
    """
    source: str
    name: str
    content_type: str = "application/octet-stream"
    path: Optional[str] = None


# placeholders a release title may use
RELEASE_TITLE_FIELDS = ("project", "version", "tag")


@dataclass(frozen=True)
class ReleaseSpec:
    trigger: "Predicate"
    requires: Tuple[str, ...]
    assets: Tuple[AssetSpec, ...]
    draft: bool = True
    prerelease: bool = False
    title: str = "{project} {version}"


@dataclass
class Workflow:
    jobs: List[Job]
    release: Optional[ReleaseSpec] = None
    project: str = "shipci"

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass(frozen=True)
class TriggerContext:
    """What started the run (the originating reference and friends)."""
    ref: str = ""
    sha: str = ""
    event: str = "push"

    @property
    def tag(self) -> Optional[str]:
        prefix = "refs/tags/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else None
