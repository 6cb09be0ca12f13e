# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class ShipCIError(Exception):
    """Base error for everything the orchestrator raises on purpose."""


class GraphError(ShipCIError):
    """Malformed workflow: cycle, dangling `needs`, bad condition, bad schema."""


@dataclass
class StepFailure(ShipCIError):
    """A fatal (non best-effort) step failed."""
    job: str
    step: str
    cmd: str
    exit_code: int | None
    message: str = ""
    output: str = ""

    def __str__(self) -> str:
        head = f"[{self.job}] step '{self.step}' failed"
        if self.exit_code is not None:
            head += f" (exit={self.exit_code})"
        if self.message:
            head += f": {self.message}"
        elif self.cmd:
            head += f": {self.cmd}"
        return head


@dataclass
class DegradedResource(ShipCIError):
    """
    Describes why an optional resource could not be acquired.

    Never raised out of the resolver; it is stored on the outcome so the
    console and the run report can explain the degradation.
    """
    resource: str
    reason: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return f"optional resource '{self.resource}' degraded: {self.reason}"


class ArtifactError(ShipCIError):
    """Artifact store misuse."""


class ConflictError(ArtifactError):
    """An artifact name was published twice in one run."""


class NotReadyError(ArtifactError):
    """An artifact was fetched before its producer succeeded."""


class CorruptionError(ShipCIError):
    """A release asset already exists with a different digest."""


class ReleaseError(ShipCIError):
    """The release host rejected a request."""


class JobTimeout(ShipCIError, TimeoutError):
    """A job or the whole run exceeded its time budget."""

    def __init__(self, scope: str, name: str, seconds: float):
        self.scope = scope
        self.name = name
        self.seconds = seconds
        super().__init__(f"{scope} '{name}' exceeded its {seconds:g}s budget")
