# resolver.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .actions import StepContext, run_action
from .errors import DegradedResource, JobTimeout, NotReadyError, ShipCIError, StepFailure
from .model import OptionalResource


class ResourceStatus(str, Enum):
    RESOLVED = "resolved"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ResourceOutcome:
    name: str
    status: ResourceStatus
    degraded: Optional[DegradedResource] = None

    @property
    def available(self) -> bool:
        return self.status == ResourceStatus.RESOLVED

    @property
    def reason(self) -> str:
        return self.degraded.reason if self.degraded else ""


# Ordered: first matching hint wins.
_REASON_HINTS = [
    ("authorization denied", ("permission denied", "authentication failed", "unauthorized", "403", "401", "publickey")),
    ("network unavailable", ("could not resolve host", "network is unreachable", "connection refused", "timed out", "temporary failure in name resolution")),
    ("resource absent", ("not found", "404", "does not exist", "no such file")),
]


def classify_failure(exc: BaseException) -> str:
    """Map a failed acquisition to one of the degradation reasons (best effort)."""
    if isinstance(exc, JobTimeout):
        return "network unavailable"
    if isinstance(exc, NotReadyError):
        return "resource absent"
    cause = exc.__cause__
    if isinstance(cause, PermissionError):
        return "authorization denied"
    if isinstance(cause, (ConnectionError, TimeoutError)):
        return "network unavailable"
    if isinstance(cause, (FileNotFoundError, KeyError, LookupError)):
        return "resource absent"

    text = str(exc).lower()
    if isinstance(exc, StepFailure):
        text = f"{text}\n{exc.output.lower()}"
    for reason, needles in _REASON_HINTS:
        if any(n in text for n in needles):
            return reason
    return "acquisition failed"


class OptionalDependencyResolver:
    """
    Best-effort acquisition of optional resources.

    Failure never propagates: it is recorded as Degraded so later steps can
    branch on `resources.<name>` and be skipped instead of failed.
    """

    def resolve(
        self,
        resource: OptionalResource,
        ctx: StepContext,
        *,
        timeout: Optional[float] = None,
    ) -> ResourceOutcome:
        budget = resource.timeout
        if timeout is not None:
            budget = timeout if budget is None else min(budget, timeout)
        try:
            run_action(resource.action, ctx, timeout=budget)
        except ShipCIError as e:
            return ResourceOutcome(
                name=resource.name,
                status=ResourceStatus.DEGRADED,
                degraded=DegradedResource(
                    resource=resource.name,
                    reason=classify_failure(e),
                    details={"error": str(e)},
                ),
            )
        return ResourceOutcome(name=resource.name, status=ResourceStatus.RESOLVED)
