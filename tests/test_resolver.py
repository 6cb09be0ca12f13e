"""Tests for best-effort acquisition of optional resources."""
from pathlib import Path

import pytest

from shipci.actions import StepContext
from shipci.artifacts import ArtifactStore
from shipci.dsl import optional
from shipci.errors import ConflictError, JobTimeout, NotReadyError, StepFailure
from shipci.model import Target, TriggerContext
from shipci.resolver import OptionalDependencyResolver, ResourceStatus, classify_failure


def _ctx(tmp_path):
    return StepContext(
        job="linux",
        step="optional:sde",
        workspace=Path(tmp_path),
        env={},
        artifacts=ArtifactStore(),
        target=Target("linux"),
        trigger=TriggerContext(),
    )


def test_resolved(tmp_path):
    outcome = OptionalDependencyResolver().resolve(optional("sde", lambda ctx: None), _ctx(tmp_path))
    assert outcome.status == ResourceStatus.RESOLVED
    assert outcome.available is True
    assert outcome.reason == ""


@pytest.mark.parametrize(
    "exc, reason",
    [
        (PermissionError("token rejected"), "authorization denied"),
        (ConnectionError("reset"), "network unavailable"),
        (FileNotFoundError("sde.tar"), "resource absent"),
        (RuntimeError("remote: Repository not found."), "resource absent"),
        (RuntimeError("boom"), "acquisition failed"),
        (NotReadyError("Artifact 'sde-bundle' has not been published"), "resource absent"),
        (ConflictError("Artifact 'sde' already published by job 'other'"), "acquisition failed"),
    ],
)
def test_degraded_never_raises(tmp_path, exc, reason):
    def fetch(ctx):
        raise exc

    outcome = OptionalDependencyResolver().resolve(optional("sde", fetch), _ctx(tmp_path))
    assert outcome.status == ResourceStatus.DEGRADED
    assert outcome.available is False
    assert outcome.reason == reason
    assert outcome.degraded.resource == "sde"


def test_classify_shell_output():
    failure = StepFailure(
        job="linux",
        step="optional:sde",
        cmd="git clone",
        exit_code=128,
        output="fatal: could not read Username: Authentication failed",
    )
    assert classify_failure(failure) == "authorization denied"
    assert classify_failure(JobTimeout("step", "linux/sde", 5)) == "network unavailable"


def test_shell_resource_degrades(tmp_path):
    res = optional("sde", "echo 'Could not resolve host: github.com' >&2; exit 128")
    outcome = OptionalDependencyResolver().resolve(res, _ctx(tmp_path))
    assert outcome.reason == "network unavailable"


def test_unpublished_artifact_degrades(tmp_path):
    def fetch_bundle(ctx):
        ctx.artifacts.fetch("sde-bundle", requester=ctx.job)

    outcome = OptionalDependencyResolver().resolve(optional("sde", fetch_bundle), _ctx(tmp_path))
    assert outcome.status == ResourceStatus.DEGRADED
    assert outcome.reason == "resource absent"
    assert "sde-bundle" in outcome.degraded.details["error"]
