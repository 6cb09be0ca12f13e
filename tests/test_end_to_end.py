"""Whole-run scenarios: four platform builds fanning in to a tag-gated release."""
import pytest

from shipci.artifacts import ArtifactStore
from shipci.dsl import asset, call, job, optional, release, sh, wf
from shipci.errors import GraphError
from shipci.fingerprint import sha256_bytes
from shipci.model import JobState, TriggerContext
from shipci.release import GateState, LocalReleaseHost
from shipci.runner import EXIT_GRAPH_ERROR, EXIT_JOB_FAILED, EXIT_OK, EXIT_RELEASE_FAILED, run_workflow

PLATFORMS = ("linux", "windows", "macos-x64", "macos-arm64")


def _build(platform, fail=False):
    def compile_(ctx):
        if fail:
            raise RuntimeError(f"link error on {ctx.target}")
        ctx.artifacts.publish(ctx.job, f"fishnet-{platform}", {"fishnet": f"fishnet for {platform}".encode()})

    return compile_


def _workflow(failing=(), trigger="ref == 'refs/tags/v1.0.0'"):
    jobs = [job(p, call("Build", _build(p, p in failing))) for p in PLATFORMS]
    return wf(
        *jobs,
        release=release(
            *[asset(f"fishnet-{p}") for p in PLATFORMS],
            trigger=trigger,
            requires=PLATFORMS,
        ),
        project="fishnet",
    )


def _run(wf_, trigger, tmp_path, console, **kw):
    kw.setdefault("release_host", LocalReleaseHost(tmp_path / "releases"))
    return run_workflow(wf_, trigger=trigger, workspace=tmp_path, console=console, **kw)


def test_tag_push_publishes_four_assets(tmp_path, tag_push, console):
    artifacts = ArtifactStore()
    report = _run(_workflow(), tag_push, tmp_path, console, artifacts=artifacts)

    assert all(r.state == JobState.SUCCEEDED for r in report.jobs.values())
    assert report.release.state == GateState.PUBLISHED
    assert len(report.release.assets) == 4
    for status in report.release.assets:
        source = artifacts.fetch(status.name).file()
        assert status.digest == source.digest
        published = (tmp_path / "releases" / "v1.0.0" / "assets" / status.name).read_bytes()
        assert sha256_bytes(published) == status.digest
    assert report.exit_code == EXIT_OK


def test_one_failed_build_aborts_release(tmp_path, tag_push, console):
    report = _run(_workflow(failing={"windows"}), tag_push, tmp_path, console)

    assert report.jobs["windows"].state == JobState.FAILED
    assert report.jobs["windows"].failure_step == "Build"
    assert "link error" in str(report.jobs["windows"].failure)
    for p in ("linux", "macos-x64", "macos-arm64"):
        assert report.jobs[p].state == JobState.SUCCEEDED
    assert report.release.state == GateState.ABORTED
    assert report.release.assets == []
    assert not (tmp_path / "releases").exists()
    assert report.exit_code == EXIT_JOB_FAILED


def test_branch_push_aborts_without_side_effects(tmp_path, branch_push, console):
    report = _run(_workflow(), branch_push, tmp_path, console)

    assert all(r.state == JobState.SUCCEEDED for r in report.jobs.values())
    assert report.release.state == GateState.ABORTED
    assert report.release.triggered is False
    assert not (tmp_path / "releases").exists()
    assert report.exit_code == EXIT_OK


def test_degraded_optional_resource_does_not_block_release(tmp_path, tag_push, console):
    def private_checkout(ctx):
        raise PermissionError("no access to private repository")

    base = _workflow()
    linux = base.job("linux")
    linux.optional = [optional("sde", private_checkout)]
    linux.steps.append(call("Test with SDE", lambda ctx: None, when="resources.sde"))

    report = _run(base, tag_push, tmp_path, console)
    assert report.jobs["linux"].state == JobState.SUCCEEDED
    assert report.jobs["linux"].resources["sde"].available is False
    assert report.release.state == GateState.PUBLISHED


def test_release_failure_has_its_own_exit_code(tmp_path, tag_push, console):
    host = LocalReleaseHost(tmp_path / "releases")
    rel = host.create_release("v1.0.0", "fishnet v1.0.0", draft=True, prerelease=False)
    host.upload_asset(rel, "fishnet-linux", b"other", "application/octet-stream", sha256_bytes(b"other"))

    report = _run(_workflow(), tag_push, tmp_path, console, release_host=host)
    assert report.release.state == GateState.PUBLISHING
    assert report.exit_code == EXIT_RELEASE_FAILED


def test_graph_error_before_anything_runs(tmp_path, tag_push, console):
    ran = []
    bad = wf(
        job("a", call("a", lambda ctx: ran.append("a")), needs=["b"]),
        job("b", call("b", lambda ctx: ran.append("b")), needs=["a"]),
    )
    with pytest.raises(GraphError):
        _run(bad, tag_push, tmp_path, console)
    assert ran == []
    assert EXIT_GRAPH_ERROR == 2


def test_run_timeout_aborts_release(tmp_path, tag_push, console):
    wf_ = _workflow()
    wf_.job("linux").steps.insert(0, sh("Slow", "sleep 2"))
    report = _run(wf_, tag_push, tmp_path, console, run_timeout=0.5)

    assert report.timed_out is True
    assert report.jobs["linux"].state == JobState.FAILED
    assert report.release.state == GateState.ABORTED
    assert report.exit_code == EXIT_JOB_FAILED


def test_default_job_timeout_applies(tmp_path, console):
    wf_ = wf(job("slow", sh("Sleep", "sleep 2")), job("quick", sh("Echo", "echo hi"), timeout=30))
    report = _run(wf_, TriggerContext(), tmp_path, console, job_timeout=0.3)
    assert report.jobs["slow"].state == JobState.FAILED
    assert report.jobs["quick"].state == JobState.SUCCEEDED
