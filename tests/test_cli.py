"""Tests for the shipci command line."""
import json
import os
from pathlib import Path

from click.testing import CliRunner

from shipci.cli import cli

WORKFLOW = '''
from shipci.dsl import asset, download_artifacts, job, release, sh, upload_artifact, wf

def workflow():
    return wf(
        job(
            "linux",
            sh("Build", "mkdir -p dist && printf linux-binary > dist/app-linux"),
            upload_artifact("app-linux", "dist/app-linux"),
        ),
        job(
            "smoke",
            download_artifacts("app-*", "dist"),
            sh("Smoke", "test -f dist/app-linux/app-linux"),
            needs=["linux"],
        ),
        release=release(asset("app-linux"), trigger="startsWith(ref, 'refs/tags/v')", requires=["linux"]),
        project="demo",
    )
'''

FAILING = '''
from shipci.dsl import job, sh, wf

def workflow():
    return wf(
        job("build", sh("Compile", "echo 'undefined reference' >&2; exit 1")),
        job("test", sh("Test", "true"), needs=["build"]),
    )
'''

CYCLE = '''
from shipci.dsl import job, sh, wf
JOBS = [job("a", sh("a", "true"), needs=["b"]), job("b", sh("b", "true"), needs=["a"])]
'''


def _run_args(tmp_path, *extra):
    return [
        "run",
        "--cache-dir", str(tmp_path / "cache"),
        "--artifact-dir", str(tmp_path / "artifacts"),
        "--release-dir", str(tmp_path / "releases"),
        *extra,
    ]


def test_run_tag_publishes_release(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("shipci_workflow.py").write_text(WORKFLOW)
        result = runner.invoke(cli, _run_args(tmp_path, "--ref", "refs/tags/v0.3.0", "--sha", "abc123"))

    assert result.exit_code == 0, result.output
    assert "RELEASE: published" in result.output
    assert "smoke: SUCCEEDED" in result.output
    asset = tmp_path / "releases" / "v0.3.0" / "assets" / "app-linux"
    assert asset.read_bytes() == b"linux-binary"
    meta = json.loads((tmp_path / "releases" / "v0.3.0" / "release.json").read_text())
    assert meta["title"] == "demo v0.3.0"
    assert meta["draft"] is True


def test_run_branch_does_not_release(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("shipci_workflow.py").write_text(WORKFLOW)
        result = runner.invoke(cli, _run_args(tmp_path, "--ref", "refs/heads/main", "--sha", "abc123"))

    assert result.exit_code == 0, result.output
    assert "RELEASE: aborted" in result.output
    assert not (tmp_path / "releases").exists()


def test_failed_job_exit_code(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("build_workflow.py").write_text(FAILING)
        result = runner.invoke(cli, _run_args(tmp_path, "--ref", "refs/heads/main", "--sha", "x"))

    assert result.exit_code == 1
    assert "build: FAILED" in result.output
    assert "first failure: step 'Compile'" in result.output
    assert "test: SKIPPED" in result.output


def test_graph_error_exit_code(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("cycle_workflow.py").write_text(CYCLE)
        result = runner.invoke(cli, _run_args(tmp_path, "--ref", "", "--sha", ""))
    assert result.exit_code == 2
    assert "cycle" in result.output


def test_secrets_are_masked(tmp_path):
    runner = CliRunner()
    wf = '''
from shipci.dsl import job, sh, wf
JOBS = [job("leak", sh("Echo", "echo $TOKEN; exit 3"), secrets=["TOKEN"])]
'''
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("leak_workflow.py").write_text(wf)
        result = runner.invoke(
            cli,
            ["--debug", *_run_args(tmp_path, "--ref", "", "--sha", "")],
            env={"SHIPCI_SECRET_TOKEN": "hunter2-secret"},
        )
    assert result.exit_code == 1
    assert "hunter2-secret" not in result.output


def test_plan_prints_batches(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("shipci_workflow.py").write_text(WORKFLOW)
        result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 0, result.output
    assert "Batch 1: linux" in result.output
    assert "Batch 2: smoke" in result.output
    assert "Release requires: linux" in result.output


def test_validate_json_workflow(tmp_path):
    runner = CliRunner()
    data = {"jobs": {"a": {"steps": [{"action": "true"}]}, "b": {"needs": ["a"], "steps": [{"action": "true"}]}}}
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("shipci.json").write_text(json.dumps(data))
        result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 0, result.output
    assert "shipci.json: OK (2 job(s))" in result.output


def test_validate_reports_bad_definition(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("shipci.json").write_text(json.dumps({"jobs": {"a": {"steps": [{"action": "x"}], "needs": ["zzz"]}}}))
        result = runner.invoke(cli, ["validate", "--workflow", "shipci.json"])
    assert result.exit_code == 2
    assert "zzz" in result.output


def test_no_workflow_found(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 2
    assert "No workflow file found" in result.output


def test_multiple_workflows_need_explicit_choice(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        Path("a_workflow.py").write_text(FAILING)
        Path("b_workflow.py").write_text(FAILING)
        result = runner.invoke(cli, ["plan"])
        assert result.exit_code == 2
        assert "Multiple workflow files found" in result.output

        result = runner.invoke(cli, ["plan", "--workflow", "a_workflow"])
        assert result.exit_code == 0, result.output
        assert os.path.exists("a_workflow.py")
