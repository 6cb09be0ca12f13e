"""Tests for the Python workflow helpers."""
from pathlib import Path

import pytest

from shipci.config import secrets_from_env
from shipci.dag import validate_workflow
from shipci.dsl import build, cache, job, optional, sh
from shipci.model import CallAction, ShellAction, Target
from shipci.runner import load_workflow


def test_job_defaults():
    j = job("linux", sh("Build", "make"))
    assert j.target == Target("linux")
    assert j.needs == []
    assert j.condition is None
    assert j.steps[0].key == "Build"


def test_job_requires_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_default_cwd_only_fills_missing():
    j = job("a", sh("one", "ls"), sh("two", "ls", cwd="sub"), cwd="build")
    assert [s.action.cwd for s in j.steps] == ["build", "sub"]


def test_builder():
    j = (
        build("macos-arm64")
        .on("macos/aarch64")
        .depends_on("lint")
        .define_step("Build", "cargo build --release", id="build")
        .with_env(MACOSX_DEPLOYMENT_TARGET=11.0)
        .with_secrets("GITHUB_TOKEN")
        .with_optional("sde", "git clone sde")
        .with_cache("target", key_files=["Cargo.lock"], prefix="cargo")
        .when("startsWith(ref, 'refs/tags/')")
        .timeout(600)
        .build()
    )
    assert j.target == Target("macos", "aarch64")
    assert j.needs == ["lint"]
    assert j.env == {"MACOSX_DEPLOYMENT_TARGET": "11.0"}
    assert j.secrets == ["GITHUB_TOKEN"]
    assert isinstance(j.optional[0].action, ShellAction)
    assert j.cache.prefix == "cargo"
    assert j.condition.text == "startsWith(ref, 'refs/tags/')"
    assert j.timeout == 600


def test_builder_without_steps():
    with pytest.raises(ValueError):
        build("x").build()


def test_optional_callable():
    res = optional("sde", lambda ctx: None, timeout=30)
    assert isinstance(res.action, CallAction)
    assert res.timeout == 30


def test_cache_spec():
    spec = cache("~/.cargo/registry", "target", key_files=["**/Cargo.lock"])
    assert spec.paths == ("~/.cargo/registry", "target")
    assert spec.key is None
    assert spec.keep == 3


@pytest.mark.parametrize(
    "descriptor, expected",
    [
        ("linux", Target("linux", "any", None)),
        ("windows/x86_64", Target("windows", "x86_64", None)),
        ("linux/x86_64/musl", Target("linux", "x86_64", "musl")),
    ],
)
def test_target_parse(descriptor, expected):
    assert Target.parse(descriptor) == expected
    assert str(Target.parse("linux/x86_64/musl")) == "linux/x86_64/musl"


def test_target_parse_rejects_garbage():
    with pytest.raises(ValueError):
        Target.parse("a/b/c/d")


def test_secrets_from_env():
    env = {"SHIPCI_SECRET_GITHUB_TOKEN": "t0k", "SHIPCI_SECRET_": "x", "PATH": "/bin"}
    assert secrets_from_env(env, prefix="SHIPCI_SECRET_") == {"GITHUB_TOKEN": "t0k"}


def test_bundled_workflow_targets_match_triples():
    wf_ = load_workflow(Path(__file__).resolve().parents[1] / "shipci_workflow.py")
    assert validate_workflow(wf_) == [["linux", "macos-arm64", "macos-x64", "windows"]]
    for j in wf_.jobs:
        triple = next(s.action.cmd.split()[-1] for s in j.steps if s.name == "Add target")
        assert triple.startswith(f"{j.target.arch}-")
        if j.target.toolchain:
            assert triple.endswith(f"-{j.target.toolchain}"), (j.name, triple)
    assert wf_.job("windows").target == Target("windows", "x86_64", "gnu")
