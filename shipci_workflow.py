# shipci_workflow.py
# Release pipeline: one build per platform, then a tag-gated draft release
# that bundles the four binaries.
from __future__ import annotations

from shipci.dsl import asset, cache, job, optional, release, sh, upload_artifact, wf

PLATFORMS = {
    # name: (target, rust target triple)
    "linux": ("linux/x86_64/musl", "x86_64-unknown-linux-musl"),
    "windows": ("windows/x86_64/gnu", "x86_64-pc-windows-gnu"),
    "macos-x64": ("macos/x86_64", "x86_64-apple-darwin"),
    "macos-arm64": ("macos/aarch64", "aarch64-apple-darwin"),
}

CARGO_CACHE = ["~/.cargo/registry", "~/.cargo/git", "target"]


def build_job(name: str, target: str, triple: str):
    binary = f"fishnet-{triple}"
    exe = ".exe" if target.startswith("windows") else ""
    steps = [
        sh("Add target", f"rustup target add {triple}"),
        sh("Build", f"cargo build --release --target {triple}"),
        sh("Stage binary", f"mkdir -p dist && cp target/{triple}/release/fishnet{exe} dist/{binary}"),
        upload_artifact(binary, f"dist/{binary}"),
    ]
    resources = []
    if name == "linux":
        # Intel SDE lets the linux build run tests for newer CPU features.
        # It lives in a private repo; a fork without the token just skips those tests.
        resources.append(optional("sde", "git clone --depth 1 https://github.com/lichess-org/sde.git .sde", timeout=120))
        steps.insert(
            2,
            sh("Test with SDE", ".sde/sde64 -- cargo test --release", id="sde_test", when="resources.sde"),
        )
    return job(
        name,
        *steps,
        target=target,
        cache=cache(*CARGO_CACHE, key_files=["**/Cargo.lock"], prefix="cargo"),
        optional=resources,
        timeout=3600,
    )


def workflow():
    jobs = [build_job(name, target, triple) for name, (target, triple) in PLATFORMS.items()]
    return wf(
        *jobs,
        release=release(
            *[asset(f"fishnet-{triple}") for _target, triple in PLATFORMS.values()],
            trigger="startsWith(ref, 'refs/tags/v')",
            requires=list(PLATFORMS),
            draft=True,
            title="{project} {version}",
        ),
        project="fishnet",
    )
