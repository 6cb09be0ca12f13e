# actions.py
from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from . import config
from .artifacts import ArtifactStore
from .errors import JobTimeout, ShipCIError, StepFailure
from .model import Action, CallAction, ShellAction, Target, TriggerContext

OUTPUT_TAIL = 4000
ENV_FILE_VAR = "SHIPCI_ENV"


@dataclass
class StepContext:
    """Everything an action may touch while it runs."""
    job: str
    step: str
    workspace: Path
    env: Dict[str, str]
    artifacts: ArtifactStore
    target: Target
    trigger: TriggerContext
    exported: Dict[str, str] = field(default_factory=dict)
    output: List[str] = field(default_factory=list)

    def export(self, key: str, value: str) -> None:
        """Make KEY=VALUE visible to later steps of the same job."""
        self.exported[key] = str(value)

    def log(self, line: str) -> None:
        self.output.append(line)


def _parse_env_file(path: Path) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not path.exists():
        return out
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        if "=" not in line:
            continue
        k, v = line.split("=", 1)
        k = k.strip()
        if k:
            out[k] = v.strip()
    return out


def _run_shell(action: ShellAction, ctx: StepContext, timeout: Optional[float]) -> None:
    cwd = (ctx.workspace / (action.cwd or ".")).resolve()
    if not cwd.exists():
        raise StepFailure(
            job=ctx.job,
            step=ctx.step,
            cmd=action.cmd,
            exit_code=None,
            message=f"cwd not found: {cwd}",
        )

    fd, env_file = tempfile.mkstemp(prefix="shipci-env-", suffix=".txt")
    os.close(fd)
    env = config.step_environ()
    env.update(ctx.env)
    env[ENV_FILE_VAR] = env_file

    try:
        proc = subprocess.run(
            action.cmd,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
        ctx.exported.update(_parse_env_file(Path(env_file)))
    except subprocess.TimeoutExpired as e:
        raise JobTimeout("step", f"{ctx.job}/{ctx.step}", e.timeout) from e
    finally:
        Path(env_file).unlink(missing_ok=True)

    output = (proc.stdout or "") + (proc.stderr or "")
    if output:
        ctx.output.append(output)

    if proc.returncode != 0:
        raise StepFailure(
            job=ctx.job,
            step=ctx.step,
            cmd=action.cmd,
            exit_code=proc.returncode,
            output=output[-OUTPUT_TAIL:],
        )


def _run_call(action: CallAction, ctx: StepContext) -> None:
    try:
        action.fn(ctx)
    except ShipCIError:
        raise
    except Exception as e:
        raise StepFailure(
            job=ctx.job,
            step=ctx.step,
            cmd=action.describe(),
            exit_code=None,
            message=f"{type(e).__name__}: {e}",
        ) from e


def run_action(action: Action, ctx: StepContext, *, timeout: Optional[float] = None) -> None:
    """
    Run one action. Returns normally on success.

    Raises StepFailure on a failed command/callable, JobTimeout when a shell
    command outlives `timeout`, and lets other ShipCIError (artifact misuse)
    through untouched.
    """
    if timeout is not None and timeout <= 0:
        raise JobTimeout("step", f"{ctx.job}/{ctx.step}", 0)
    if isinstance(action, ShellAction):
        _run_shell(action, ctx, timeout)
    elif isinstance(action, CallAction):
        _run_call(action, ctx)
    else:
        raise TypeError(f"Unknown action type: {type(action).__name__}")


# ---------------------------------------------------------------------
# Built-in artifact actions
# ---------------------------------------------------------------------

def upload_artifact_action(name: str, paths: List[str]) -> CallAction:
    def _upload(ctx: StepContext) -> None:
        artifact = ctx.artifacts.publish_paths(ctx.job, name, paths, base=ctx.workspace)
        ctx.log(f"uploaded artifact '{name}' ({len(artifact.files)} file(s))")

    return CallAction(_upload, label=f"upload-artifact {name}")


def download_artifacts_action(pattern: str, dest: str) -> CallAction:
    def _download(ctx: StepContext) -> None:
        root = ctx.workspace / dest
        for artifact in ctx.artifacts.fetch_all(pattern, requester=ctx.job):
            artifact.write_to(root / artifact.name)
            ctx.log(f"downloaded artifact '{artifact.name}' from '{artifact.producer}'")

    return CallAction(_download, label=f"download-artifact {pattern}")
