# runner.py
from __future__ import annotations

import runpy
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from . import config
from .artifacts import ArtifactStore
from .cache import CacheStore
from .dag import validate_workflow
from .errors import GraphError
from .executor import JobExecutor, JobResult
from .model import Job, JobState, TriggerContext, Workflow
from .release import GateState, LocalReleaseHost, ReleaseGate, ReleaseHost, ReleasePublisher, ReleaseResult
from .resolver import OptionalDependencyResolver
from .scheduler import Scheduler
from .schema import load_json_workflow
from .ui.console import Console, get_console

EXIT_OK = 0
EXIT_JOB_FAILED = 1
EXIT_GRAPH_ERROR = 2
EXIT_RELEASE_FAILED = 3
EXIT_INTERRUPTED = 130


@dataclass
class RunReport:
    jobs: Dict[str, JobResult]
    levels: List[List[str]] = field(default_factory=list)
    release: Optional[ReleaseResult] = None
    timed_out: bool = False

    @property
    def exit_code(self) -> int:
        if self.release is not None and self.release.state == GateState.PUBLISHING:
            return EXIT_RELEASE_FAILED
        if self.timed_out or any(r.state == JobState.FAILED for r in self.jobs.values()):
            return EXIT_JOB_FAILED
        if (
            self.release is not None
            and self.release.triggered
            and self.release.state != GateState.PUBLISHED
        ):
            return EXIT_JOB_FAILED
        return EXIT_OK


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python or JSON file path.

    A .py file must define one of:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)
      - JOBS = [Job, ...]

    A .json file follows the declarative schema in schema.py.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix == ".json":
        return load_json_workflow(wf_path)
    if wf_path.suffix != ".py":
        raise GraphError(f"Workflow must be a .py or .json file, got: {wf_path.name}")

    module_name = f"shipci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, list) and all(isinstance(j, Job) for j in loaded):
        loaded = Workflow(jobs=loaded)
    if not isinstance(loaded, Workflow):
        raise GraphError(
            "Workflow must return/define a Workflow or List[Job]. "
            "Define workflow() -> Workflow, WORKFLOW = wf(...) or JOBS = [Job, ...]."
        )
    return loaded


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_workflow(
    workflow: Workflow,
    *,
    trigger: TriggerContext,
    workspace: str | Path = ".",
    cache: Optional[CacheStore] = None,
    artifacts: Optional[ArtifactStore] = None,
    release_host: Optional[ReleaseHost] = None,
    secrets: Optional[Mapping[str, str]] = None,
    max_workers: Optional[int] = None,
    job_timeout: Optional[float] = None,
    run_timeout: Optional[float] = None,
    console: Optional[Console] = None,
) -> RunReport:
    """
    Validate, schedule and run every job, then evaluate the release gate.

    Raises GraphError before anything executes when the workflow is malformed.
    """
    console = console or get_console()
    levels = validate_workflow(workflow)
    console.print_plan(levels)

    jobs = [
        replace(j, timeout=job_timeout) if j.timeout is None and job_timeout is not None else j
        for j in workflow.jobs
    ]

    artifacts = artifacts or ArtifactStore()
    executor = JobExecutor(
        workspace=workspace,
        artifacts=artifacts,
        trigger=trigger,
        cache=cache,
        secrets=secrets,
        resolver=OptionalDependencyResolver(),
        console=console,
    )
    scheduler = Scheduler(
        jobs,
        executor,
        artifacts,
        trigger,
        max_workers=max_workers,
        run_timeout=run_timeout,
        console=console,
    )
    results = scheduler.run()
    report = RunReport(jobs=results, levels=levels, timed_out=scheduler.timed_out)

    if workflow.release is not None:
        gate = ReleaseGate(workflow.release)
        states = dict(scheduler.states)
        if scheduler.timed_out:
            # nothing counts as succeeded once the run budget is gone
            states = {n: (s if s != JobState.SUCCEEDED else JobState.FAILED) for n, s in states.items()}
        gate.evaluate(trigger, states)
        console.print_release_state(gate.state.value, gate.reason)
        if gate.state == GateState.ELIGIBLE:
            host = release_host or LocalReleaseHost(config.RELEASE_DIR)
            publisher = ReleasePublisher(host, artifacts, console=console)
            report.release = publisher.publish(gate, trigger, project=workflow.project)
        else:
            report.release = ReleaseResult(state=gate.state, reason=gate.reason, triggered=gate.triggered)

    return report
