# executor.py
from __future__ import annotations

import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .actions import StepContext, run_action
from .artifacts import ArtifactStore
from .cache import CacheHit, CacheStore
from .conditions import ConditionContext, Predicate, success
from .errors import ArtifactError, JobTimeout, ShipCIError
from .fingerprint import cache_key
from .model import Job, JobState, Step, StepOutcome, TriggerContext
from .resolver import OptionalDependencyResolver, ResourceOutcome
from .ui.console import Console, get_console


@dataclass
class StepResult:
    name: str
    key: str
    outcome: StepOutcome
    error: Optional[BaseException] = None
    duration: float = 0.0


@dataclass
class JobResult:
    """Terminal record of one job, as shown in the run summary."""
    name: str
    state: JobState
    steps: List[StepResult] = field(default_factory=list)
    resources: Dict[str, ResourceOutcome] = field(default_factory=dict)
    cache: Optional[CacheHit] = None
    cache_saved: Optional[str] = None
    failure: Optional[BaseException] = None
    failure_step: Optional[str] = None
    skip_reason: str = ""
    workspace: Optional[Path] = None
    duration: float = 0.0

    @property
    def executed(self) -> bool:
        return any(s.outcome != StepOutcome.SKIPPED for s in self.steps)

    def outcome_of(self, key: str) -> Optional[StepOutcome]:
        for s in self.steps:
            if s.key == key:
                return s.outcome
        return None


# never copied into a job workspace
CHECKOUT_IGNORED = {".shipci", "__pycache__"}
JOBS_DIR = Path(".shipci") / "jobs"


def effective_condition(step: Step) -> Predicate:
    """A step without a status function only runs while nothing fatal has failed."""
    if step.condition is None:
        return success()
    if step.condition.uses_status:
        return step.condition
    return success() & step.condition


class JobExecutor:
    """
    Runs one job: fresh workspace -> cache restore -> optional resources ->
    steps (in order) -> cache save.

    Every job works in its own copy of the checkout under `jobs_dir`, so jobs
    running side by side never see each other's files or cache restores.

    Steps never run in parallel within a job. A step's outcome is tri-state
    for failures (Failed vs FailedIgnored) so later conditions are a pure
    function of what was recorded.
    """

    def __init__(
        self,
        *,
        workspace: str | Path,
        artifacts: ArtifactStore,
        trigger: TriggerContext,
        jobs_dir: Optional[str | Path] = None,
        cache: Optional[CacheStore] = None,
        secrets: Optional[Mapping[str, str]] = None,
        resolver: Optional[OptionalDependencyResolver] = None,
        console: Optional[Console] = None,
    ):
        self.workspace = Path(workspace).resolve()
        self.jobs_dir = Path(jobs_dir).resolve() if jobs_dir is not None else self.workspace / JOBS_DIR
        self.artifacts = artifacts
        self.trigger = trigger
        self.cache = cache
        self.secrets = dict(secrets or {})
        self.resolver = resolver or OptionalDependencyResolver()
        self.console = console or get_console()

    # ---- helpers ----

    def _job_env(self, job: Job) -> Dict[str, str]:
        env = dict(job.env)
        for name in job.secrets:
            value = self.secrets.get(name)
            if value is None:
                self.console.print_debug(f"[{job.name}] secret {name} not provided")
                continue
            self.console.add_secret(value)
            env[name] = value
        return env

    def _prepare_workspace(self, job: Job) -> Path:
        """Copy the checkout into a clean per-job directory and return it."""
        dest = self.jobs_dir / re.sub(r"[^A-Za-z0-9._-]", "_", job.name)
        if dest.exists():
            shutil.rmtree(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)

        def _ignore(src: str, names: List[str]) -> List[str]:
            here = Path(src)
            return [n for n in names if n in CHECKOUT_IGNORED or here / n == self.jobs_dir]

        shutil.copytree(self.workspace, dest, symlinks=True, ignore=_ignore)
        return dest

    @staticmethod
    def _cache_family(job: Job) -> str:
        return f"{job.name}:{job.target.os}-{job.cache.prefix}"

    def _cache_key(self, job: Job, workspace: Path) -> str:
        spec = job.cache
        if spec is None:
            return ""
        if spec.key:
            return spec.key
        return cache_key(job.target.os, spec.prefix, workspace, spec.key_files)

    def _context(self, job: Job, step_name: str, env: Dict[str, str], workspace: Path) -> StepContext:
        return StepContext(
            job=job.name,
            step=step_name,
            workspace=workspace,
            env=dict(env),
            artifacts=self.artifacts,
            target=job.target,
            trigger=self.trigger,
        )

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - time.monotonic()

    # ---- main entry ----

    def run(self, job: Job, *, deadline: Optional[float] = None, run_budget: Optional[float] = None) -> JobResult:
        """
        Execute `job` to a terminal state. Never raises for job-local failures;
        they are recorded on the returned JobResult.

        `deadline` is the run-wide monotonic deadline (if any); the job's own
        timeout is layered on top of it.
        """
        started = time.monotonic()
        result = JobResult(name=job.name, state=JobState.RUNNING)
        console = self.console
        console.print_job_start(job.name, str(job.target))

        job_deadline = started + job.timeout if job.timeout is not None else None
        timeout_scope, timeout_budget = "job", job.timeout
        if deadline is not None and (job_deadline is None or deadline < job_deadline):
            job_deadline = deadline
            timeout_scope, timeout_budget = "run", run_budget

        env = self._job_env(job)

        # ---- workspace ----
        try:
            workspace = self._prepare_workspace(job)
        except OSError as e:
            result.state = JobState.FAILED
            result.failure = e
            result.duration = time.monotonic() - started
            console.print_info(f"[{job.name}] could not prepare workspace ({e})")
            console.print_job_finished(job.name, result.state.value, result.duration)
            return result
        result.workspace = workspace

        # ---- restore ----
        key = self._cache_key(job, workspace)
        if job.cache is not None:
            result.cache = self.cache.restore(key, workspace=workspace) if self.cache else None
            if result.cache is not None:
                console.print_cache(job.name, result.cache)

        # ---- optional resources ----
        for resource in job.optional:
            ctx = self._context(job, f"optional:{resource.name}", env, workspace)
            outcome = self.resolver.resolve(resource, ctx, timeout=self._remaining(job_deadline))
            env.update(ctx.exported)
            result.resources[resource.name] = outcome
            console.print_resource(job.name, outcome)

        # ---- steps ----
        outcomes: Dict[str, StepOutcome] = {}
        job_failed = False
        for step in job.steps:
            remaining = self._remaining(job_deadline)
            if remaining is not None and remaining <= 0:
                if not job_failed:
                    job_failed = True
                    result.failure = JobTimeout(timeout_scope, job.name, timeout_budget or 0)
                    result.failure_step = step.name
                result.steps.append(StepResult(step.name, step.key, StepOutcome.SKIPPED))
                outcomes[step.key] = StepOutcome.SKIPPED
                continue

            cond_ctx = ConditionContext(
                trigger=self.trigger,
                target=job.target,
                steps=dict(outcomes),
                resources={n: o.available for n, o in result.resources.items()},
                job_failed=job_failed,
            )
            if not effective_condition(step)(cond_ctx):
                result.steps.append(StepResult(step.name, step.key, StepOutcome.SKIPPED))
                outcomes[step.key] = StepOutcome.SKIPPED
                console.print_step_result(job.name, step.name, "skipped")
                continue

            console.print_step(job.name, step.name)
            ctx = self._context(job, step.name, env, workspace)
            timeout = remaining
            if step.timeout is not None:
                timeout = step.timeout if timeout is None else min(step.timeout, timeout)

            t0 = time.monotonic()
            error: Optional[BaseException] = None
            try:
                run_action(step.action, ctx, timeout=timeout)
                outcome = StepOutcome.SUCCEEDED
            except ArtifactError as e:
                # artifact misuse is fatal even for best-effort steps
                error, outcome = e, StepOutcome.FAILED
            except JobTimeout as e:
                error = e
                hit_job_budget = step.timeout is None or (remaining is not None and remaining <= step.timeout)
                if hit_job_budget:
                    error = JobTimeout(timeout_scope, job.name, timeout_budget or 0)
                    outcome = StepOutcome.FAILED
                else:
                    outcome = StepOutcome.FAILED_IGNORED if step.continue_on_error else StepOutcome.FAILED
            except ShipCIError as e:
                error = e
                outcome = StepOutcome.FAILED_IGNORED if step.continue_on_error else StepOutcome.FAILED

            env.update(ctx.exported)
            console.print_output(job.name, "\n".join(ctx.output))
            result.steps.append(StepResult(step.name, step.key, outcome, error, time.monotonic() - t0))
            outcomes[step.key] = outcome
            console.print_step_result(job.name, step.name, outcome.value, str(error) if error else "")

            if outcome == StepOutcome.FAILED and not job_failed:
                job_failed = True
                result.failure = error
                result.failure_step = step.name

        # in-process actions cannot be interrupted; an overrun is still a timeout
        if not job_failed and job_deadline is not None and time.monotonic() > job_deadline:
            job_failed = True
            result.failure = JobTimeout(timeout_scope, job.name, timeout_budget or 0)
            result.failure_step = job.steps[-1].name if job.steps else None

        result.state = JobState.FAILED if job_failed else JobState.SUCCEEDED

        # ---- save ----
        if (
            result.state == JobState.SUCCEEDED
            and job.cache is not None
            and self.cache is not None
            and not (result.cache and result.cache.hit)
        ):
            family = None if job.cache.key else self._cache_family(job)
            try:
                self.cache.save(key, job.cache.paths, workspace=workspace, family=family)
            except OSError as e:
                console.print_info(f"[{job.name}] CACHE: save failed ({e})")
            else:
                result.cache_saved = key
                console.print_cache_saved(job.name, key)
                if family is not None:
                    self.cache.prune(family, keep=job.cache.keep)

        result.duration = time.monotonic() - started
        console.print_job_finished(job.name, result.state.value, result.duration)
        return result
