# scheduler.py
from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional

from .artifacts import ArtifactStore
from .conditions import ConditionContext
from .dag import build_dag, downstream
from .executor import JobExecutor, JobResult
from .model import Job, JobState, TriggerContext
from .ui.console import Console, get_console


class Scheduler:
    """
    Runs a validated job graph.

    - A job becomes eligible once every job it needs has Succeeded.
    - Every eligible job is submitted at once (one thread per job); jobs in the
      same batch have no relative order.
    - When a job Fails or is Skipped, everything downstream of it is Skipped
      without ever starting.
    - A run deadline stops new jobs from starting; running jobs are bounded by
      the same deadline inside the executor.
    """

    def __init__(
        self,
        jobs: List[Job],
        executor: JobExecutor,
        artifacts: ArtifactStore,
        trigger: TriggerContext,
        *,
        max_workers: Optional[int] = None,
        run_timeout: Optional[float] = None,
        console: Optional[Console] = None,
    ):
        self.jobs = list(jobs)
        self.by_name = {j.name: j for j in self.jobs}
        self.executor = executor
        self.artifacts = artifacts
        self.trigger = trigger
        self.max_workers = max_workers or max(1, len(self.jobs))
        self.run_timeout = run_timeout
        self.console = console or get_console()
        self.timed_out = False

        self.adj, _indeg = build_dag(self.jobs)
        self.results: Dict[str, JobResult] = {}
        self.states: Dict[str, JobState] = {j.name: JobState.PENDING for j in self.jobs}

    # ---- transitions ----

    def _set_state(self, name: str, state: JobState) -> None:
        self.states[name] = state
        self.artifacts.set_job_state(name, state)

    def _skip(self, name: str, reason: str) -> None:
        if self.states[name] != JobState.PENDING:
            return
        self._set_state(name, JobState.SKIPPED)
        self.results[name] = JobResult(name=name, state=JobState.SKIPPED, skip_reason=reason)
        self.console.print_job_skipped(name, reason)

    def _cancel_downstream(self, name: str) -> None:
        state = self.states[name].value
        for dep in sorted(downstream(self.adj, name)):
            self._skip(dep, f"needs '{name}' which {state}")

    def _eligible(self, name: str) -> bool:
        return self.states[name] == JobState.PENDING and all(
            self.states[n] == JobState.SUCCEEDED for n in self.by_name[name].needs
        )

    # ---- main loop ----

    def run(self) -> Dict[str, JobResult]:
        started = time.monotonic()
        deadline = started + self.run_timeout if self.run_timeout is not None else None

        ready: List[str] = [j.name for j in self.jobs if not j.needs]
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="shipci-job") as pool:
            while ready or in_flight:
                # schedule all currently ready
                while ready:
                    name = ready.pop(0)
                    if not self._eligible(name):
                        continue
                    job = self.by_name[name]
                    if deadline is not None and time.monotonic() >= deadline:
                        self.timed_out = True
                        self._skip(name, "run timed out before the job started")
                        self._cancel_downstream(name)
                        continue
                    if job.condition is not None and not job.condition(
                        ConditionContext(trigger=self.trigger, target=job.target)
                    ):
                        self._skip(name, f"condition false: {job.condition.text}")
                        self._cancel_downstream(name)
                        continue
                    self._set_state(name, JobState.RUNNING)
                    fut = pool.submit(self.executor.run, job, deadline=deadline, run_budget=self.run_timeout)
                    in_flight[fut] = name

                if not in_flight:
                    break

                # wait for at least one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:
                        # executor bug or broken condition: fail the job, keep the run going
                        self.console.print_exception(e)
                        result = JobResult(name=name, state=JobState.FAILED, failure=e)
                    self.results[name] = result
                    self._set_state(name, result.state)

                    if result.state == JobState.SUCCEEDED:
                        for nxt in sorted(self.adj[name]):
                            if self._eligible(nxt):
                                ready.append(nxt)
                    else:
                        self._cancel_downstream(name)

        if deadline is not None and time.monotonic() > deadline:
            self.timed_out = True

        # anything left pending was unreachable (should not happen on a validated DAG)
        for name, state in self.states.items():
            if state == JobState.PENDING:
                self._skip(name, "never became eligible")

        return {j.name: self.results[j.name] for j in self.jobs}
