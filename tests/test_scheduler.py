"""Tests for DAG scheduling, parallelism and failure propagation."""
import threading
import time

from shipci.cache import CacheStore
from shipci.dsl import cache, call, job
from shipci.executor import JobExecutor
from shipci.model import JobState, TriggerContext
from shipci.scheduler import Scheduler


class Recorder:
    """Records start/end times of every job it runs."""

    def __init__(self):
        self.lock = threading.Lock()
        self.events = []

    def step(self, delay=0.0, fail=False):
        def _run(ctx):
            with self.lock:
                self.events.append(("start", ctx.job, time.monotonic()))
            time.sleep(delay)
            with self.lock:
                self.events.append(("end", ctx.job, time.monotonic()))
            if fail:
                raise RuntimeError(f"{ctx.job} failed")

        return _run

    def started(self):
        return [name for kind, name, _ in self.events if kind == "start"]

    def time_of(self, kind, name):
        return next(t for k, n, t in self.events if k == kind and n == name)


def _scheduler(jobs, tmp_path, artifacts, console, trigger=None, **kw):
    trigger = trigger or TriggerContext(ref="refs/heads/main")
    executor = JobExecutor(workspace=tmp_path, artifacts=artifacts, trigger=trigger, console=console)
    return Scheduler(jobs, executor, artifacts, trigger, console=console, **kw)


def test_jobs_start_after_needs_finish(tmp_path, artifacts, console):
    rec = Recorder()
    jobs = [
        job("a", call("a", rec.step(0.05))),
        job("b", call("b", rec.step(0.02)), needs=["a"]),
        job("c", call("c", rec.step(0.01)), needs=["a"]),
        job("d", call("d", rec.step()), needs=["b", "c"]),
    ]
    results = _scheduler(jobs, tmp_path, artifacts, console).run()

    assert all(r.state == JobState.SUCCEEDED for r in results.values())
    assert rec.time_of("start", "b") >= rec.time_of("end", "a")
    assert rec.time_of("start", "c") >= rec.time_of("end", "a")
    assert rec.time_of("start", "d") >= max(rec.time_of("end", "b"), rec.time_of("end", "c"))


def test_independent_jobs_run_concurrently(tmp_path, artifacts, console):
    barrier = threading.Barrier(4, timeout=5)
    jobs = [job(n, call("wait", lambda ctx: barrier.wait())) for n in ("linux", "windows", "macos-x64", "macos-arm64")]
    results = _scheduler(jobs, tmp_path, artifacts, console).run()
    # the barrier only opens if all four are in flight at once
    assert all(r.state == JobState.SUCCEEDED for r in results.values())


def test_failure_skips_transitive_dependents(tmp_path, artifacts, console):
    rec = Recorder()
    jobs = [
        job("build", call("build", rec.step(fail=True))),
        job("test", call("test", rec.step()), needs=["build"]),
        job("package", call("package", rec.step()), needs=["test"]),
        job("lint", call("lint", rec.step())),
    ]
    sched = _scheduler(jobs, tmp_path, artifacts, console)
    results = sched.run()

    assert results["build"].state == JobState.FAILED
    assert results["test"].state == JobState.SKIPPED
    assert results["package"].state == JobState.SKIPPED
    assert results["lint"].state == JobState.SUCCEEDED
    assert "build" in results["test"].skip_reason
    assert sorted(rec.started()) == ["build", "lint"]
    assert results["package"].executed is False
    assert sched.states["build"] == JobState.FAILED


def test_false_job_condition_skips_job_and_dependents(tmp_path, artifacts, console):
    rec = Recorder()
    jobs = [
        job("publish-docs", call("docs", rec.step()), when="startsWith(ref, 'refs/tags/')"),
        job("announce", call("announce", rec.step()), needs=["publish-docs"]),
        job("build", call("build", rec.step())),
    ]
    results = _scheduler(jobs, tmp_path, artifacts, console).run()
    assert results["publish-docs"].state == JobState.SKIPPED
    assert "condition false" in results["publish-docs"].skip_reason
    assert results["announce"].state == JobState.SKIPPED
    assert rec.started() == ["build"]


def test_job_condition_sees_target(tmp_path, artifacts, console):
    jobs = [
        job("mac-only", call("x", lambda ctx: None), target="macos/aarch64", when="target.os == 'macos'"),
        job("not-linux", call("x", lambda ctx: None), target="linux", when="target.os != 'linux'"),
    ]
    results = _scheduler(jobs, tmp_path, artifacts, console).run()
    assert results["mac-only"].state == JobState.SUCCEEDED
    assert results["not-linux"].state == JobState.SKIPPED


def test_worker_limit_serializes(tmp_path, artifacts, console):
    active = []
    peak = []
    lock = threading.Lock()

    def step(ctx):
        with lock:
            active.append(ctx.job)
            peak.append(len(active))
        time.sleep(0.02)
        with lock:
            active.remove(ctx.job)

    jobs = [job(f"j{i}", call("s", step)) for i in range(4)]
    _scheduler(jobs, tmp_path, artifacts, console, max_workers=1).run()
    assert max(peak) == 1


def test_run_timeout_stops_new_jobs(tmp_path, artifacts, console):
    rec = Recorder()
    jobs = [
        job("slow", call("slow", rec.step(0.3))),
        job("after", call("after", rec.step()), needs=["slow"]),
    ]
    sched = _scheduler(jobs, tmp_path, artifacts, console, run_timeout=0.1)
    results = sched.run()
    assert sched.timed_out is True
    assert results["slow"].state == JobState.FAILED
    assert results["after"].state == JobState.SKIPPED
    assert rec.started() == ["slow"]


def test_artifact_states_follow_jobs(tmp_path, artifacts, console):
    def produce(ctx):
        ctx.artifacts.publish(ctx.job, "bin", {"f": b"data"})

    seen = {}

    def consume(ctx):
        seen["data"] = ctx.artifacts.fetch("bin", requester=ctx.job).file().data

    jobs = [job("producer", call("p", produce)), job("consumer", call("c", consume), needs=["producer"])]
    results = _scheduler(jobs, tmp_path, artifacts, console).run()
    assert results["consumer"].state == JobState.SUCCEEDED
    assert seen["data"] == b"data"


def test_parallel_jobs_keep_their_caches_apart(tmp_path, artifacts, console):
    store = CacheStore(tmp_path / ".shipci" / "cache")
    barrier = threading.Barrier(2, timeout=5)

    def build(ctx):
        (ctx.workspace / "target").mkdir(exist_ok=True)
        (ctx.workspace / "target" / f"{ctx.job}.bin").write_text(ctx.job)
        barrier.wait()  # both jobs have written before either saves

    jobs = [
        job(name, call("build", build), cache=cache("target", key=f"{name}-cargo"))
        for name in ("linux", "windows")
    ]
    trigger = TriggerContext(ref="refs/heads/main")
    executor = JobExecutor(workspace=tmp_path, artifacts=artifacts, trigger=trigger, cache=store, console=console)
    results = Scheduler(jobs, executor, artifacts, trigger, console=console).run()
    assert all(r.state == JobState.SUCCEEDED for r in results.values())

    for name in ("linux", "windows"):
        fresh = tmp_path / f"restore-{name}"
        fresh.mkdir()
        assert store.restore(f"{name}-cargo", workspace=fresh).hit is True
        assert sorted(p.name for p in (fresh / "target").iterdir()) == [f"{name}.bin"]
