# src/shipci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .actions import download_artifacts_action, upload_artifact_action
from .conditions import ConditionLike, Predicate, as_predicate
from .model import (
    AssetSpec,
    CacheSpec,
    CallAction,
    Job,
    OptionalResource,
    ReleaseSpec,
    ShellAction,
    Step,
    Target,
    Workflow,
)


def _cond(when: Optional[ConditionLike]) -> Optional[Predicate]:
    return as_predicate(when) if when is not None else None


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    id: str | None = None,
    when: Optional[ConditionLike] = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        action=ShellAction(cmd=cmd, cwd=cwd),
        id=id,
        condition=_cond(when),
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def call(
    name: str,
    fn: Callable[..., Any],
    *,
    id: str | None = None,
    when: Optional[ConditionLike] = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> Step:
    """Create a step that runs a Python callable with a StepContext."""
    return Step(
        name=name,
        action=CallAction(fn=fn, label=getattr(fn, "__name__", name)),
        id=id,
        condition=_cond(when),
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def upload_artifact(name: str, *paths: str, when: Optional[ConditionLike] = None) -> Step:
    """Publish files from the workspace as artifact `name`."""
    if not paths:
        raise ValueError(f"upload_artifact({name!r}) needs at least one path")
    return Step(name=f"Upload {name}", action=upload_artifact_action(name, list(paths)), condition=_cond(when))


def download_artifacts(pattern: str = "*", dest: str = ".", *, when: Optional[ConditionLike] = None) -> Step:
    """Fetch every artifact matching `pattern` into dest/<artifact name>/."""
    return Step(
        name=f"Download {pattern}",
        action=download_artifacts_action(pattern, dest),
        condition=_cond(when),
    )


def optional(name: str, action: Union[str, Callable[..., Any]], *, timeout: float | None = None) -> OptionalResource:
    """Declare a best-effort resource (shell command or callable)."""
    act = ShellAction(cmd=action) if isinstance(action, str) else CallAction(fn=action, label=name)
    return OptionalResource(name=name, action=act, timeout=timeout)


def cache(
    *paths: str,
    key: str | None = None,
    key_files: Iterable[str] = (),
    prefix: str = "cache",
    keep: int = 3,
) -> CacheSpec:
    """Cache `paths`; keyed on `key`, or on "{os}-{prefix}-{hash of key_files}"."""
    return CacheSpec(paths=tuple(paths), key=key, key_files=tuple(key_files), prefix=prefix, keep=keep)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    target: Union[str, Target] = "linux",
    needs: Optional[List[str]] = None,
    when: Optional[ConditionLike] = None,
    env: Optional[Dict[str, str]] = None,
    secrets: Optional[List[str]] = None,
    cache: Optional[CacheSpec] = None,
    optional: Optional[List[OptionalResource]] = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to shell steps missing cwd
) -> Job:
    steps_final = list(steps)
    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            replace(s, action=replace(s.action, cwd=cwd))
            if isinstance(s.action, ShellAction) and s.action.cwd is None
            else s
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=steps_final,
        target=Target.parse(target) if isinstance(target, str) else target,
        needs=list(needs or []),
        condition=_cond(when),
        # force values to str for stable hashing + env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        secrets=list(secrets or []),
        cache=cache,
        optional=list(optional or []),
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._target: Union[str, Target] = "linux"
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._secrets: list[str] = []
        self._optional: list[OptionalResource] = []
        self._cache: Optional[CacheSpec] = None
        self._when: Optional[ConditionLike] = None
        self._timeout: float | None = None

    def on(self, target: Union[str, Target]):
        self._target = target
        return self

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kw):
        self._steps.append(sh(name, run, cwd=cwd, **kw))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_secrets(self, *names: str):
        self._secrets.extend(names)
        return self

    def with_optional(self, name: str, action: Union[str, Callable[..., Any]], timeout: float | None = None):
        self._optional.append(optional(name, action, timeout=timeout))
        return self

    def with_cache(self, *paths: str, **kw):
        self._cache = cache(*paths, **kw)
        return self

    def when(self, condition: ConditionLike):
        self._when = condition
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            *self._steps,
            target=self._target,
            needs=self._needs,
            when=self._when,
            env=self._env,
            secrets=self._secrets,
            cache=self._cache,
            optional=self._optional,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------

def asset(
    source: str,
    name: str | None = None,
    *,
    content_type: str = "application/octet-stream",
    path: str | None = None,
) -> AssetSpec:
    return AssetSpec(source=source, name=name or source, content_type=content_type, path=path)


def release(
    *assets: AssetSpec,
    trigger: ConditionLike,
    requires: Iterable[str],
    draft: bool = True,
    prerelease: bool = False,
    title: str = "{project} {version}",
) -> ReleaseSpec:
    return ReleaseSpec(
        trigger=as_predicate(trigger),
        requires=tuple(requires),
        assets=tuple(assets),
        draft=draft,
        prerelease=prerelease,
        title=title,
    )


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job, release: Optional[ReleaseSpec] = None, project: str = "shipci") -> Workflow:
    """
    Workflow definition helper.

    Users can write:
        from shipci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
                release=release(...),
            )
    """
    return Workflow(jobs=list(jobs), release=release, project=project)
