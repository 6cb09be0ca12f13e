# schema.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from . import dsl
from .errors import GraphError
from .model import Job, Step, Workflow

# -------------------- Schemas --------------------
# Declarative form of a workflow (JSON), e.g.
#
#   {"jobs": {"linux": {"target": "linux/x86_64", "steps": [{"action": "make"}]}},
#    "release": {"trigger": "matches(ref, 'refs/tags/v*')", "requires": ["linux"],
#                "assets": [{"source": "app-linux", "name": "app-linux"}]}}
#
# Field names are camelCase on the wire; snake_case is accepted too.


class _Def(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class StepDef(_Def):
    name: Optional[str] = None
    id: Optional[str] = None
    action: Optional[str] = None
    uses: Optional[Literal["upload-artifact", "download-artifact"]] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    cwd: Optional[str] = None
    condition: Optional[str] = None
    continue_on_error: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _one_action(self) -> "StepDef":
        if (self.action is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'action' or 'uses'")
        return self


class CacheDef(_Def):
    paths: List[str] = Field(min_length=1)
    key: Optional[str] = None
    key_files: List[str] = Field(default_factory=list)
    prefix: str = "cache"
    keep: int = Field(default=3, ge=1)


class OptionalDef(_Def):
    name: str
    action: str
    timeout: Optional[float] = Field(default=None, gt=0)


class JobDef(_Def):
    target: str = "linux"
    needs: List[str] = Field(default_factory=list)
    condition: Optional[str] = None
    steps: List[StepDef] = Field(min_length=1)
    env: Dict[str, str] = Field(default_factory=dict)
    secrets: List[str] = Field(default_factory=list)
    cache: Optional[CacheDef] = None
    optional: List[OptionalDef] = Field(default_factory=list)
    timeout: Optional[float] = Field(default=None, gt=0)


class AssetDef(_Def):
    source: str
    name: str
    content_type: str = "application/octet-stream"
    path: Optional[str] = None


class ReleaseDef(_Def):
    trigger: str
    requires: List[str] = Field(default_factory=list)
    assets: List[AssetDef] = Field(default_factory=list)
    draft: bool = True
    prerelease: bool = False
    title: str = "{project} {version}"


class WorkflowDef(_Def):
    project: str = "shipci"
    jobs: Dict[str, JobDef] = Field(min_length=1)
    release: Optional[ReleaseDef] = None


# -------------------- Conversion --------------------

def _step(idx: int, d: StepDef) -> Step:
    common = dict(id=d.id, when=d.condition)
    if d.uses == "upload-artifact":
        name = d.with_.get("name")
        paths = d.with_.get("path") or d.with_.get("paths")
        if not name or not paths:
            raise GraphError("upload-artifact needs with.name and with.path")
        paths = [paths] if isinstance(paths, str) else list(paths)
        step = dsl.upload_artifact(str(name), *paths, when=d.condition)
        return Step(
            name=d.name or step.name,
            action=step.action,
            id=d.id,
            condition=step.condition,
            continue_on_error=d.continue_on_error,
            timeout=d.timeout,
        )
    if d.uses == "download-artifact":
        step = dsl.download_artifacts(str(d.with_.get("pattern", "*")), str(d.with_.get("path", ".")), when=d.condition)
        return Step(
            name=d.name or step.name,
            action=step.action,
            id=d.id,
            condition=step.condition,
            continue_on_error=d.continue_on_error,
            timeout=d.timeout,
        )
    return dsl.sh(
        d.name or d.id or f"step {idx + 1}",
        d.action or "",
        cwd=d.cwd,
        continue_on_error=d.continue_on_error,
        timeout=d.timeout,
        **common,
    )


def _job(name: str, d: JobDef) -> Job:
    try:
        target = d.target
        cache = None
        if d.cache is not None:
            cache = dsl.cache(
                *d.cache.paths,
                key=d.cache.key,
                key_files=d.cache.key_files,
                prefix=d.cache.prefix,
                keep=d.cache.keep,
            )
        return dsl.job(
            name,
            *[_step(i, s) for i, s in enumerate(d.steps)],
            target=target,
            needs=d.needs,
            when=d.condition,
            env=d.env,
            secrets=d.secrets,
            cache=cache,
            optional=[dsl.optional(o.name, o.action, timeout=o.timeout) for o in d.optional],
            timeout=d.timeout,
        )
    except ValueError as e:
        raise GraphError(f"Job '{name}': {e}") from e


def workflow_from_dict(data: Dict[str, Any]) -> Workflow:
    """Validate a declarative workflow and convert it into typed records."""
    try:
        spec = WorkflowDef.model_validate(data)
    except ValidationError as e:
        raise GraphError(f"Invalid workflow definition:\n{e}") from e

    jobs = [_job(name, d) for name, d in spec.jobs.items()]
    rel = None
    if spec.release is not None:
        r = spec.release
        rel = dsl.release(
            *[dsl.asset(a.source, a.name, content_type=a.content_type, path=a.path) for a in r.assets],
            trigger=r.trigger,
            requires=r.requires,
            draft=r.draft,
            prerelease=r.prerelease,
            title=r.title,
        )
    return Workflow(jobs=jobs, release=rel, project=spec.project)


def load_json_workflow(path: str | Path) -> Workflow:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise GraphError(f"{p.name} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise GraphError(f"{p.name} must contain a JSON object")
    return workflow_from_dict(data)
