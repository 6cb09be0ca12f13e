# artifacts.py
from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from .errors import ConflictError, NotReadyError
from .fingerprint import sha256_bytes
from .model import JobState


@dataclass(frozen=True)
class ArtifactFile:
    path: str  # posix, relative to the artifact root
    data: bytes

    @property
    def digest(self) -> str:
        return sha256_bytes(self.data)


@dataclass(frozen=True)
class Artifact:
    """Named output of one producer job."""
    name: str
    producer: str
    files: Tuple[ArtifactFile, ...]

    def file(self, path: Optional[str] = None) -> ArtifactFile:
        """Return `path`, or the only file when `path` is None."""
        if path is None:
            if len(self.files) != 1:
                raise ValueError(
                    f"Artifact '{self.name}' has {len(self.files)} files; name the one you want"
                )
            return self.files[0]
        for f in self.files:
            if f.path == path:
                return f
        raise KeyError(f"Artifact '{self.name}' has no file '{path}'")

    def write_to(self, dest: str | Path) -> List[Path]:
        out = []
        root = Path(dest)
        for f in self.files:
            target = root / f.path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(f.data)
            out.append(target)
        return out


def _clean_relpath(path: str) -> str:
    p = PurePosixPath(path.replace("\\", "/"))
    if p.is_absolute() or ".." in p.parts or not p.parts:
        raise ValueError(f"Artifact file path must be relative and inside the artifact: {path!r}")
    return p.as_posix()


def _add(files: Dict[str, bytes], job: str, name: str, key: str, path: Path) -> None:
    if key in files:
        raise ValueError(f"[{job}] artifact '{name}' has two files named '{key}' (second: {path})")
    files[key] = path.read_bytes()


# ---------------------------------------------------------------------
# Backends (where the bytes live)
# ---------------------------------------------------------------------

class ArtifactBackend(Protocol):
    def put(self, artifact: Artifact) -> None: ...
    def get(self, name: str) -> Optional[Artifact]: ...


class MemoryArtifactBackend:
    def __init__(self) -> None:
        self._items: Dict[str, Artifact] = {}

    def put(self, artifact: Artifact) -> None:
        self._items[artifact.name] = artifact

    def get(self, name: str) -> Optional[Artifact]:
        return self._items.get(name)


class FileArtifactBackend:
    """
    root/
      <artifact name>/
        artifact.json     {"name", "producer", "files": [...]}
        files/<path>
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _dir(self, name: str) -> Path:
        return self.root / name

    def put(self, artifact: Artifact) -> None:
        final = self._dir(artifact.name)
        tmp = self.root / f".{artifact.name}.{uuid.uuid4().hex}.tmp"
        for f in artifact.files:
            target = tmp / "files" / f.path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(f.data)
        tmp.mkdir(parents=True, exist_ok=True)
        meta = {
            "name": artifact.name,
            "producer": artifact.producer,
            "files": [{"path": f.path, "sha256": f.digest} for f in artifact.files],
        }
        (tmp / "artifact.json").write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, final)

    def get(self, name: str) -> Optional[Artifact]:
        d = self._dir(name)
        meta_path = d / "artifact.json"
        if not meta_path.exists():
            return None
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        files = tuple(
            ArtifactFile(path=e["path"], data=(d / "files" / e["path"]).read_bytes())
            for e in meta["files"]
        )
        return Artifact(name=meta["name"], producer=meta["producer"], files=files)


# ---------------------------------------------------------------------
# Store (run-scoped rules on top of a backend)
# ---------------------------------------------------------------------

class ArtifactStore:
    """
    Write-once, run-scoped artifact exchange between jobs.

    - publish(job, name, files): ConflictError if `name` was already published.
    - fetch(name): NotReadyError unless the producer reached Succeeded. A job
      can always read back what it published itself.
    - fetch_all(pattern): every artifact whose name matches the glob.
    """

    def __init__(self, backend: Optional[ArtifactBackend] = None):
        self.backend = backend or MemoryArtifactBackend()
        self._lock = threading.Lock()
        self._owners: Dict[str, str] = {}
        self._states: Dict[str, JobState] = {}

    def set_job_state(self, job: str, state: JobState) -> None:
        with self._lock:
            self._states[job] = state

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._owners)

    def publish(self, job: str, name: str, files: Mapping[str, bytes]) -> Artifact:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise ValueError(f"Invalid artifact name: {name!r}")
        if not files:
            raise ValueError(f"Artifact '{name}' has no files")

        artifact = Artifact(
            name=name,
            producer=job,
            files=tuple(ArtifactFile(_clean_relpath(p), bytes(d)) for p, d in sorted(files.items())),
        )
        with self._lock:
            owner = self._owners.get(name)
            if owner is not None:
                raise ConflictError(
                    f"Artifact '{name}' already published by job '{owner}' (write-once per run)"
                )
            self._owners[name] = job
        try:
            self.backend.put(artifact)
        except Exception:
            with self._lock:
                self._owners.pop(name, None)
            raise
        return artifact

    def publish_paths(self, job: str, name: str, paths: Iterable[str | Path], *, base: str | Path) -> Artifact:
        """Publish files (or whole directories) from disk, keyed relative to `base`."""
        base_p = Path(base).resolve()
        files: Dict[str, bytes] = {}
        for raw in paths:
            p = Path(raw)
            p = p if p.is_absolute() else base_p / p
            if not p.exists():
                raise FileNotFoundError(f"[{job}] artifact '{name}' path not found: {p}")
            if p.is_dir():
                for f in sorted(p.rglob("*")):
                    if f.is_file():
                        _add(files, job, name, f.relative_to(p.parent).as_posix(), f)
            else:
                _add(files, job, name, p.name, p)
        return self.publish(job, name, files)

    def _check_ready(self, name: str, requester: Optional[str]) -> str:
        with self._lock:
            owner = self._owners.get(name)
            state = self._states.get(owner, JobState.PENDING) if owner else None
        if owner is None:
            raise NotReadyError(f"Artifact '{name}' has not been published")
        if owner != requester and state != JobState.SUCCEEDED:
            raise NotReadyError(
                f"Artifact '{name}' is not ready: producer '{owner}' is {state.value if state else 'unknown'}"
            )
        return owner

    def fetch(self, name: str, *, requester: Optional[str] = None) -> Artifact:
        self._check_ready(name, requester)
        artifact = self.backend.get(name)
        if artifact is None:
            raise NotReadyError(f"Artifact '{name}' is missing from the backend")
        return artifact

    def fetch_all(self, pattern: str = "*", *, requester: Optional[str] = None) -> List[Artifact]:
        return [
            self.fetch(name, requester=requester)
            for name in self.names()
            if fnmatchcase(name, pattern)
        ]
