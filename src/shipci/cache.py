# cache.py
from __future__ import annotations

import io
import json
import os
import re
import tarfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Sequence, Tuple

from .fingerprint import sha256_bytes

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Exact-key cache of path sets:
#   restore(key) -> the path set last saved under key (or a miss)
#   save(key, paths) -> persist the current content of those paths
#
# Entry layout on disk:
#   root/<safe key>.tar.gz
#     manifest.json        {"key", "family", "paths": [{"path", "kind"}], "saved_at_unix"}
#     <n>                  file entry n (when the saved path is a file)
#     <n>/<sub path>       files under directory entry n
#
# Writers build a uniquely named temp file and rename it into place, so
# concurrent saves of one key are last-writer-wins and readers never see a
# half-written entry.
#
# `family` groups the keys one job produces over time (same job, os and
# prefix, different content hash); prune only ever looks inside one family.
# ---------------------------------------------------------------------

MANIFEST_NAME = "manifest.json"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    paths: List[str] = field(default_factory=list)


def _safe_name(key: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9._-]", "_", key)[:100]
    return f"{stem}-{sha256_bytes(key.encode('utf-8'))[:12]}"


def _iter_files_under(root: Path):
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


class CacheStore:
    """File-based, exact-key cache store shared by every job in a run (and across runs)."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def entry_path(self, key: str) -> Path:
        return self.root / f"{_safe_name(key)}.tar.gz"

    # ---- path helpers ----

    @staticmethod
    def _expand(pattern: str, workspace: Path) -> List[Tuple[str, Path]]:
        """Expand one declared pattern into (logical path, concrete path) pairs."""
        home = Path.home()
        if pattern.startswith("~"):
            base, rest, label = home, pattern[1:].lstrip("/\\"), "~/"
        elif os.path.isabs(pattern):
            anchor = Path(Path(pattern).anchor)
            base, rest, label = anchor, str(Path(pattern).relative_to(anchor)), str(anchor)
        else:
            base, rest, label = workspace, pattern, ""

        rest = rest.rstrip("/\\")
        if not rest or rest == ".":
            return [(pattern, base)] if base.exists() else []
        if any(ch in rest for ch in "*?["):
            matches = sorted(base.glob(rest))
        else:
            candidate = base / rest
            matches = [candidate] if candidate.exists() else []

        out = []
        for m in matches:
            rel = m.relative_to(base).as_posix()
            if label == "~/":
                logical = f"~/{rel}"
            elif label:
                logical = str(Path(label) / rel)
            else:
                logical = rel
            out.append((logical, m))
        return out

    @staticmethod
    def _locate(logical: str, workspace: Path) -> Path:
        if logical == "~":
            return Path.home()
        if logical.startswith("~/"):
            return Path.home() / logical[2:]
        p = Path(logical)
        return p if p.is_absolute() else workspace / p

    # ---- public API ----

    def restore(self, key: str, *, workspace: str | Path = ".") -> CacheHit:
        """
        Restore the path set saved under `key` into place.

        Never raises: a missing or unreadable entry is reported as a miss.
        """
        if not key:
            return CacheHit(hit=False, key=key, reason="no cache key")

        art = self.entry_path(key)
        if not art.exists():
            return CacheHit(hit=False, key=key, reason="cache miss")

        ws = Path(workspace).resolve()
        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                manifest_member = tar.extractfile(MANIFEST_NAME)
                if manifest_member is None:
                    return CacheHit(hit=False, key=key, reason="cache entry has no manifest")
                manifest = json.loads(manifest_member.read().decode("utf-8"))
                if manifest.get("key") != key:
                    return CacheHit(hit=False, key=key, reason="cache entry key mismatch")

                entries = manifest.get("paths", [])
                for member in tar.getmembers():
                    if member.name == MANIFEST_NAME or not member.isfile():
                        continue
                    parts = PurePosixPath(member.name).parts
                    if ".." in parts:
                        continue
                    idx = int(parts[0])
                    target = self._locate(entries[idx]["path"], ws)
                    if len(parts) > 1:
                        target = target.joinpath(*parts[1:])
                    target.parent.mkdir(parents=True, exist_ok=True)
                    src = tar.extractfile(member)
                    if src is None:
                        continue
                    target.write_bytes(src.read())
                    if member.mode & 0o111:
                        target.chmod(target.stat().st_mode | 0o111)
        except (OSError, tarfile.TarError, ValueError, KeyError, IndexError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}")

        return CacheHit(
            hit=True,
            key=key,
            reason="cache hit: restored",
            paths=[e["path"] for e in entries],
        )

    def save(
        self,
        key: str,
        paths: Sequence[str],
        *,
        workspace: str | Path = ".",
        family: Optional[str] = None,
    ) -> List[str]:
        """
        Persist the current content of `paths` under `key`.

        Returns the concrete (logical) paths that were saved. Patterns that
        match nothing are skipped.
        """
        if not key:
            raise ValueError("cache key must be non-empty")

        ws = Path(workspace).resolve()
        resolved: List[Tuple[str, Path]] = []
        seen = set()
        for pattern in paths:
            for logical, concrete in self._expand(pattern, ws):
                if logical not in seen:
                    seen.add(logical)
                    resolved.append((logical, concrete))

        manifest: Dict = {
            "key": key,
            "family": family,
            "paths": [
                {"path": logical, "kind": "dir" if concrete.is_dir() else "file"}
                for logical, concrete in resolved
            ],
            "saved_at_unix": int(time.time()),
        }

        art = self.entry_path(key)
        tmp = art.with_name(f"{art.name}.{uuid.uuid4().hex}.tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
                info = tarfile.TarInfo(name=MANIFEST_NAME)
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

                for idx, (_logical, concrete) in enumerate(resolved):
                    if concrete.is_dir():
                        for f in _iter_files_under(concrete):
                            arc = f"{idx}/{f.relative_to(concrete).as_posix()}"
                            tar.add(str(f), arcname=arc, recursive=False)
                    else:
                        tar.add(str(concrete), arcname=str(idx), recursive=False)
            os.replace(tmp, art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        return [logical for logical, _ in resolved]

    def _family_of(self, entry: Path) -> Optional[str]:
        try:
            with tarfile.open(str(entry), mode="r:gz") as tar:
                member = tar.extractfile(MANIFEST_NAME)
                if member is None:
                    return None
                return json.loads(member.read().decode("utf-8")).get("family")
        except (OSError, tarfile.TarError, ValueError, KeyError):
            return None

    def prune(self, family: str, keep: int = 3) -> List[str]:
        """
        Keep only the newest `keep` entries saved under `family`.
        Uses file mtime as "newest". Entries saved without a family (explicit
        keys) are never pruned. Returns the removed file names.
        """
        entries = []
        for p in self.root.glob("*.tar.gz"):
            if self._family_of(p) != family:
                continue
            try:
                entries.append((p.stat().st_mtime, p))
            except FileNotFoundError:
                continue  # pruned concurrently
        entries.sort(key=lambda e: e[0], reverse=True)
        removed = []
        for _mtime, p in entries[max(keep, 0):]:
            p.unlink(missing_ok=True)
            removed.append(p.name)
        return removed
