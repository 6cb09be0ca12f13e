# fingerprint.py
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

# ---------------------------------------------------------------------
# Content fingerprints used to derive cache keys and asset digests.
# The cache store never hashes anything itself; the executor builds a key
# here and hands the finished string to CacheStore.
# ---------------------------------------------------------------------

IGNORED_GLOBS = [
    ".git/**",
    ".shipci/**",
    "**/__pycache__/**",
]


def sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _ignored(rel: str) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in IGNORED_GLOBS)


def resolve_globs(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand patterns relative to root into concrete files.

    A directory match contributes every file under it. Results are de-duplicated
    and sorted by relative path so the order never depends on the filesystem.
    """
    found: dict[str, Path] = {}
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        for m in root.glob(pat):
            candidates = sorted(m.rglob("*")) if m.is_dir() else [m]
            for f in candidates:
                if not f.is_file():
                    continue
                rel = _relpath(f, root)
                if not _ignored(rel):
                    found.setdefault(rel, f)
    return [found[k] for k in sorted(found)]


def hash_files(root: str | Path, patterns: Sequence[str]) -> str:
    """
    Fingerprint the content of every file matching `patterns`.

    Returns "" when nothing matches, so a key built from it is still stable.
    """
    root_p = Path(root).resolve()
    files = resolve_globs(root_p, patterns)
    if not files:
        return ""
    entries: List[Tuple[str, str]] = [(_relpath(f, root_p), sha256_file(f)) for f in files]
    return sha256_bytes(_json_dumps_stable(entries).encode("utf-8"))


def cache_key(discriminator: str, prefix: str, root: str | Path, key_files: Sequence[str]) -> str:
    """`{os}-{prefix}-{hash}`: same shape as `${{ runner.os }}-cargo-${{ hashFiles(...) }}`."""
    return f"{discriminator}-{prefix}-{hash_files(root, key_files)}"
