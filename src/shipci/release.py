# release.py
from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol
from urllib.parse import quote, urlencode

from .artifacts import ArtifactStore
from .conditions import ConditionContext
from .errors import ArtifactError, CorruptionError, ReleaseError, ShipCIError
from .fingerprint import sha256_bytes
from .model import JobState, ReleaseSpec, TriggerContext
from .ui.console import Console, get_console


class GateState(str, Enum):
    PENDING = "pending"
    ELIGIBLE = "eligible"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    ABORTED = "aborted"


_ALLOWED = {
    GateState.PENDING: {GateState.ELIGIBLE, GateState.ABORTED},
    GateState.ELIGIBLE: {GateState.PUBLISHING},
    GateState.PUBLISHING: {GateState.PUBLISHING, GateState.PUBLISHED},
    GateState.PUBLISHED: set(),
    GateState.ABORTED: set(),
}


@dataclass
class ReleaseRecord:
    tag: str
    title: str
    draft: bool
    prerelease: bool
    url: str
    id: str = ""


@dataclass(frozen=True)
class RemoteAsset:
    name: str
    digest: str
    size: int


@dataclass
class AssetStatus:
    name: str
    digest: str
    state: str = "pending"  # pending | uploaded | unchanged | failed
    error: str = ""


@dataclass
class ReleaseResult:
    state: GateState
    reason: str = ""
    release: Optional[ReleaseRecord] = None
    assets: List[AssetStatus] = field(default_factory=list)
    error: Optional[BaseException] = None
    triggered: bool = False

    @property
    def url(self) -> str:
        return self.release.url if self.release else ""


# ---------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------

class ReleaseGate:
    """Pending -> Eligible -> Publishing -> Published, or Pending -> Aborted."""

    def __init__(self, spec: ReleaseSpec):
        self.spec = spec
        self.state = GateState.PENDING
        self.reason = ""
        self.triggered = False

    def transition(self, new: GateState, reason: str = "") -> None:
        if new not in _ALLOWED[self.state]:
            raise ShipCIError(f"Release gate cannot go from {self.state.value} to {new.value}")
        self.state = new
        self.reason = reason

    def evaluate(self, trigger: TriggerContext, job_states: Mapping[str, JobState]) -> GateState:
        """Eligible iff the trigger holds AND every required job Succeeded."""
        if self.state != GateState.PENDING:
            return self.state
        if not self.spec.trigger(ConditionContext(trigger=trigger)):
            self.transition(GateState.ABORTED, f"trigger false: {self.spec.trigger.text}")
            return self.state
        self.triggered = True
        unmet = [
            f"{name}={job_states.get(name, JobState.PENDING).value}"
            for name in self.spec.requires
            if job_states.get(name) != JobState.SUCCEEDED
        ]
        if unmet:
            self.transition(GateState.ABORTED, f"prerequisites not succeeded: {', '.join(unmet)}")
        else:
            self.transition(GateState.ELIGIBLE)
        return self.state


# ---------------------------------------------------------------------
# Hosts (where releases live)
# ---------------------------------------------------------------------

class ReleaseHost(Protocol):
    def find_release(self, tag: str) -> Optional[ReleaseRecord]: ...
    def create_release(self, tag: str, title: str, *, draft: bool, prerelease: bool) -> ReleaseRecord: ...
    def list_assets(self, release: ReleaseRecord) -> Dict[str, RemoteAsset]: ...
    def upload_asset(
        self, release: ReleaseRecord, name: str, data: bytes, content_type: str, digest: str
    ) -> RemoteAsset: ...


class LocalReleaseHost:
    """
    Directory-backed release host:
      root/<tag>/release.json
      root/<tag>/assets.json      {name: {"sha256", "size", "content_type"}}
      root/<tag>/assets/<name>
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()

    def _dir(self, tag: str) -> Path:
        return self.root / tag

    def find_release(self, tag: str) -> Optional[ReleaseRecord]:
        meta = self._dir(tag) / "release.json"
        if not meta.exists():
            return None
        data = json.loads(meta.read_text(encoding="utf-8"))
        return ReleaseRecord(
            tag=data["tag"],
            title=data["title"],
            draft=data["draft"],
            prerelease=data["prerelease"],
            url=self._dir(tag).as_uri(),
            id=tag,
        )

    def create_release(self, tag: str, title: str, *, draft: bool, prerelease: bool) -> ReleaseRecord:
        d = self._dir(tag)
        if (d / "release.json").exists():
            raise ReleaseError(f"Release '{tag}' already exists")
        (d / "assets").mkdir(parents=True, exist_ok=True)
        meta = {
            "tag": tag,
            "title": title,
            "draft": draft,
            "prerelease": prerelease,
            "created_at_unix": int(time.time()),
        }
        (d / "release.json").write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")
        return ReleaseRecord(tag=tag, title=title, draft=draft, prerelease=prerelease, url=d.as_uri(), id=tag)

    def _index(self, tag: str) -> Dict[str, Dict]:
        path = self._dir(tag) / "assets.json"
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def list_assets(self, release: ReleaseRecord) -> Dict[str, RemoteAsset]:
        return {
            name: RemoteAsset(name=name, digest=e["sha256"], size=e["size"])
            for name, e in self._index(release.tag).items()
        }

    def upload_asset(
        self, release: ReleaseRecord, name: str, data: bytes, content_type: str, digest: str
    ) -> RemoteAsset:
        d = self._dir(release.tag)
        (d / "assets").mkdir(parents=True, exist_ok=True)
        (d / "assets" / name).write_bytes(data)
        index = self._index(release.tag)
        index[name] = {"sha256": digest, "size": len(data), "content_type": content_type}
        (d / "assets.json").write_text(json.dumps(index, indent=2, sort_keys=True), encoding="utf-8")
        return RemoteAsset(name=name, digest=digest, size=len(data))


class GitHubReleaseHost:
    """
    GitHub releases over the REST API.

    The sha256 of each uploaded asset is stored in its label ("sha256:<hex>")
    so a retried upload can tell an identical asset from a corrupted one.
    """

    def __init__(
        self,
        repo: str,
        token: str,
        *,
        api_url: str = "https://api.github.com",
        uploads_url: str = "https://uploads.github.com",
    ):
        self.repo = repo
        self._token = token
        self.api_url = api_url.rstrip("/")
        self.uploads_url = uploads_url.rstrip("/")

    def _request(
        self,
        method: str,
        url: str,
        data: Optional[bytes] = None,
        content_type: str = "application/json",
    ):
        """
        Make an HTTP request to the API and return parsed JSON (or None on 404).

        Raises:
            ReleaseError: If the request fails
        """
        req_headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "Content-Type": content_type,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        req = urllib.request.Request(url, data=data, headers=req_headers, method=method)
        try:
            with urllib.request.urlopen(req) as response:
                body = response.read().decode("utf-8")
                return json.loads(body) if body else {}
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise ReleaseError(f"GitHub request failed: {e.code} {e.reason}. {error_body}")
        except urllib.error.URLError as e:
            raise ReleaseError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise ReleaseError(f"Invalid JSON response: {e}")

    def _record(self, data: dict) -> ReleaseRecord:
        return ReleaseRecord(
            tag=data["tag_name"],
            title=data.get("name") or data["tag_name"],
            draft=bool(data.get("draft")),
            prerelease=bool(data.get("prerelease")),
            url=data.get("html_url", ""),
            id=str(data["id"]),
        )

    def find_release(self, tag: str) -> Optional[ReleaseRecord]:
        # drafts are not reachable through /releases/tags/<tag>
        releases = self._request("GET", f"{self.api_url}/repos/{self.repo}/releases?per_page=100") or []
        for data in releases:
            if data.get("tag_name") == tag:
                return self._record(data)
        return None

    def create_release(self, tag: str, title: str, *, draft: bool, prerelease: bool) -> ReleaseRecord:
        payload = json.dumps(
            {"tag_name": tag, "name": title, "draft": draft, "prerelease": prerelease}
        ).encode("utf-8")
        data = self._request("POST", f"{self.api_url}/repos/{self.repo}/releases", payload)
        if not data:
            raise ReleaseError(f"Repository {self.repo} not found")
        return self._record(data)

    def list_assets(self, release: ReleaseRecord) -> Dict[str, RemoteAsset]:
        items = self._request(
            "GET", f"{self.api_url}/repos/{self.repo}/releases/{release.id}/assets?per_page=100"
        ) or []
        out: Dict[str, RemoteAsset] = {}
        for a in items:
            digest = a.get("digest") or a.get("label") or ""
            out[a["name"]] = RemoteAsset(
                name=a["name"],
                digest=digest.split(":", 1)[-1],
                size=int(a.get("size", 0)),
            )
        return out

    def upload_asset(
        self, release: ReleaseRecord, name: str, data: bytes, content_type: str, digest: str
    ) -> RemoteAsset:
        query = urlencode({"name": name, "label": f"sha256:{digest}"})
        url = f"{self.uploads_url}/repos/{self.repo}/releases/{quote(release.id)}/assets?{query}"
        resp = self._request("POST", url, data, content_type=content_type)
        if resp is None:
            raise ReleaseError(f"Release {release.id} not found while uploading {name}")
        return RemoteAsset(name=name, digest=digest, size=len(data))


# ---------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------

def release_tag(trigger: TriggerContext) -> str:
    return trigger.tag or trigger.ref.rsplit("/", 1)[-1]


class ReleasePublisher:
    """
    Eligible -> Publishing -> Published.

    Assets upload one at a time. Re-running against a release that already has
    some assets is safe: identical digests are skipped, a different digest is a
    CorruptionError and leaves the gate in Publishing.
    """

    def __init__(self, host: ReleaseHost, artifacts: ArtifactStore, console: Optional[Console] = None):
        self.host = host
        self.artifacts = artifacts
        self.console = console or get_console()

    def publish(self, gate: ReleaseGate, trigger: TriggerContext, *, project: str) -> ReleaseResult:
        if gate.state not in (GateState.ELIGIBLE, GateState.PUBLISHING):
            return ReleaseResult(state=gate.state, reason=gate.reason, triggered=gate.triggered)

        spec = gate.spec
        gate.transition(GateState.PUBLISHING)
        result = ReleaseResult(state=gate.state, triggered=True)
        console = self.console

        # ---- collect ----
        payloads = []
        try:
            for a in spec.assets:
                data = self.artifacts.fetch(a.source).file(a.path).data
                digest = sha256_bytes(data)
                payloads.append((a, data, digest))
                result.assets.append(AssetStatus(name=a.name, digest=digest))
        except (ArtifactError, KeyError, ValueError) as e:
            result.error = e
            result.reason = f"could not collect assets: {e}"
            console.print_release_state(gate.state.value, result.reason)
            return result

        console.print_checksums(f"{digest}  {a.name}" for a, _data, digest in payloads)

        # ---- create (once per tag) ----
        tag = release_tag(trigger)
        version = tag
        title = spec.title.format(project=project, version=version, tag=tag)
        try:
            release = self.host.find_release(tag)
            if release is None:
                release = self.host.create_release(tag, title, draft=spec.draft, prerelease=spec.prerelease)
            result.release = release
            existing = self.host.list_assets(release)
        except (ReleaseError, OSError) as e:
            result.error = e
            result.reason = f"could not create release: {e}"
            console.print_release_state(gate.state.value, result.reason)
            return result

        # ---- upload ----
        for (a, data, digest), status in zip(payloads, result.assets):
            remote = existing.get(a.name)
            try:
                if remote is not None:
                    if remote.digest != digest:
                        raise CorruptionError(
                            f"Asset '{a.name}' already attached with sha256 {remote.digest}, expected {digest}"
                        )
                    status.state = "unchanged"
                else:
                    self.host.upload_asset(release, a.name, data, a.content_type, digest)
                    status.state = "uploaded"
            except (CorruptionError, ReleaseError, OSError) as e:
                status.state = "failed"
                status.error = str(e)
                result.error = e
                result.reason = f"asset '{a.name}' failed"
                console.print_asset(status)
                console.print_release_state(gate.state.value, result.reason)
                return result
            console.print_asset(status)

        gate.transition(GateState.PUBLISHED)
        result.state = gate.state
        console.print_release_state(gate.state.value, release.url)
        return result
