from __future__ import annotations

import os
from typing import Dict, Mapping, Optional


def _float_env(name: str) -> Optional[float]:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else None


SHIPCI_HOME = os.environ.get("SHIPCI_HOME", ".shipci")
CACHE_DIR = os.environ.get("SHIPCI_CACHE_DIR", os.path.join(SHIPCI_HOME, "cache"))
ARTIFACT_DIR = os.environ.get("SHIPCI_ARTIFACT_DIR", os.path.join(SHIPCI_HOME, "artifacts"))
RELEASE_DIR = os.environ.get("SHIPCI_RELEASE_DIR", os.path.join(SHIPCI_HOME, "releases"))
JOB_TIMEOUT = _float_env("SHIPCI_JOB_TIMEOUT")
RUN_TIMEOUT = _float_env("SHIPCI_RUN_TIMEOUT")
SECRET_PREFIX = os.environ.get("SHIPCI_SECRET_PREFIX", "SHIPCI_SECRET_")


def secrets_from_env(environ: Optional[Mapping[str, str]] = None, prefix: str = SECRET_PREFIX) -> Dict[str, str]:
    """SHIPCI_SECRET_GITHUB_TOKEN=... becomes the secret GITHUB_TOKEN."""
    environ = os.environ if environ is None else environ
    return {k[len(prefix):]: v for k, v in environ.items() if k.startswith(prefix) and len(k) > len(prefix)}

# host variables a step never inherits; a job gets them back by declaring them as secrets
SCRUBBED_ENV = ("GITHUB_TOKEN",)


def step_environ(environ: Optional[Mapping[str, str]] = None, prefix: str = SECRET_PREFIX) -> Dict[str, str]:
    """The host environment with every secret removed."""
    environ = os.environ if environ is None else environ
    return {k: v for k, v in environ.items() if not k.startswith(prefix) and k not in SCRUBBED_ENV}
