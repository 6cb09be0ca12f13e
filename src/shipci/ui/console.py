"""Console output formatting utilities for shipci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from shipci.cache import CacheHit
    from shipci.release import AssetStatus
    from shipci.resolver import ResourceOutcome
    from shipci.runner import RunReport

MASK = "***"


class Console:
    """Centralized console output formatting.

    Jobs run in parallel threads, so every write goes through one lock and
    through secret masking.
    """

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to stdout at write time)
        """
        self.debug = debug
        self._stream = stream
        self._lock = threading.Lock()
        self._secrets: set[str] = set()

    # ---- masking ----

    def add_secret(self, value: str) -> None:
        """Register a value that must never appear in output."""
        if value and len(value) >= 3:
            with self._lock:
                self._secrets.add(value)

    def mask(self, text: str) -> str:
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, MASK)
        return text

    def _emit(self, text: str, *, err: bool = False) -> None:
        stream = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            print(self.mask(text), file=stream)

    # ---- run ----

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}\n" + "-" * len(title))

    def print_run_started(self, project: str, workflow: str, job_count: int, ref: str) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED\n"
            f"Project: {project}\n"
            f"Workflow: {workflow}\n"
            f"Ref: {ref or '(none)'}\n"
            f"Jobs: {job_count}\n"
        )

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the topological batches."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels, start=1):
            self._emit(f"  Batch {idx}: {', '.join(level)}")

    # ---- jobs ----

    def print_job_start(self, name: str, target: str) -> None:
        self._emit(f"\nJOB STARTED: {name} ({target})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._emit(f"JOB SKIPPED: {name} ({reason})")

    def print_job_finished(self, name: str, state: str, duration: Optional[float] = None) -> None:
        line = f"JOB {state.upper()}: {name}"
        if duration is not None:
            line += f" ({duration:.1f}s)"
        self._emit(line)

    def print_cache(self, job: str, hit: "CacheHit") -> None:
        if hit.hit:
            self._emit(f"[{job}] CACHE: hit ({len(hit.paths)} path(s))")
        else:
            self._emit(f"[{job}] CACHE: miss ({hit.reason})")

    def print_cache_saved(self, job: str, key: str) -> None:
        short_key = key[:40] + "..." if len(key) > 40 else key
        self._emit(f"[{job}] CACHE: saved ({short_key})")

    def print_resource(self, job: str, outcome: "ResourceOutcome") -> None:
        if outcome.available:
            self._emit(f"[{job}] RESOURCE: {outcome.name} resolved")
        else:
            self._emit(f"[{job}] RESOURCE: {outcome.name} degraded ({outcome.reason})")
            if outcome.degraded is not None:
                self.print_debug(f"[{job}] {outcome.degraded.details.get('error', '')}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] STEP: {name}")

    def print_step_result(self, job: str, name: str, outcome: str, reason: str = "") -> None:
        line = f"[{job}] STEP {outcome.upper()}: {name}"
        if reason:
            first = reason.split("\n")[0]
            line += f" ({first})"
        self._emit(line)

    def print_output(self, job: str, output: str) -> None:
        """Print captured step output (debug mode only)."""
        if self.debug and output:
            for line in output.rstrip().splitlines():
                self._emit(f"[{job}] | {line}")

    # ---- release ----

    def print_release_state(self, state: str, reason: str = "") -> None:
        line = f"RELEASE: {state}"
        if reason:
            line += f" ({reason})"
        self._emit(line)

    def print_asset(self, status: "AssetStatus") -> None:
        self._emit(f"  asset {status.name}: {status.state} sha256={status.digest}")

    def print_checksums(self, lines: Iterable[str]) -> None:
        for line in lines:
            self._emit(f"  {line}")

    # ---- summary ----

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        self._emit("\n" + "=" * 40 + "\nRESULTS\n" + "=" * 40)
        for name, result in report.jobs.items():
            self._emit(f"  {name}: {result.state.value.upper()}")
            if result.failure is not None:
                self._emit(f"    first failure: step '{result.failure_step}': {result.failure}")
            elif result.skip_reason:
                self._emit(f"    {result.skip_reason}")
        if report.release is not None:
            rel = report.release
            self._emit(f"  release: {rel.state.value.upper()}")
            for status in rel.assets:
                self._emit(f"    {status.name}: {status.state}")
            if rel.url:
                self._emit(f"    url: {rel.url}")
            if rel.error:
                self._emit(f"    error: {rel.error}")
        self._emit(f"  exit code: {report.exit_code}")

    # ---- generic ----

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit("\n".join(lines), err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._emit("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
