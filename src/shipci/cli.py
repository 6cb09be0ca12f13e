# cli.py
from __future__ import annotations

import sys
import uuid
from pathlib import Path

import click

from shipci import config
from shipci.artifacts import ArtifactStore, FileArtifactBackend
from shipci.cache import CacheStore
from shipci.dag import validate_workflow
from shipci.errors import GraphError
from shipci.git_facts.git import trigger_from_git
from shipci.model import TriggerContext
from shipci.release import GitHubReleaseHost, LocalReleaseHost
from shipci.runner import (
    EXIT_GRAPH_ERROR,
    EXIT_INTERRUPTED,
    EXIT_JOB_FAILED,
    load_workflow,
    run_workflow,
)
from shipci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "shipci_workflow.py"
DEFAULT_JSON_WORKFLOW = "shipci.json"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = {p for p in current_dir.glob("*_workflow.py")}
    json_default = current_dir / DEFAULT_JSON_WORKFLOW
    if json_default.exists():
        found.add(json_default)
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in (".py", ".json"):
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  shipci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_GRAPH_ERROR)
        return workflow_path

    default = Path(DEFAULT_WORKFLOW)
    if default.exists():
        return default

    workflow_files = find_workflow_files()
    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py", f"  {DEFAULT_JSON_WORKFLOW}"],
            suggestion=f"Create {DEFAULT_WORKFLOW} or pass --workflow.",
        )
        sys.exit(EXIT_GRAPH_ERROR)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  shipci run --workflow release_workflow.py",
        )
        sys.exit(EXIT_GRAPH_ERROR)

    return workflow_files[0]


def _load_or_exit(workflow_path: Path):
    console = get_console()
    try:
        return load_workflow(workflow_path)
    except Exception as e:
        console.print_error("Invalid workflow", f"Could not load workflow from {workflow_path}", details=[str(e)])
        sys.exit(EXIT_GRAPH_ERROR)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, step output and detailed messages)",
)
@click.pass_context
def cli(ctx, debug):
    """shipci: build job graphs, cache toolchains, publish tagged releases."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
def validate(workflow):
    """Validate a workflow without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf = _load_or_exit(workflow_path)
    try:
        validate_workflow(wf)
    except GraphError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_GRAPH_ERROR)
    console.print_info(f"{workflow_path.name}: OK ({len(wf.jobs)} job(s))")


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
def plan(workflow):
    """Print the execution batches of a workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf = _load_or_exit(workflow_path)
    try:
        levels = validate_workflow(wf)
    except GraphError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_GRAPH_ERROR)
    console.print_plan(levels)
    if wf.release is not None:
        console.print_info(f"\nRelease requires: {', '.join(wf.release.requires)}")
        console.print_info(f"Release trigger: {wf.release.trigger.text}")


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--ref", default=None, help="Originating ref, e.g. refs/tags/v1.0.0 (defaults to git)")
@click.option("--sha", default=None, help="Commit SHA (defaults to git HEAD)")
@click.option("--event", default="push", show_default=True, help="Trigger event name")
@click.option("--workspace", default=".", show_default=True, help="Checkout copied into each job's own workspace")
@click.option("--workers", default=None, type=int, help="Max parallel jobs (default: all eligible jobs)")
@click.option("--cache-dir", default=config.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--cache/--no-cache", "use_cache", default=True, show_default=True, help="Restore/save job caches")
@click.option("--artifact-dir", default=config.ARTIFACT_DIR, show_default=True, help="Run-scoped artifact directory")
@click.option("--release-dir", default=config.RELEASE_DIR, show_default=True, help="Local release host directory")
@click.option(
    "--github-repo",
    default=None,
    envvar="SHIPCI_GITHUB_REPO",
    help="Publish to GitHub releases of OWNER/REPO instead of --release-dir",
)
@click.option("--job-timeout", default=config.JOB_TIMEOUT, type=float, help="Default per-job budget in seconds")
@click.option("--run-timeout", default=config.RUN_TIMEOUT, type=float, help="Whole-run budget in seconds")
@click.option("--project", default=None, help="Project name used in release titles")
def run(
    workflow,
    ref,
    sha,
    event,
    workspace,
    workers,
    cache_dir,
    use_cache,
    artifact_dir,
    release_dir,
    github_repo,
    job_timeout,
    run_timeout,
    project,
):
    """Run a shipci workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf = _load_or_exit(workflow_path)
    if project:
        wf.project = project

    git_trigger = trigger_from_git(workspace, event=event) if ref is None or sha is None else None
    trigger = TriggerContext(
        ref=ref if ref is not None else git_trigger.ref,
        sha=sha if sha is not None else git_trigger.sha,
        event=event,
    )

    secrets = config.secrets_from_env()
    for value in secrets.values():
        console.add_secret(value)

    if github_repo:
        token = secrets.get("GITHUB_TOKEN")
        if not token:
            console.print_error(
                "Missing token",
                "--github-repo needs a GitHub token.",
                suggestion=f"Export it as {config.SECRET_PREFIX}GITHUB_TOKEN",
            )
            sys.exit(EXIT_GRAPH_ERROR)
        host = GitHubReleaseHost(github_repo, token)
    else:
        host = LocalReleaseHost(release_dir)

    run_id = uuid.uuid4().hex[:12]
    artifacts = ArtifactStore(FileArtifactBackend(Path(artifact_dir) / run_id))

    console.print_run_started(
        project=wf.project,
        workflow=workflow_path.name,
        job_count=len(wf.jobs),
        ref=trigger.ref,
    )

    try:
        report = run_workflow(
            wf,
            trigger=trigger,
            workspace=workspace,
            cache=CacheStore(cache_dir) if use_cache else None,
            artifacts=artifacts,
            release_host=host,
            secrets=secrets,
            max_workers=workers,
            job_timeout=job_timeout,
            run_timeout=run_timeout,
            console=console,
        )
    except GraphError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_GRAPH_ERROR)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_JOB_FAILED)

    console.print_results(report)
    sys.exit(report.exit_code)


if __name__ == "__main__":
    cli()
