# cli.py
from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import click

from matrixci.config import Settings
from matrixci.errors import ConfigError
from matrixci.git_facts.git import current_ref, head_sha, remote_url, repository_slug
from matrixci.loader import load_workflow
from matrixci.model import RunContext, Trigger
from matrixci.pipeline import Pipeline, registry_from_settings
from matrixci.triggers import local_trigger
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "matrixci_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for pattern in ("*_workflow.py", "*_workflow.json"):
        for path in current_dir.glob(pattern):
            if path != default_workflow:
                workflow_files.append(path)

    return sorted(workflow_files)


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
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py", "  *_workflow.json"],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def _git_or(fn, default: str) -> str:
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return default


def _parse_vars(pairs: Tuple[str, ...]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint="--var")
        k, v = pair.split("=", 1)
        out[k] = v
    return out


def _read_secrets(names: Tuple[str, ...]) -> Dict[str, str]:
    # values never appear on the command line; missing ones stay undefined
    return {name: os.environ[name] for name in names if name in os.environ}


def build_run_context(event, ref, sha, repository, actor, secrets, variables) -> RunContext:
    if repository is None:
        repository = _git_or(lambda: repository_slug(remote_url("origin")), Path(".").resolve().name)
    return RunContext(
        event_name=event,
        ref=ref or _git_or(current_ref, "refs/heads/main"),
        sha=sha or _git_or(head_sha, ""),
        repository=repository,
        actor=actor or os.environ.get("USER", ""),
        secrets=_read_secrets(secrets),
        vars=_parse_vars(variables),
    )


def _load(ctx, workflow: Optional[str]):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except ConfigError as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print failures and the results table")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: matrix-aware CI pipeline runner."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--workers", default=None, type=int, help="Number of parallel execution slots")
@click.option("--artifact-dir", default=None, help="Artifact store directory")
@click.option("--halt-on-failure/--no-halt-on-failure", default=False, help="Stop dispatching new instances after the first failure")
@click.option("--strict-order", is_flag=True, default=False, help="Reject needs on jobs declared later")
@click.option("--event", default="push", show_default=True, help="Triggering event name")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--repository", default=None, help="Repository identity, owner/name (defaults to origin)")
@click.option("--actor", default=None, help="Who triggered the run")
@click.option("--changed", multiple=True, help="Changed path (repeatable); enables path filtering")
@click.option("--git-diff/--no-git-diff", default=False, help="Take changed paths from git")
@click.option("--compare-ref", default=None, help="Git ref to diff against for --git-diff")
@click.option("--secret", "secrets", multiple=True, help="Expose environment variable NAME as secrets.NAME")
@click.option("--var", "variables", multiple=True, help="NAME=VALUE exposed as vars.NAME")
@click.pass_context
def run(ctx, workflow, workers, artifact_dir, halt_on_failure, strict_order, event, ref, sha, repository, actor,
        changed, git_diff, compare_ref, secrets, variables):
    """Run a matrixci workflow."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].override(
        workers=workers, artifact_dir=artifact_dir, compare_ref=compare_ref
    )
    workflow_path, wf = _load(ctx, workflow)

    pipeline = None
    try:
        run_ctx = build_run_context(event, ref, sha, repository, actor, secrets, variables)

        if changed:
            trigger = Trigger(event_name=event, changed_paths=tuple(changed))
        elif git_diff:
            trigger = local_trigger(event, compare_ref=settings.compare_ref)
        else:
            trigger = Trigger(event_name=event)

        console.print_run_started(
            repository=run_ctx.repository,
            workflow=workflow_path.name,
            job_count=len(wf.jobs),
            event=event,
        )

        pipeline = Pipeline(
            wf,
            run_ctx,
            registry=registry_from_settings(settings),
            max_workers=settings.workers,
            halt_on_failure=halt_on_failure,
            strict_order=strict_order,
        )
        result = pipeline.run(trigger)

        if not result.suppressed:
            console.print_results(
                result.statuses(),
                result.status.value,
                best_effort=[i.id for i in result.instances if i.best_effort],
            )

        if result.cancelled:
            sys.exit(130)
        if not result.ok:
            sys.exit(1)

    except ConfigError as e:
        console.print_error("Invalid workflow", str(e), suggestion="Fix the workflow definition and re-run.")
        sys.exit(1)
    except KeyboardInterrupt:
        if pipeline is not None:
            pipeline.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--strict-order", is_flag=True, default=False, help="Reject needs on jobs declared later")
@click.pass_context
def plan(ctx, workflow, strict_order):
    """Print stages and expanded instances without running anything."""
    console = get_console()
    _path, wf = _load(ctx, workflow)
    try:
        levels, instances = Pipeline(
            wf, registry=registry_from_settings(ctx.obj["settings"]), strict_order=strict_order
        ).plan()
    except ConfigError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    console.print_plan(levels, instances)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--strict-order", is_flag=True, default=False, help="Reject needs on jobs declared later")
@click.pass_context
def validate(ctx, workflow, strict_order):
    """Check the job graph, matrices and action references."""
    console = get_console()
    path, wf = _load(ctx, workflow)
    try:
        _graph, instances, _bound = Pipeline(
            wf, registry=registry_from_settings(ctx.obj["settings"]), strict_order=strict_order
        ).prepare()
    except ConfigError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    count = sum(len(v) for v in instances.values())
    console.print_info(f"{path.name}: OK ({len(wf.jobs)} jobs, {count} instances)")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
