# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from matrixci import settings
from matrixci.dag import ConfigurationError, validate
from matrixci.git_facts.git import current_ref
from matrixci.runner import CancelToken, load_workflow, prepare, run_pipeline
from matrixci.trigger import EventPayload, describe, evaluate, match_reason
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

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, MATRIXCI_WORKFLOW, or the current directory.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    workflow_arg = workflow_arg or (settings.WORKFLOW if Path(settings.WORKFLOW).exists() else None)
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
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
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
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


def build_event(
    event_file: str | None,
    kind: str,
    ref: str | None,
    is_tag: bool | None,
    base_ref: str | None,
) -> EventPayload:
    """
    Event descriptor from --event-file, or from flags with git filling the gaps.

    Raises:
        SystemExit: If the event is invalid or the ref cannot be determined
    """
    console = get_console()
    try:
        if event_file:
            return EventPayload.model_validate_json(Path(event_file).read_text(encoding="utf-8"))

        if ref is None:
            try:
                ref, git_is_tag = current_ref()
            except (subprocess.CalledProcessError, FileNotFoundError):
                console.print_error(
                    "Could not determine git ref",
                    "No --ref specified and the current directory is not a usable git checkout.",
                    suggestion="Specify the ref explicitly:\n  matrixci run --ref main\n  matrixci run --ref v1.2.3 --tag",
                )
                sys.exit(1)
            if is_tag is None:
                is_tag = git_is_tag

        return EventPayload(kind=kind, ref=ref, is_tag=bool(is_tag), base_ref=base_ref)
    except (ValidationError, OSError) as e:
        console.print_error("Invalid event", "Could not build the triggering event.", details=[str(e)])
        sys.exit(1)


def event_options(fn):
    fn = click.option("--event-file", default=None, type=click.Path(dir_okay=False), help="JSON event descriptor {kind, ref, is_tag, base_ref}")(fn)
    fn = click.option("--base-ref", default=None, help="Target branch of a pull request")(fn)
    fn = click.option("--tag/--branch", "is_tag", default=None, help="Whether --ref names a tag (defaults to git)")(fn)
    fn = click.option("--ref", default=None, help="Branch or tag name; refs/tags/... implies --tag (defaults to git)")(fn)
    fn = click.option(
        "--event",
        "kind",
        type=click.Choice(["push", "pull_request", "manual"]),
        default="push",
        show_default=True,
        help="Triggering event kind",
    )(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and step output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: matrix build-and-release pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@event_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--artifact-dir", default=None, help="Artifact store root (default: MATRIXCI_ARTIFACT_ROOT)")
@click.option("--work-dir", default=None, help="Job workspace root (default: MATRIXCI_WORK_ROOT)")
@click.option("--platform", "platforms", multiple=True, help="Platform this host can run (repeatable); others are skipped")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True, help="Stop scheduling new jobs after first failure")
@click.option("--keep-artifacts", is_flag=True, default=False, help="Keep artifacts and workspaces after the run")
@click.pass_context
def run(ctx, workflow, kind, ref, is_tag, base_ref, event_file, workers, artifact_dir, work_dir, platforms, fail_fast, keep_artifacts):
    """Run the workflow for one triggering event."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    event = build_event(event_file, kind, ref, is_tag, base_ref)

    try:
        wf = load_workflow(workflow_path)
        pipeline_run = evaluate(wf.triggers, event)
        if pipeline_run is None:
            console.print_not_triggered(event.kind, event.ref)
            return

        result = run_pipeline(
            wf,
            pipeline_run,
            repo_root=".",
            artifact_root=artifact_dir,
            work_root=work_dir,
            secrets=settings.publish_credentials(),
            max_workers=workers,
            platforms=list(platforms) or None,
            fail_fast=fail_fast,
            keep_artifacts=keep_artifacts,
            cancel=CancelToken(),
        )
        console.print_results(result)

        if result.status == "cancelled":
            sys.exit(130)
        if not result.ok:
            sys.exit(1)

    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e), suggestion="Fix the job graph and run `matrixci validate`.")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@event_options
def plan(workflow, kind, ref, is_tag, base_ref, event_file):
    """Show stages, matrix instances and start conditions without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    event = build_event(event_file, kind, ref, is_tag, base_ref)

    try:
        wf = load_workflow(workflow_path)
        levels = validate(wf.jobs)
        instances = prepare(wf)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    reason = match_reason(wf.triggers, event)
    console.print_header(f"Plan: {wf.name}")
    if reason is None:
        console.print_not_triggered(event.kind, event.ref)
        return
    console.print_info(f"Trigger: {reason}")

    pipeline_run = evaluate(wf.triggers, event)
    by_job = {j.name: j for j in wf.jobs}
    for idx, level in enumerate(levels, start=1):
        console.print_plan_level(idx, level)
        for name in level:
            job = by_job[name]
            ids = [i.id for i in instances.values() if i.name == name]
            if job.when is not None and not job.when(pipeline_run):
                console.print_plan_job_skipped(", ".join(ids), f"condition not met: {describe(job.when)}")
            else:
                detail = f"{len(ids)} instance(s)"
                if job.needs:
                    detail += f", needs {', '.join(job.needs)}"
                console.print_plan_job(", ".join(ids), detail)


@cli.command(name="validate")
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
def validate_cmd(workflow):
    """Load the workflow and check its job graph."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        instances = prepare(wf)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    console.print_info(f"Workflow OK: {len(wf.jobs)} job(s), {len(instances)} instance(s)")


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--artifact-dir", default=None, help="Artifact store root (default: MATRIXCI_ARTIFACT_ROOT)")
@click.option("--work-dir", default=None, help="Job workspace root (default: MATRIXCI_WORK_ROOT)")
def serve(workflow, host, port, artifact_dir, work_dir):
    """Serve the webhook trigger API (needs the 'cloud' extra)."""
    import uvicorn
    from matrixci.cloud.app import create_app

    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        prepare(wf)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)

    app = create_app(wf, artifact_root=artifact_dir, work_root=work_dir)
    console.print_info(f"Serving {wf.name} on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
