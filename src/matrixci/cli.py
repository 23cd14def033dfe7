# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from matrixci.cache import CacheStore
from matrixci.container import ContainerProvisioner, ImageSpec, render_dockerfile
from matrixci.dag import plan_stages
from matrixci.errors import CIError, ConfigurationError
from matrixci.executor import ExecutionContext
from matrixci.git_facts.git import get_current_ref, get_remote_url, repo_root
from matrixci.expansion import cell_display_name, expand
from matrixci.model import Event
from matrixci.orchestrator import load_workflow, run_pipeline, validate_pipeline
from matrixci.provision import LocalProvisioner
from matrixci.settings import Settings
from matrixci.trigger import describe_event, evaluate as evaluate_event, parse_event
from matrixci.ui.console import Console, get_console, set_console

EXIT_CONFIG_ERROR = 2


def find_workflow_files() -> list[Path]:
    """Workflow files in the current directory: matrixci_workflow.py first, then *_workflow.py."""
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / "matrixci_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
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
            details=["Looked for:", "  matrixci_workflow.py", "  *_workflow.py"],
            suggestion="Create matrixci_workflow.py or pass --workflow explicitly.",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow matrixci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _load_jobs(workflow: str | None, debug: bool):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except (OSError, TypeError, ValueError, SyntaxError, ImportError) as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {workflow_path}", details=[str(e)])
        if debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)


def _build_event(event_file: str | None, kind: str, ref: str | None, action: str | None, draft: bool) -> Event:
    console = get_console()
    try:
        if event_file:
            payload = json.loads(Path(event_file).read_text(encoding="utf-8"))
        else:
            if ref is None and kind == "push":
                try:
                    ref = get_current_ref()
                except (subprocess.CalledProcessError, FileNotFoundError):
                    ref = None
            payload = {"kind": kind, "ref": ref, "action": action, "draft": draft}
        return parse_event(payload)
    except (OSError, ValueError) as e:
        # EventPayloadError and JSON errors are both ValueErrors
        console.print_error("Invalid event", str(e), suggestion="See `matrixci run --help` for event options.")
        sys.exit(EXIT_CONFIG_ERROR)


def _event_options(fn):
    fn = click.option("--event-file", default=None, type=click.Path(dir_okay=False), help="JSON event payload")(fn)
    fn = click.option("--draft/--ready", default=False, help="Change-request readiness")(fn)
    fn = click.option("--action", default=None, help="Change-request action (opened|synchronized|reopened|marked_ready)")(fn)
    fn = click.option("--ref", default=None, help="Target ref (defaults to the current git branch for pushes)")(fn)
    fn = click.option(
        "--event",
        "kind",
        default="push",
        show_default=True,
        type=click.Choice(["push", "change_request"]),
        help="Trigger kind",
    )(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: gated, matrix-expanded build verification pipelines."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to matrixci_workflow.py if present)")
@_event_options
@click.option("--source", default=None, help="Repository to check out in each cell (defaults to the enclosing git repo)")
@click.option("--workers", default=None, type=int, help="Number of parallel cells")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--work-dir", default=None, help="Root directory for per-cell environments")
@click.option("--watch", "watched", multiple=True, help="Watched branch for push events (repeatable)")
@click.option("--container", "image", default=None, help="Run cells inside this container image")
@click.pass_context
def run(ctx, workflow, kind, ref, action, draft, event_file, source, workers, cache_dir, work_dir, watched, image):
    """Run a pipeline for one trigger event."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    debug = ctx.obj.get("debug", False)

    workflow_path, jobs = _load_jobs(workflow, debug)
    event = _build_event(event_file, kind, ref, action, draft)

    try:
        if source is None:
            try:
                source = str(repo_root())
            except (subprocess.CalledProcessError, FileNotFoundError):
                source = str(Path(".").resolve())
        try:
            repo_name = get_remote_url("origin").rstrip("/").split("/")[-1].replace(".git", "")
        except (subprocess.CalledProcessError, FileNotFoundError):
            repo_name = Path(source).name

        work_root = work_dir or settings.work_dir
        provisioner = ContainerProvisioner(image, work_root) if image else LocalProvisioner(work_root)
        context = ExecutionContext(
            provisioner=provisioner,
            cache=CacheStore(cache_dir or settings.cache_dir),
            source=source,
            ref=event.ref,
            cache_keep=settings.cache_keep,
            console=console,
        )

        console.print_run_started(
            repository=repo_name,
            workflow=workflow_path.name,
            job_count=len(jobs),
            event=describe_event(event),
        )

        result = run_pipeline(
            event,
            jobs,
            watched_branches=list(watched) or settings.watched_branches,
            context=context,
            max_workers=workers or settings.max_workers,
            console=console,
        )

        if result.eligible:
            console.print_results(result)
        sys.exit(result.exit_code)

    except ConfigurationError as e:
        console.print_error("Invalid pipeline configuration", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CIError as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to matrixci_workflow.py if present)")
@click.pass_context
def plan(ctx, workflow):
    """Validate the job graph and print its stages and cells."""
    console = get_console()
    _path, jobs = _load_jobs(workflow, ctx.obj.get("debug", False))
    by_name = {j.name: j for j in jobs}
    try:
        validate_pipeline(jobs)
        stages = plan_stages(jobs)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline configuration", e.message)
        sys.exit(EXIT_CONFIG_ERROR)

    for idx, stage in enumerate(stages, start=1):
        console.print_header(f"Stage {idx}")
        for name in stage:
            j = by_name[name]
            console.print_plan_job(name, [cell_display_name(j, c) for c in expand(j)], j.needs)


@cli.command()
@_event_options
@click.option("--watch", "watched", multiple=True, help="Watched branch for push events (repeatable)")
@click.pass_context
def evaluate(ctx, kind, ref, action, draft, event_file, watched):
    """Report whether an event would start a run (exit 0 eligible, 1 not)."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    event = _build_event(event_file, kind, ref, action, draft)
    eligible = evaluate_event(event, list(watched) or settings.watched_branches)
    console.print_info(f"{describe_event(event)}: {'eligible' if eligible else 'not eligible'}")
    sys.exit(0 if eligible else 1)


@cli.command()
@click.option("--user", default="builder", show_default=True, help="Non-root user inside the image")
@click.option("--uid", default=1000, show_default=True, type=int, help="Numeric id of that user")
@click.option("--variant", default="edge", show_default=True, help="Base image variant tag")
@click.option("--output", "-o", default=None, type=click.Path(dir_okay=False), help="Write to file instead of stdout")
def dockerfile(user, uid, variant, output):
    """Render the cell container image."""
    text = render_dockerfile(ImageSpec(user=user, uid=uid, variant=variant))
    if output:
        Path(output).write_text(text, encoding="utf-8")
        get_console().print_info(f"Wrote {output}")
    else:
        click.echo(text, nl=False)


if __name__ == "__main__":
    cli()
