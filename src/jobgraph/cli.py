# cli.py
from __future__ import annotations

import json
import sys
import urllib.error
import urllib.request
from pathlib import Path
from urllib.parse import urljoin

import click

from jobgraph.artifacts import DEFAULT_ARTIFACT_DIR, ArtifactStore, FileBackend
from jobgraph.dag import plan as plan_stages
from jobgraph.document import dump_definition
from jobgraph.errors import ConfigurationError
from jobgraph.loader import DOCUMENT_SUFFIXES, load_workflow
from jobgraph.model import RunResult, RunStatus
from jobgraph.scheduler import Scheduler
from jobgraph.trigger import DEFAULT_EVENT, resolve_context
from jobgraph.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "jobgraph_workflow.py"


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
        return [default_workflow]

    for path in current_dir.glob("*_workflow.py"):
        workflow_files.append(path)
    for suffix in DOCUMENT_SUFFIXES:
        workflow_files.extend(current_dir.glob(f"*.jobgraph{suffix}"))

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
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  jobgraph run --workflow my_workflow.py",
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
                "  *.jobgraph.json / *.jobgraph.yaml / *.jobgraph.yml",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  jobgraph run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  jobgraph run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def parse_pairs(pairs: tuple[str, ...], option: str) -> dict[str, object]:
    """KEY=VALUE pairs; values that parse as JSON scalars (true, 3, 1.5) keep their type."""
    out: dict[str, object] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint=option)
        key, raw = pair.split("=", 1)
        try:
            value = json.loads(raw)
            if isinstance(value, (dict, list)) or value is None:
                value = raw
        except json.JSONDecodeError:
            value = raw
        out[key.strip()] = value
    return out


def load_or_exit(ctx, workflow: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)


def post_report(report_url: str, result: RunResult) -> None:
    """POST the run snapshot to a reporting service."""
    console = get_console()
    base_url = report_url.rstrip("/")
    url = urljoin(base_url + "/", "runs")

    req = urllib.request.Request(
        url,
        data=json.dumps(result.to_dict()).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req) as response:
            response.read()
        console.print_info(f"Reported run {result.run_id} to {base_url}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "Run report failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the reporting service at {base_url}.",
        )
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the report URL is correct and the service is running (jobgraph serve).",
        )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """jobgraph: run job graphs with conditions, matrices and artifacts."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel workers")
@click.option("--event", default=DEFAULT_EVENT, show_default=True, help="Trigger event name (push, pull_request, ...)")
@click.option("--input", "inputs", multiple=True, metavar="KEY=VALUE", help="Manual input, repeatable")
@click.option("--context", "overrides", multiple=True, metavar="KEY=VALUE", help="Override a context fact (branch, sha, ...)")
@click.option("--no-git", is_flag=True, default=False, help="Do not read git facts into the context")
@click.option("--artifact-dir", default=DEFAULT_ARTIFACT_DIR, show_default=True, help="Artifact store directory")
@click.option("--report-url", default=None, help="Reporting service URL to POST the run result to")
@click.option("--json-output", type=click.Path(dir_okay=False), default=None, help="Write the run result as JSON")
@click.pass_context
def run(ctx, workflow, workers, event, inputs, overrides, no_git, artifact_dir, report_url, json_output):
    """Run a workflow."""
    console = get_console()
    _, definition = load_or_exit(ctx, workflow)

    try:
        context = resolve_context(
            event,
            parse_pairs(inputs, "--input"),
            parse_pairs(overrides, "--context"),
            use_git=not no_git,
        )
        scheduler = Scheduler(
            definition,
            context,
            max_workers=workers,
            artifacts=ArtifactStore(FileBackend(artifact_dir)),
            console=console,
        )
        result = scheduler.run()
        console.print_results(result)

        if json_output:
            Path(json_output).write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
        if report_url:
            post_report(report_url, result)

        if result.status is not RunStatus.SUCCEEDED:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except click.ClickException:
        raise
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.pass_context
def plan(ctx, workflow):
    """Print the stages and job instances a workflow would run."""
    console = get_console()
    _, definition = load_or_exit(ctx, workflow)
    try:
        stages = plan_stages(definition)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    console.print_plan(stages)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.option(
    "--dump",
    type=click.Choice(["json", "yaml"]),
    default=None,
    help="Also print the definition in the persisted document format",
)
@click.pass_context
def validate(ctx, workflow, dump):
    """Check a workflow without running it."""
    console = get_console()
    workflow_path, definition = load_or_exit(ctx, workflow)
    try:
        stages = plan_stages(definition)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)

    instance_count = sum(len(s.instances) for s in stages)
    click.echo(f"{workflow_path}: OK ({len(definition.jobs)} jobs, {instance_count} instances, {len(stages)} stages)")
    if dump:
        click.echo(dump_definition(definition, dump), nl=False)


@cli.command()
@click.option("--host", default=None, help="Bind address (JOBGRAPH_HOST)")
@click.option("--port", default=None, type=int, help="Port (JOBGRAPH_PORT)")
@click.option("--database-url", default=None, help="SQLAlchemy async URL (JOBGRAPH_DATABASE_URL)")
def serve(host, port, database_url):
    """Serve the run reporting API."""
    import uvicorn

    from jobgraph.reporting import settings
    from jobgraph.reporting.app import create_app

    uvicorn.run(
        create_app(database_url),
        host=host or settings.HOST,
        port=port or settings.PORT,
    )


if __name__ == "__main__":
    cli()
