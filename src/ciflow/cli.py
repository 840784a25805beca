# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from ciflow.errors import WorkflowDefinitionError, WorkflowLoadError
from ciflow.loader import load_workflow
from ciflow.model import Workflow
from ciflow.runner import ShellStepRunner, plan, prepare
from ciflow.ui.console import Console, get_console, set_console

EXIT_SUCCESS = 0
EXIT_PIPELINE_FAILED = 1
EXIT_DEFINITION_ERROR = 3
EXIT_LOAD_ERROR = 4
EXIT_INTERRUPTED = 130

DEFAULT_WORKFLOWS = ("ciflow_workflow.py", ".ciflow.yml", ".ciflow.yaml")


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in `directory`.

    Returns:
        List of Path objects for workflow files
    """
    found = [directory / name for name in DEFAULT_WORKFLOWS if (directory / name).exists()]

    # Look for other *_workflow.py files
    for path in sorted(directory.glob("*_workflow.py")):
        if path not in found:
            found.append(path)

    return found


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix == "":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  ciflow run --workflow my_workflow.py",
            )
            sys.exit(EXIT_LOAD_ERROR)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *[f"  {name}" for name in DEFAULT_WORKFLOWS], "  *_workflow.py"],
            suggestion="Create a workflow file:\n  ciflow_workflow.py\n\nOr specify a workflow explicitly:\n  ciflow run --workflow my_workflow.py",
        )
        sys.exit(EXIT_LOAD_ERROR)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  ciflow run --workflow ciflow_workflow.py",
        )
        sys.exit(EXIT_LOAD_ERROR)

    return workflow_files[0]


def _load(workflow_arg: str | None) -> Workflow:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        wf = load_workflow(workflow_path)
    except WorkflowLoadError as e:
        problems = e.details.get("problems") or []
        console.print_error("Failed to load workflow", e.message, details=problems or None)
        if console.debug:
            console.print_exception(e)
        sys.exit(EXIT_LOAD_ERROR)
    console.print_debug(f"Loaded {len(wf.jobs)} job(s) from {workflow_path}")
    return wf


def _definition_error(e: WorkflowDefinitionError) -> None:
    get_console().print_error(
        "Invalid workflow",
        str(e),
        details=[f"{k}: {v}" for k, v in e.details.items()],
        suggestion="Nothing was run.",
    )
    sys.exit(EXIT_DEFINITION_ERROR)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """ciflow: dependency-aware CI workflow runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


_workflow_option = click.option(
    "--workflow",
    default=None,
    envvar="CIFLOW_WORKFLOW",
    help="Workflow file (.py or .yml). Defaults to ciflow_workflow.py or .ciflow.yml if present",
)


@cli.command()
@_workflow_option
@click.option("--workers", default=None, type=click.IntRange(min=1), envvar="CIFLOW_WORKERS",
              help="Number of concurrent job instances (default: CPU count)")
@click.option("--gate", "gates", multiple=True,
              help="Gate job deciding the verdict (repeatable; default: the workflow's gates, else terminal jobs)")
@click.option("--event", default=None, help="Triggering event; nothing runs if the workflow is not triggered by it")
@click.option("--repo-root", default=".", show_default=True, type=click.Path(file_okay=False),
              help="Directory steps run in")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False),
              help="Write the JSON run report to this file")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print stages before running")
@click.pass_context
def run(ctx, workflow, workers, gates, event, repo_root, report_path, print_plan):
    """Run a ciflow workflow."""
    console = get_console()
    wf = _load(workflow)

    if event and not wf.triggered_by(event):
        console.print_not_triggered(wf.name, event, wf.on)
        sys.exit(EXIT_SUCCESS)

    try:
        scheduler = prepare(
            wf,
            ShellStepRunner(repo_root),
            max_workers=workers,
            gates=list(gates) or None,
            listener=console,
        )
    except WorkflowDefinitionError as e:
        _definition_error(e)
        return

    if print_plan:
        console.print_plan(plan(wf))

    console.print_run_started(
        workflow=wf.name,
        job_count=len(scheduler.records),
        instance_count=sum(len(r) for r in scheduler.records.values()),
        workers=scheduler.max_workers,
    )

    try:
        report = scheduler.run()
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_PIPELINE_FAILED)

    console.print_results(report)
    if report_path:
        report.to_json(report_path)
        console.print_info(f"Report written to {report_path}")

    if scheduler.interrupted:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_SUCCESS if report.succeeded else EXIT_PIPELINE_FAILED)


@cli.command(name="plan")
@_workflow_option
def plan_cmd(workflow):
    """Print the stages and matrix instances of a workflow without running it."""
    console = get_console()
    wf = _load(workflow)
    try:
        stages = plan(wf)
    except WorkflowDefinitionError as e:
        _definition_error(e)
        return
    console.print_plan(stages)


@cli.command()
@_workflow_option
def validate(workflow):
    """Check a workflow for definition errors."""
    console = get_console()
    wf = _load(workflow)
    try:
        scheduler = prepare(wf)
    except WorkflowDefinitionError as e:
        _definition_error(e)
        return
    count = sum(len(r) for r in scheduler.records.values())
    gates = ", ".join(scheduler.gates) or "(none)"
    console.print_info(
        f"Workflow '{wf.name}' is valid: {len(wf.jobs)} job(s), {count} instance(s), gates: {gates}"
    )


if __name__ == "__main__":
    cli()
