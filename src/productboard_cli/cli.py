"""Command-line interface for productboard-cli."""

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TextIO

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .api import ProductboardClient
from .config import DEFAULT_MIGRATION_FIELD, DEFAULT_STATE_DIR, RESOURCES
from .exceptions import ProductboardError
from .export import fetch_custom_fields
from .jobs import build_strategy, create_scheduler, resolve_mapping
from .migration import find_migration_field_id, migrate_prep
from .models import ColumnMapping
from .scheduler import BatchScheduler, JsonFileJobStore
from .stream import ProgressStream
from .tabular import load_input_rows, parse_csv
from .validation import ValidationReport, validate_parse_errors, validate_rows

console = Console()

LEVEL_STYLES = {"info": "dim", "success": "green", "warn": "yellow", "error": "red"}

SUMMARY_COLUMNS = [
    ("created", "Created", "green"),
    ("updated", "Updated", "blue"),
    ("deleted", "Deleted", "red"),
    ("skipped", "Skipped", "yellow"),
    ("exported", "Exported", "green"),
    ("errors", "Errors", "red"),
    ("warnings", "Warnings", "yellow"),
]


def get_api_token() -> str:
    """Get API token from environment."""
    token = os.environ.get("PRODUCTBOARD_API_TOKEN")
    if not token:
        raise click.ClickException(
            "PRODUCTBOARD_API_TOKEN environment variable not set.\n"
            "Set it with: export PRODUCTBOARD_API_TOKEN=your_token"
        )
    return token


def use_eu() -> bool:
    return os.environ.get("PRODUCTBOARD_EU", "").lower() in ("1", "true", "yes")


def client_factory() -> Callable[[], ProductboardClient]:
    token = get_api_token()
    eu = use_eu()
    return lambda: ProductboardClient(token, eu)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def get_scheduler(ctx: click.Context, log_file: TextIO | None = None) -> BatchScheduler:
    store = JsonFileJobStore(ctx.obj["state_dir"])

    def write_outcomes(outcomes: list[dict[str, Any]]) -> None:
        for outcome in outcomes:
            log_file.write(json.dumps(outcome) + "\n")

    return create_scheduler(store, client_factory(), on_outcomes=write_outcomes if log_file else None)


async def run_with_progress(
    work: Callable[[ProgressStream], Awaitable[dict[str, Any] | None]],
    description: str,
) -> dict[str, Any]:
    """Run work on a progress stream, rendering frames with rich.

    Returns the complete frame's data; an error frame becomes a ClickException.
    """
    stream = ProgressStream()
    task = asyncio.create_task(stream.run(work))
    summary: dict[str, Any] = {}
    error: dict[str, Any] | None = None

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        bar = progress.add_task(description, total=100)
        async for frame in stream:
            if frame.event == "progress":
                progress.update(bar, completed=frame.data["percent"], description=frame.data["message"])
            elif frame.event == "log":
                level = frame.data["level"]
                if level in ("warn", "error"):
                    style = LEVEL_STYLES[level]
                    progress.console.print(f"[{style}]{frame.data['message']}[/{style}]")
            elif frame.event == "complete":
                summary = frame.data
                progress.update(bar, completed=100)
            elif frame.event == "error":
                error = frame.data

    await task
    if error is not None:
        raise click.ClickException(error["message"])
    return summary


def print_summary(summary: dict[str, Any], title: str) -> None:
    if summary.get("batchStarted"):
        console.print(
            f"[yellow]Batch job started:[/yellow] {summary['estimate']} items in {summary['chunks']} chunks.\n"
            "Run [bold]productboard-cli job run[/bold] to process it."
        )
        return

    table = Table(title=title)
    shown = [(key, label, style) for key, label, style in SUMMARY_COLUMNS if summary.get(key)]
    if not shown:
        shown = [("errors", "Errors", "red")]
    for _, label, style in shown:
        table.add_column(label, style=style, justify="right")
    table.add_row(*(str(summary.get(key, 0)) for key, _, _ in shown))
    console.print(table)

    if summary.get("stopped"):
        console.print("[yellow]Stopped before all rows were processed[/yellow]")
    if summary.get("truncated"):
        console.print("[yellow]Warning: the job hit the chunk limit; results are incomplete[/yellow]")
    if summary.get("output"):
        console.print(f"[dim]Written to:[/dim] {summary['output']}")


def print_report(report: ValidationReport) -> None:
    table = Table(title=f"Validation ({report.total_rows} rows)")
    table.add_column("Row", justify="right")
    table.add_column("Level")
    table.add_column("Field", style="cyan")
    table.add_column("Message")
    for issue in report.errors:
        table.add_row(str(issue.row or ""), "[red]error[/red]", issue.field or "", issue.message)
    for issue in report.warnings:
        table.add_row(str(issue.row or ""), "[yellow]warning[/yellow]", issue.field or "", issue.message)
    if report.errors or report.warnings:
        console.print(table)
    if report.valid:
        console.print(f"[green]✓ {report.total_rows} rows valid[/green] ({len(report.warnings)} warnings)")
    else:
        console.print(f"[red]✗ {len(report.errors)} errors[/red], {len(report.warnings)} warnings")


def load_mapping(mapping: Path | None) -> dict[str, Any] | None:
    if mapping is None:
        return None
    return ColumnMapping.load(mapping).to_dict()


def check_resource(resource: str, operation: str) -> None:
    config = RESOURCES.get(resource)
    supported = {
        "import": config is not None and config.importable,
        "delete": config is not None and config.deletable,
        "export": resource in ("companies", "notes"),
    }
    if not supported[operation]:
        raise click.ClickException(f"{operation.capitalize()} is not supported for {resource}")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_STATE_DIR,
    envvar="PRODUCTBOARD_STATE_DIR",
    show_default=True,
    help="Directory holding batch job state",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, state_dir: Path) -> None:
    """Productboard CLI - Bulk import, export and delete Productboard data."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["state_dir"] = state_dir


@main.command()
def resources() -> None:
    """List supported resources."""
    table = Table(title="Productboard Resources")
    table.add_column("Name", style="cyan")
    table.add_column("Endpoint")
    table.add_column("Pagination")
    table.add_column("Match Key")
    table.add_column("Import")
    table.add_column("Delete")

    for config in RESOURCES.values():
        table.add_row(
            config.name,
            config.v2_endpoint or config.endpoint,
            config.pagination,
            config.secondary_key_field or "-",
            "yes" if config.importable else "no",
            "yes" if config.deletable else "no",
        )

    console.print(table)


@main.command()
@click.argument("resource", type=click.Choice(["companies", "notes", "entities"]))
@click.option("--json", "-j", "output_json", is_flag=True, help="Output as JSON")
def fields(resource: str, output_json: bool) -> None:
    """List importable fields of a resource (company custom fields included)."""
    strategy = build_strategy(resource)
    entries = [
        {"name": name, "label": strategy.labels.get(name, name), "type": "standard"}
        for name in strategy.field_names
    ]

    if resource == "companies":
        factory = client_factory()

        async def fetch() -> list[dict[str, str]]:
            async with factory() as client:
                return await fetch_custom_fields(client)

        try:
            custom = asyncio.run(fetch())
        except ProductboardError as e:
            raise click.ClickException(e.detail)
        entries.extend(
            {"name": f"custom__{f['id']}", "label": f["name"], "type": f"custom ({f['type']})"} for f in custom
        )

    if output_json:
        click.echo(json.dumps(entries, indent=2))
        return

    table = Table(title=f"{resource} fields")
    table.add_column("Field", style="cyan")
    table.add_column("Label")
    table.add_column("Type", style="dim")
    for entry in entries:
        table.add_row(entry["name"], entry["label"], entry["type"])
    console.print(table)


@main.command()
@click.argument("resource", type=click.Choice(["companies", "notes", "entities"]))
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--mapping", "-m", type=click.Path(exists=True, path_type=Path), help="Column mapping JSON file")
def preview(resource: str, path: Path, mapping: Path | None) -> None:
    """Validate a CSV file locally without calling the API."""
    text = path.read_text(encoding="utf-8")
    headers, _, parse_errors = parse_csv(text)
    if parse_errors:
        report = validate_parse_errors(parse_errors)
    else:
        column_mapping = resolve_mapping(resource, headers, load_mapping(mapping))
        strategy = build_strategy(resource, mapping=column_mapping)
        report = validate_rows(load_input_rows(text, column_mapping), strategy)

    print_report(report)
    if not report.valid:
        raise SystemExit(1)


@main.command("import")
@click.argument("resource", type=click.Choice(["companies", "notes", "entities"]))
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--mapping", "-m", type=click.Path(exists=True, path_type=Path), help="Column mapping JSON file")
@click.option("--clear-empty-fields", is_flag=True, help="Clear company custom fields left empty in the CSV")
@click.option("--migration-mode", is_flag=True, help="Map linked entity UUIDs through the migration field")
@click.option("--migration-field", default=DEFAULT_MIGRATION_FIELD, show_default=True, help="Migration field name")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write rows with their IDs here")
@click.option("--log", "-l", "log", type=click.Path(path_type=Path), help="Write per-row outcomes as JSON lines")
@click.option("--batch", is_flag=True, help="Split into chunks even below the threshold")
@click.pass_context
def import_cmd(
    ctx: click.Context,
    resource: str,
    path: Path,
    mapping: Path | None,
    clear_empty_fields: bool,
    migration_mode: bool,
    migration_field: str,
    output: Path | None,
    log: Path | None,
    batch: bool,
) -> None:
    """Create or update records from a CSV file."""
    check_resource(resource, "import")
    payload = {
        "operation": "import",
        "resource": resource,
        "csv": path.read_text(encoding="utf-8"),
        "mapping": load_mapping(mapping),
        "options": {
            "clear_empty_fields": clear_empty_fields,
            "migration_mode": migration_mode,
            "migration_field": migration_field,
        },
        "output": str(output) if output else None,
        "batch": batch,
    }
    summary = _start(ctx, payload, f"Importing {resource}...", log)
    print_summary(summary, "Import Summary")
    if log:
        console.print(f"[dim]Log written to:[/dim] {log}")


@main.command("export")
@click.argument("resource", type=click.Choice(["companies", "notes"]))
@click.option("--output-dir", "-o", type=click.Path(file_okay=False, path_type=Path), default=Path("."))
@click.option("--created-from", help="Only notes created at or after this ISO date")
@click.option("--created-to", help="Only notes created before this ISO date")
@click.option("--batch", is_flag=True, help="Export in resumable chunks")
@click.pass_context
def export_cmd(
    ctx: click.Context,
    resource: str,
    output_dir: Path,
    created_from: str | None,
    created_to: str | None,
    batch: bool,
) -> None:
    """Export records to CSV with a datapackage.json descriptor."""
    payload = {
        "operation": "export",
        "resource": resource,
        "output_dir": str(output_dir),
        "created_from": created_from,
        "created_to": created_to,
        "batch": batch,
    }
    summary = _start(ctx, payload, f"Exporting {resource}...")
    print_summary(summary, "Export Summary")


@main.command("delete")
@click.argument("resource", type=click.Choice(["companies", "notes"]))
@click.option("--csv", "csv_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="CSV of IDs")
@click.option("--column", "-c", default="pb_id", show_default=True, help="Column holding the IDs")
@click.option("--all", "delete_all", is_flag=True, help="Delete every record of the resource")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--batch", is_flag=True, help="Split into chunks even below the threshold")
@click.pass_context
def delete_cmd(
    ctx: click.Context,
    resource: str,
    csv_path: Path | None,
    column: str,
    delete_all: bool,
    yes: bool,
    batch: bool,
) -> None:
    """Delete records listed in a CSV file, or all of them."""
    if bool(csv_path) == delete_all:
        raise click.ClickException("Use exactly one of --csv or --all")

    target = f"ALL {resource}" if delete_all else f"{resource} listed in {csv_path}"
    if not yes and not click.confirm(f"Delete {target}? This cannot be undone", default=False):
        console.print("Aborted.")
        return

    payload: dict[str, Any] = {"operation": "delete", "resource": resource, "batch": batch}
    if delete_all:
        payload["all"] = True
    else:
        payload["csv"] = csv_path.read_text(encoding="utf-8")
        payload["column"] = column
    summary = _start(ctx, payload, f"Deleting {resource}...")
    print_summary(summary, "Delete Summary")


@main.command("migrate-prep")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--source-origin", "-s", required=True, help="Migration name stored as source_origin")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Output CSV (default: stdout)")
@click.option("--check-field", is_flag=True, help="Also check that the migration field exists in the workspace")
@click.option("--migration-field", default=DEFAULT_MIGRATION_FIELD, show_default=True)
def migrate_prep_cmd(
    path: Path, source_origin: str, output: Path | None, check_field: bool, migration_field: str
) -> None:
    """Prepare a notes export for import into another workspace."""
    try:
        csv_text, count = migrate_prep(path.read_text(encoding="utf-8"), source_origin)
    except ValueError as e:
        raise click.ClickException(str(e))

    if output:
        output.write_text(csv_text, encoding="utf-8")
        console.print(f"[green]{count} rows prepared[/green] -> {output}")
    else:
        click.echo(csv_text, nl=False)

    if check_field:
        factory = client_factory()

        async def detect() -> str | None:
            async with factory() as client:
                return await find_migration_field_id(client, migration_field)

        if asyncio.run(detect()):
            console.print(f"[green]Migration field '{migration_field}' found[/green]")
        else:
            console.print(f"[yellow]Migration field '{migration_field}' not found[/yellow]")


def _start(ctx: click.Context, payload: dict[str, Any], description: str, log: Path | None = None) -> dict[str, Any]:
    log_file = open(log, "w", encoding="utf-8") if log else None
    try:
        scheduler = get_scheduler(ctx, log_file)
        return asyncio.run(run_with_progress(lambda stream: scheduler.start_job(payload, stream), description))
    finally:
        if log_file:
            log_file.close()


# Batch job commands


@main.group()
def job() -> None:
    """Drive a chunked batch job."""
    pass


@job.command("start")
@click.argument("payload_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def job_start(ctx: click.Context, payload_path: Path) -> None:
    """Start a job from a JSON payload file ({"operation", "resource", ...})."""
    with open(payload_path, encoding="utf-8") as f:
        payload = json.load(f)
    summary = _start(ctx, payload, f"Starting {payload.get('operation')}...")
    print_summary(summary, "Job Summary")


@job.command("next")
@click.pass_context
def job_next(ctx: click.Context) -> None:
    """Process the next chunk of the active job."""
    scheduler = get_scheduler(ctx)
    step = asyncio.run(run_with_progress(_next_chunk(scheduler), "Processing chunk..."))
    _print_step(step)


@job.command("run")
@click.option("--log", "-l", "log", type=click.Path(path_type=Path), help="Append per-row outcomes as JSON lines")
@click.pass_context
def job_run(ctx: click.Context, log: Path | None) -> None:
    """Process chunks until the active job is finished."""
    log_file = open(log, "a", encoding="utf-8") if log else None
    try:
        scheduler = get_scheduler(ctx, log_file)
        while True:
            step = asyncio.run(run_with_progress(_next_chunk(scheduler), "Processing chunk..."))
            _print_step(step)
            if not step.get("hasMore"):
                break
    finally:
        if log_file:
            log_file.close()


def _next_chunk(scheduler: BatchScheduler) -> Callable[[ProgressStream], Awaitable[dict[str, Any]]]:
    async def work(stream: ProgressStream) -> dict[str, Any]:
        step = await scheduler.process_next_job(stream)
        return {k: v for k, v in step.items() if k != "outcomes"}

    return work


def _print_step(step: dict[str, Any]) -> None:
    if step.get("summary"):
        print_summary(step["summary"], "Job Summary")
    elif step.get("progress"):
        p = step["progress"]
        console.print(
            f"Chunks: {p['completedChunks']}/{p['chunks']} done, {p['pendingChunks']} pending"
            f" ({p['failedChunks']} failed)"
        )
    else:
        console.print("[dim]No active job.[/dim]")


@job.command("status")
@click.option("--json", "-j", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def job_status(ctx: click.Context, output_json: bool) -> None:
    """Show the active job."""
    status = create_scheduler(JsonFileJobStore(ctx.obj["state_dir"]), lambda: None).status()
    if output_json:
        click.echo(json.dumps(status, indent=2))
        return
    if status is None:
        console.print("[dim]No active job.[/dim]")
        return

    table = Table(title=f"Job {status['jobId']}")
    table.add_column("Key", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in status.items():
        table.add_row(key, str(value))
    console.print(table)


@job.command("cancel")
@click.pass_context
def job_cancel(ctx: click.Context) -> None:
    """Drop the active job. Records already written are kept."""
    result = create_scheduler(JsonFileJobStore(ctx.obj["state_dir"]), lambda: None).cancel_job()
    if result["cancelled"]:
        console.print("[yellow]Job cancelled.[/yellow]")
    else:
        console.print("[dim]No active job.[/dim]")


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", "-p", default=8080, show_default=True, type=int)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP API with Server-Sent Events progress streams."""
    import uvicorn

    from .server import create_app

    app = create_app(store=JsonFileJobStore(ctx.obj["state_dir"]))
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
