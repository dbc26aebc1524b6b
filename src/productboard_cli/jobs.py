"""Job planners and chunk handlers for import, export and delete."""

import logging
from pathlib import Path
from typing import Any

from .api import ProductboardClient
from .config import BACKFILL_DELAYS, EXPORT_PAGES_PER_CHUNK, RESOURCES
from .deletion import delete_records, ids_from_csv, list_record_ids
from .exceptions import JobError
from .export import (
    NOTE_FIELDS,
    build_company_rows,
    build_note_lookups,
    build_note_row,
    company_columns,
    export_filename,
    fetch_custom_field_definitions,
    note_filters,
)
from .models import ColumnMapping
from .pagination import Paginator, paginate
from .reconcile import Reconciler
from .scheduler import BatchScheduler, ChunkContext, ChunkResult, ClientFactory, JobPlan, JobStore
from .strategies import CompanyStrategy, EntityStrategy, NoteStrategy, ResourceStrategy, get_strategy
from .tabular import append_csv_rows, describe_export, load_input_rows, parse_csv

logger = logging.getLogger(__name__)


def _ranges(total: int, size: int, chunk_type: str) -> list[tuple[str, dict[str, Any]]]:
    if total == 0:
        return [(chunk_type, {"start": 0, "end": 0})]
    return [(chunk_type, {"start": s, "end": min(s + size, total)}) for s in range(0, total, size)]


def build_strategy(
    resource: str, options: dict[str, Any] | None = None, mapping: ColumnMapping | None = None
) -> ResourceStrategy:
    """Strategy for a resource, configured from job options."""
    options = options or {}
    if resource == "companies":
        return CompanyStrategy(
            custom_fields=mapping.custom_fields if mapping else (),
            clear_empty_fields=bool(options.get("clear_empty_fields")),
        )
    if resource == "notes":
        kwargs: dict[str, Any] = {"migration_mode": bool(options.get("migration_mode"))}
        if options.get("migration_field"):
            kwargs["migration_field"] = options["migration_field"]
        return NoteStrategy(**kwargs)
    if resource == "entities":
        kwargs = {}
        if options.get("migration_field"):
            kwargs["migration_field"] = options["migration_field"]
        if options.get("entity_type"):
            kwargs["default_type"] = options["entity_type"]
        return EntityStrategy(**kwargs)
    return get_strategy(resource)


def resolve_mapping(resource: str, headers: list[str], mapping: dict[str, Any] | None) -> ColumnMapping:
    """Explicit mapping if given, else match headers to field names and labels."""
    if mapping:
        return ColumnMapping.from_dict(mapping)
    strategy = build_strategy(resource)
    return ColumnMapping.identity(headers, strategy.field_names, strategy.labels)


def write_back_columns(mapping: ColumnMapping, primary_key_field: str) -> tuple[list[str], list[str]]:
    """(row keys, headers) for writing reconciled rows back to CSV."""
    fields = [primary_key_field] + [f for f in mapping.columns if f != primary_key_field]
    headers = list(fields)
    for custom in mapping.custom_fields:
        fields.append(custom.key)
        headers.append(custom.column)
    return fields, headers


# Import


async def plan_import(payload: dict[str, Any], client: ProductboardClient) -> JobPlan:
    resource = payload.get("resource")
    config = RESOURCES.get(resource)
    if config is None or not config.importable:
        raise JobError(f"Import is not supported for {resource}")

    csv_text = payload.get("csv") or ""
    headers, rows, _ = parse_csv(csv_text)
    mapping = resolve_mapping(resource, headers, payload.get("mapping"))
    total = len(rows)

    return JobPlan(
        operation="import",
        resource=resource,
        estimate=total,
        chunks=lambda size: _ranges(total, size, "import-chunk"),
        params={"options": payload.get("options") or {}, "output": payload.get("output")},
        inputs={"csv": csv_text, "mapping": mapping.to_dict()},
        force_batch=bool(payload.get("batch")),
    )


async def run_import_chunk(ctx: ChunkContext) -> ChunkResult:
    """Reconcile rows [start, end) of the job input."""
    options = ctx.job.params.get("options") or {}
    mapping = ColumnMapping.from_dict(ctx.inputs.get("mapping") or {})
    strategy = build_strategy(ctx.job.resource, options, mapping)
    start, end = ctx.chunk.params["start"], ctx.chunk.params["end"]

    output = ctx.job.params.get("output")
    if output and ctx.chunk.index == 0 and start == 0:
        Path(output).unlink(missing_ok=True)

    all_rows = load_input_rows(ctx.inputs.get("csv") or "", mapping)

    # Derived values (auto-numbered source IDs) depend on every earlier row;
    # replaying them keeps a re-run chunk identical to its first run.
    ctx.cache.source_counters = {}
    for row in all_rows[:start]:
        strategy.prepare_row(row, ctx.cache)

    reconciler = Reconciler(
        ctx.client,
        strategy,
        ctx.cache,
        ctx.stream,
        backfill_delays=tuple(options.get("backfill_delays") or BACKFILL_DELAYS),
        percent_range=ctx.percent_range,
    )
    result = await reconciler.reconcile(all_rows[start:end])

    if output and result.rows:
        fields, headers = write_back_columns(mapping, strategy.primary_key_field)
        append_csv_rows(Path(output), [r.values for r in result.rows], fields, headers)

    counts = {
        "created": result.created,
        "updated": result.updated,
        "errors": result.errors,
        "warnings": result.warnings,
    }
    continuation = {"start": start + result.processed} if result.stopped else None
    info = {"output": output} if output else {}
    return ChunkResult(
        counts=counts,
        continuation=continuation,
        stopped=result.stopped,
        info=info,
        outcomes=[o.to_dict() for o in result.outcomes],
    )


# Export


async def plan_export(payload: dict[str, Any], client: ProductboardClient) -> JobPlan:
    resource = payload.get("resource")
    if resource not in ("companies", "notes"):
        raise JobError(f"Export is not supported for {resource}")

    filters = {
        "created_from": payload.get("created_from"),
        "created_to": payload.get("created_to"),
    }
    filename = export_filename(resource, filters["created_from"], filters["created_to"])
    output = Path(payload.get("output_dir") or ".") / filename

    return JobPlan(
        operation="export",
        resource=resource,
        estimate=int(payload.get("estimate") or 0),
        chunks=lambda size: [("export-chunk", {"cursor": None})],
        params={"output": str(output), "filters": filters},
        force_batch=bool(payload.get("batch")),
    )


async def _collect_pages(paginator: Paginator, max_pages: int | None) -> tuple[list[dict[str, Any]], str | None]:
    items: list[dict[str, Any]] = []
    next_cursor = None
    async for page in paginator:
        items.extend(page.items)
        next_cursor = page.next_cursor
        if max_pages and page.number >= max_pages:
            break
    return items, next_cursor


async def _note_lookups(ctx: ChunkContext) -> dict[str, dict[str, Any]]:
    """User/company/source maps, built by the first chunk and reused by the rest."""
    if "users" not in ctx.cache.lookups:
        lookups = await build_note_lookups(ctx.client, ctx.stream)
        ctx.cache.lookups.update(lookups)
    return {k: ctx.cache.lookups.get(k, {}) for k in ("users", "companies", "sources")}


async def run_export_chunk(ctx: ChunkContext) -> ChunkResult:
    """Export a window of pages and append it to the output CSV.

    In batch mode each chunk reads a bounded number of pages and
    continues from the cursor it stopped at.
    """
    path = Path(ctx.job.params["output"])
    cursor = ctx.chunk.params.get("cursor")
    max_pages = EXPORT_PAGES_PER_CHUNK if ctx.job.params.get("batch") else None
    if ctx.chunk.index == 0 and cursor is None:
        path.unlink(missing_ok=True)

    if ctx.stream is not None:
        ctx.stream.progress(f"Exporting {ctx.job.resource} (part {ctx.chunk.index + 1})...", ctx.percent_range[0])

    if ctx.job.resource == "companies":
        if "custom_fields" not in ctx.cache.lookups:
            ctx.cache.lookups["custom_fields"] = await fetch_custom_field_definitions(ctx.client)
        custom_fields = ctx.cache.lookups["custom_fields"]
        items, next_cursor = await _collect_pages(
            paginate(ctx.client, "/companies", style="offset", start=cursor), max_pages
        )
        rows = await build_company_rows(ctx.client, items, custom_fields)
        fields, headers = company_columns(custom_fields)
    else:
        lookups = await _note_lookups(ctx)
        filters = ctx.job.params.get("filters") or {}
        paginator = paginate(
            ctx.client, "/v2/notes", style="cursor", send_limit=False,
            params=note_filters(filters.get("created_from"), filters.get("created_to")),
            start=cursor,
        )
        items, next_cursor = await _collect_pages(paginator, max_pages)
        rows = [build_note_row(note, lookups) for note in items]
        fields = headers = list(NOTE_FIELDS)

    append_csv_rows(path, rows, fields, headers)
    describe_export(path, path.stem, headers)
    logger.info("Exported %d %s to %s", len(rows), ctx.job.resource, path)

    return ChunkResult(
        counts={"exported": len(rows)},
        continuation={"cursor": next_cursor} if next_cursor else None,
        info={"output": str(path)},
    )


# Delete


async def plan_delete(payload: dict[str, Any], client: ProductboardClient) -> JobPlan:
    resource = payload.get("resource")
    config = RESOURCES.get(resource)
    if config is None or not config.deletable:
        raise JobError(f"Deletion is not supported for {resource}")

    delete_all = bool(payload.get("all"))
    if delete_all:
        ids = await list_record_ids(client, resource)
    elif payload.get("ids") is not None:
        ids = list(payload["ids"])
    else:
        ids, _ = ids_from_csv(payload.get("csv") or "", payload.get("column") or "pb_id")
    total = len(ids)

    return JobPlan(
        operation="delete",
        resource=resource,
        estimate=total,
        chunks=lambda size: _ranges(total, size, "delete-chunk"),
        # every record listed moments ago: a 404 means it is already gone
        params={"missing_ok": delete_all},
        inputs={"ids": ids},
        force_batch=bool(payload.get("batch")),
    )


async def run_delete_chunk(ctx: ChunkContext) -> ChunkResult:
    start, end = ctx.chunk.params["start"], ctx.chunk.params["end"]
    ids = (ctx.inputs.get("ids") or [])[start:end]
    result = await delete_records(
        ctx.client,
        ctx.job.resource,
        ids,
        missing_ok=bool(ctx.job.params.get("missing_ok")),
        stream=ctx.stream,
        percent_range=ctx.percent_range,
    )
    return ChunkResult(
        counts={
            "deleted": result.deleted,
            "skipped": result.skipped,
            "errors": result.errors,
            "warnings": result.skipped,
        },
        continuation={"start": start + result.processed} if result.stopped else None,
        stopped=result.stopped,
        outcomes=result.outcomes,
    )


HANDLERS = {
    "import-chunk": run_import_chunk,
    "export-chunk": run_export_chunk,
    "delete-chunk": run_delete_chunk,
}

PLANNERS = {
    "import": plan_import,
    "export": plan_export,
    "delete": plan_delete,
}


def create_scheduler(store: JobStore, client_factory: ClientFactory, **kwargs: Any) -> BatchScheduler:
    """BatchScheduler wired with the import, export and delete operations."""
    return BatchScheduler(store, client_factory, HANDLERS, PLANNERS, **kwargs)
