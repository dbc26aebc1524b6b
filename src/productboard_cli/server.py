"""HTTP driver: JSON endpoints plus Server-Sent Events progress streams.

Credentials arrive per request in the x-pb-token / x-pb-eu headers and are
never stored; job state lives in the configured JobStore.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from . import __version__
from .api import ProductboardClient
from .config import DEFAULT_MIGRATION_FIELD, RESOURCES
from .exceptions import JobError, ProductboardError
from .export import export_resource, fetch_custom_fields
from .jobs import build_strategy, create_scheduler, resolve_mapping
from .migration import find_migration_field_id, migrate_prep
from .scheduler import BatchScheduler, JobStore, MemoryJobStore
from .stream import ProgressStream, sse_events
from .tabular import load_input_rows, parse_csv
from .validation import validate_parse_errors, validate_rows

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx buffering
}

ClientFactory = Callable[[str, bool], ProductboardClient]


class ImportRequest(BaseModel):
    csv: str
    mapping: dict[str, Any] | None = None
    options: dict[str, Any] = {}


class ExportRequest(BaseModel):
    created_from: str | None = None
    created_to: str | None = None


class DeleteByCsvRequest(BaseModel):
    csv: str
    column: str = "pb_id"


class MigratePrepRequest(BaseModel):
    csv: str
    source_origin: str


class DetectFieldRequest(BaseModel):
    field_name: str = DEFAULT_MIGRATION_FIELD


class JobStartRequest(BaseModel):
    operation: str
    resource: str
    batch: bool = False
    csv: str | None = None
    mapping: dict[str, Any] | None = None
    options: dict[str, Any] | None = None
    ids: list[str] | None = None
    column: str | None = None
    all: bool = False
    output_dir: str | None = None
    created_from: str | None = None
    created_to: str | None = None


def get_credentials(
    x_pb_token: str | None = Header(default=None),
    x_pb_eu: str | None = Header(default=None),
) -> tuple[str, bool]:
    if not x_pb_token:
        raise HTTPException(status_code=400, detail="Missing x-pb-token header")
    return x_pb_token, (x_pb_eu or "").lower() == "true"


def _check_resource(resource: str, operation: str) -> None:
    config = RESOURCES.get(resource)
    allowed = {
        "import": config is not None and config.importable,
        "delete": config is not None and config.deletable,
        "export": resource in ("companies", "notes"),
    }
    if not allowed.get(operation):
        raise HTTPException(status_code=404, detail=f"{operation.capitalize()} is not supported for {resource}")


def create_app(client_factory: ClientFactory | None = None, store: JobStore | None = None) -> FastAPI:
    """Build the application.

    Args:
        client_factory: (token, eu) -> unopened ProductboardClient
        store: Job state store (in-memory by default)
    """
    app = FastAPI(title="Productboard CLI", version=__version__)
    app.state.client_factory = client_factory or (lambda token, eu: ProductboardClient(token, eu))
    app.state.store = store or MemoryJobStore()
    app.state.tasks = set()

    def scheduler_for(credentials: tuple[str, bool]) -> BatchScheduler:
        token, eu = credentials
        return create_scheduler(app.state.store, lambda: app.state.client_factory(token, eu))

    def stream_response(work: Callable[[ProgressStream], Awaitable[dict[str, Any] | None]]) -> StreamingResponse:
        stream = ProgressStream()
        task = asyncio.create_task(stream.run(work))
        # keep a reference until the job ends; a disconnect only cancels cooperatively
        app.state.tasks.add(task)
        task.add_done_callback(app.state.tasks.discard)
        return StreamingResponse(sse_events(stream), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.exception_handler(ProductboardError)
    async def productboard_error_handler(request: Request, exc: ProductboardError) -> JSONResponse:
        status = exc.status_code if exc.status_code and 400 <= exc.status_code < 600 else 502
        return JSONResponse(status_code=status, content={"error": exc.detail})

    @app.exception_handler(JobError)
    async def job_error_handler(request: Request, exc: JobError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "version": __version__}

    @app.get("/api/fields")
    async def company_fields(credentials: tuple[str, bool] = Depends(get_credentials)) -> dict[str, Any]:
        """Company custom field definitions, for building column mappings."""
        async with app.state.client_factory(*credentials) as client:
            return {"fields": await fetch_custom_fields(client)}

    @app.post("/api/{resource}/import/preview")
    async def import_preview(resource: str, body: ImportRequest) -> dict[str, Any]:
        """Validate a file locally without calling the API."""
        _check_resource(resource, "import")
        headers, raw_rows, parse_errors = parse_csv(body.csv)
        if parse_errors:
            return validate_parse_errors(parse_errors).to_dict()
        mapping = resolve_mapping(resource, headers, body.mapping)
        strategy = build_strategy(resource, body.options, mapping)
        rows = load_input_rows(body.csv, mapping)
        return validate_rows(rows, strategy).to_dict()

    @app.post("/api/{resource}/import/run")
    async def import_run(
        resource: str, body: ImportRequest, credentials: tuple[str, bool] = Depends(get_credentials)
    ) -> StreamingResponse:
        _check_resource(resource, "import")
        payload = {"operation": "import", "resource": resource, **body.model_dump()}
        scheduler = scheduler_for(credentials)
        return stream_response(lambda stream: scheduler.start_job(payload, stream))

    @app.post("/api/{resource}/export")
    async def export_run(
        resource: str, body: ExportRequest, credentials: tuple[str, bool] = Depends(get_credentials)
    ) -> StreamingResponse:
        _check_resource(resource, "export")

        async def work(stream: ProgressStream) -> dict[str, Any]:
            async with app.state.client_factory(*credentials) as client:
                result = await export_resource(
                    client, resource, stream,
                    created_from=body.created_from, created_to=body.created_to,
                )
            stream.progress("Done!", 100)
            return {"csv": result.to_csv(), "filename": result.filename, "count": result.count}

        return stream_response(work)

    @app.post("/api/{resource}/delete/by-csv")
    async def delete_by_csv(
        resource: str, body: DeleteByCsvRequest, credentials: tuple[str, bool] = Depends(get_credentials)
    ) -> StreamingResponse:
        _check_resource(resource, "delete")
        payload = {"operation": "delete", "resource": resource, "csv": body.csv, "column": body.column}
        scheduler = scheduler_for(credentials)
        return stream_response(lambda stream: scheduler.start_job(payload, stream))

    @app.post("/api/{resource}/delete/all")
    async def delete_all(
        resource: str, credentials: tuple[str, bool] = Depends(get_credentials)
    ) -> StreamingResponse:
        _check_resource(resource, "delete")
        payload = {"operation": "delete", "resource": resource, "all": True}
        scheduler = scheduler_for(credentials)
        return stream_response(lambda stream: scheduler.start_job(payload, stream))

    @app.post("/api/notes/migrate-prep")
    async def notes_migrate_prep(body: MigratePrepRequest) -> dict[str, Any]:
        if not body.source_origin.strip():
            raise HTTPException(status_code=400, detail="Missing source_origin")
        csv_text, count = migrate_prep(body.csv, body.source_origin)
        return {"csv": csv_text, "count": count}

    @app.post("/api/notes/detect-migration-field")
    async def detect_migration_field(
        body: DetectFieldRequest, credentials: tuple[str, bool] = Depends(get_credentials)
    ) -> dict[str, Any]:
        field_name = body.field_name.strip()
        if not field_name:
            raise HTTPException(status_code=400, detail="Missing field_name")
        async with app.state.client_factory(*credentials) as client:
            field_id = await find_migration_field_id(client, field_name)
        return {"found": field_id is not None, "fieldName": field_name}

    @app.post("/api/jobs/start")
    async def jobs_start(
        body: JobStartRequest, credentials: tuple[str, bool] = Depends(get_credentials)
    ) -> dict[str, Any]:
        """Start a job; small jobs run immediately and return their summary."""
        payload = body.model_dump(exclude_none=True)
        return await scheduler_for(credentials).start_job(payload)

    @app.post("/api/jobs/next")
    async def jobs_next(credentials: tuple[str, bool] = Depends(get_credentials)) -> dict[str, Any]:
        return await scheduler_for(credentials).process_next_job()

    @app.post("/api/jobs/cancel")
    async def jobs_cancel(credentials: tuple[str, bool] = Depends(get_credentials)) -> dict[str, Any]:
        return scheduler_for(credentials).cancel_job()

    @app.get("/api/jobs/status")
    async def jobs_status(credentials: tuple[str, bool] = Depends(get_credentials)) -> dict[str, Any]:
        status = scheduler_for(credentials).status()
        return {"active": status is not None, "job": status}

    return app
