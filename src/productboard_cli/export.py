"""Export companies and notes from Productboard to CSV."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any

from .api import ProductboardClient
from .config import ENRICHMENT_BATCH, ENRICHMENT_PAUSE
from .exceptions import ProductboardError
from .pagination import fetch_all_items
from .tabular import generate_csv
from .validation import is_truthy

if TYPE_CHECKING:
    from .stream import ProgressStream

logger = logging.getLogger(__name__)

# (row key, CSV header) for company columns before custom fields
COMPANY_BASE_COLUMNS = [
    ("id", "PB Company ID"),
    ("name", "Company Name"),
    ("domain", "Domain"),
    ("description", "Description"),
    ("sourceOrigin", "Source Origin"),
    ("sourceRecordId", "Source Record ID"),
]

NOTE_FIELDS = [
    "pb_id", "type", "title", "content", "display_url",
    "user_email", "company_domain", "owner_email", "creator_email",
    "tags", "source_origin", "source_record_id", "archived", "processed",
    "created_at", "updated_at", "linked_entities",
]


@dataclass
class ExportResult:
    """Rows ready for CSV serialization."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    fields: list[str] = field(default_factory=list)
    headers: list[str] = field(default_factory=list)
    filename: str = "export.csv"

    @property
    def count(self) -> int:
        return len(self.rows)

    def to_csv(self) -> str:
        if not self.rows:
            return ""
        return generate_csv(self.rows, self.fields, self.headers)


def _progress(stream: "ProgressStream | None", message: str, percent: float) -> None:
    if stream is not None:
        stream.progress(message, percent)


def export_filename(resource: str, created_from: str | None = None, created_to: str | None = None) -> str:
    """Descriptive file name reflecting optional created-at bounds."""
    today = date.today().isoformat()
    if resource != "notes":
        return f"{resource}-{today}.csv"
    if created_from and created_to:
        return f"notes-export-{created_from[:10]}-to-{created_to[:10]}.csv"
    if created_from:
        return f"notes-export-from-{created_from[:10]}.csv"
    if created_to:
        return f"notes-export-to-{created_to[:10]}.csv"
    return f"notes-export-{today}.csv"


# Companies


async def fetch_custom_fields(client: ProductboardClient) -> list[dict[str, str]]:
    """Company custom field definitions as {id, name, type} ("text" or "number")."""
    definitions = await fetch_all_items(client, "/companies/custom-fields", style="offset")
    return [
        {"id": d["id"], "name": d.get("name") or d["id"], "type": d.get("type") or "text"}
        for d in definitions
        if d.get("id")
    ]


async def fetch_custom_field_definitions(client: ProductboardClient) -> dict[str, str]:
    """Return {field_id: field_name} for company custom fields, in API order."""
    return {f["id"]: f["name"] for f in await fetch_custom_fields(client)}


def company_columns(custom_fields: dict[str, str]) -> tuple[list[str], list[str]]:
    """Return (row keys, CSV headers) for a company export."""
    keys = [key for key, _ in COMPANY_BASE_COLUMNS]
    headers = [label for _, label in COMPANY_BASE_COLUMNS]
    for field_id, name in custom_fields.items():
        keys.append(f"custom__{field_id}")
        headers.append(name)
    return keys, headers


async def fetch_custom_field_values(
    client: ProductboardClient,
    company_ids: list[str],
    field_ids: list[str],
    *,
    batch_size: int = ENRICHMENT_BATCH,
    pause: float = ENRICHMENT_PAUSE,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_progress: Callable[[int, int], None] | None = None,
) -> dict[str, dict[str, Any]]:
    """Fetch every (company, field) value with bounded concurrency.

    Requests go out batch_size at a time with a fixed pause between
    batches. Unset values are absent from the result; other failures are
    logged and treated as unset.
    """
    requests = [(company_id, field_id) for company_id in company_ids for field_id in field_ids]
    values: dict[str, dict[str, Any]] = {}

    async def fetch_one(company_id: str, field_id: str) -> None:
        try:
            value = await client.get_company_custom_value(company_id, field_id)
        except ProductboardError as e:
            logger.warning("Custom field value fetch failed: company %s, field %s: %s", company_id, field_id, e.detail)
            return
        if value is not None:
            values.setdefault(company_id, {})[field_id] = value

    for start in range(0, len(requests), batch_size):
        batch = requests[start:start + batch_size]
        await asyncio.gather(*(fetch_one(c, f) for c, f in batch))
        done = start + len(batch)
        if on_progress:
            on_progress(done, len(requests))
        if done < len(requests):
            await sleep(pause)

    return values


def build_company_row(
    company: dict[str, Any], custom_fields: dict[str, str], values: dict[str, Any]
) -> dict[str, Any]:
    source = company.get("source") or {}
    row: dict[str, Any] = {
        "id": company.get("id") or "",
        "name": company.get("name") or "",
        "domain": company.get("domain") or "",
        "description": company.get("description") or "",
        "sourceOrigin": source.get("origin") or company.get("sourceOrigin") or "",
        "sourceRecordId": source.get("record_id") or company.get("sourceRecordId") or "",
    }
    for field_id in custom_fields:
        value = values.get(field_id)
        row[f"custom__{field_id}"] = "" if value is None else value
    return row


async def build_company_rows(
    client: ProductboardClient,
    companies: list[dict[str, Any]],
    custom_fields: dict[str, str],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_progress: Callable[[int, int], None] | None = None,
) -> list[dict[str, Any]]:
    values: dict[str, dict[str, Any]] = {}
    if custom_fields:
        values = await fetch_custom_field_values(
            client,
            [c["id"] for c in companies if c.get("id")],
            list(custom_fields),
            sleep=sleep,
            on_progress=on_progress,
        )
    return [build_company_row(c, custom_fields, values.get(c.get("id"), {})) for c in companies]


async def export_companies(
    client: ProductboardClient,
    stream: "ProgressStream | None" = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ExportResult:
    """Export all companies with their custom field values."""
    _progress(stream, "Fetching custom field definitions...", 5)
    custom_fields = await fetch_custom_field_definitions(client)
    _progress(stream, f"Found {len(custom_fields)} custom fields", 10)

    _progress(stream, "Fetching companies...", 15)
    companies = await fetch_all_items(client, "/companies", style="offset")
    keys, headers = company_columns(custom_fields)
    result = ExportResult(fields=keys, headers=headers, filename=export_filename("companies"))
    if not companies:
        return result

    def on_progress(done: int, total: int) -> None:
        _progress(stream, f"Custom fields: {done}/{total} values fetched...", min(48 + done / total * 40, 88))

    _progress(stream, f"Fetching custom field values for {len(companies)} companies...", 48)
    result.rows = await build_company_rows(client, companies, custom_fields, sleep, on_progress)
    _progress(stream, "Building CSV...", 90)
    return result


# Notes


async def build_user_map(client: ProductboardClient) -> dict[str, str]:
    """Map user ID to email."""
    users = await fetch_all_items(client, "/users", style="offset")
    return {u["id"]: u["email"] for u in users if u.get("id") and u.get("email")}


async def build_company_map(client: ProductboardClient) -> dict[str, str]:
    """Map company ID to domain."""
    companies = await fetch_all_items(client, "/companies", style="offset")
    return {c["id"]: c["domain"] for c in companies if c.get("id") and c.get("domain")}


async def build_source_map(client: ProductboardClient) -> dict[str, dict[str, Any]]:
    """Map note ID to its v1 source (origin, record_id).

    The v2 listing does not always carry the source, so the v1 listing
    fills the gaps.
    """
    notes = await fetch_all_items(client, "/notes", style="cursor", cursor_source="body")
    return {
        n["id"]: {
            "origin": (n.get("source") or {}).get("origin"),
            "record_id": (n.get("source") or {}).get("record_id"),
        }
        for n in notes
        if n.get("id")
    }


async def build_note_lookups(
    client: ProductboardClient, stream: "ProgressStream | None" = None
) -> dict[str, dict[str, Any]]:
    """Build the user, company and source maps used by build_note_row()."""
    _progress(stream, "Building user cache...", 40)
    users = await build_user_map(client)
    _progress(stream, f"User cache: {len(users)} users. Building company cache...", 50)
    companies = await build_company_map(client)
    _progress(stream, f"Company cache: {len(companies)} companies. Enriching source data from v1...", 60)
    try:
        sources = await build_source_map(client)
    except ProductboardError as e:
        logger.warning("v1 source enrichment failed: %s", e.detail)
        if stream is not None:
            stream.log("warn", "v1 source enrichment failed, source fields may be incomplete", e.detail)
        sources = {}
    return {"users": users, "companies": companies, "sources": sources}


def note_filters(created_from: str | None = None, created_to: str | None = None) -> dict[str, str]:
    params = {}
    if created_from:
        params["createdFrom"] = created_from
    if created_to:
        params["createdTo"] = created_to
    return params


def build_note_row(note: dict[str, Any], lookups: dict[str, dict[str, Any]]) -> dict[str, Any]:
    """Flatten a v2 note into a CSV row."""
    f = note.get("fields") or {}
    relationships = (note.get("relationships") or {}).get("data")
    relationships = relationships if isinstance(relationships, list) else []

    user_email = ""
    company_domain = ""
    customer = next((r for r in relationships if r.get("type") == "customer"), None)
    if customer and customer.get("target"):
        target = customer["target"]
        if target.get("type") == "user":
            user_email = lookups.get("users", {}).get(target.get("id"), "")
        elif target.get("type") == "company":
            company_domain = lookups.get("companies", {}).get(target.get("id"), "")

    linked = ",".join(
        r["target"]["id"]
        for r in relationships
        if r.get("type") == "link" and (r.get("target") or {}).get("id")
    )

    source = f.get("source") or {}
    source_origin = source.get("origin") or ""
    source_record_id = source.get("id") or source.get("recordId") or ""
    if not source_origin:
        v1 = lookups.get("sources", {}).get(note.get("id"))
        if v1:
            source_origin = v1.get("origin") or ""
            source_record_id = source_record_id or v1.get("record_id") or ""

    content = f.get("content") or ""
    if not isinstance(content, str):
        # conversation and opportunity notes carry structured content
        content = json.dumps(content)

    return {
        "pb_id": note.get("id") or "",
        "type": note.get("type") or "simple",
        "title": f.get("name") or "",
        "content": content,
        "display_url": f.get("displayUrl") or f.get("display_url") or "",
        "user_email": user_email,
        "company_domain": company_domain,
        "owner_email": (f.get("owner") or {}).get("email") or "",
        "creator_email": (f.get("creator") or {}).get("email") or "",
        "tags": ", ".join(t.get("name", "") for t in f.get("tags") or []),
        "source_origin": source_origin,
        "source_record_id": source_record_id,
        "archived": "TRUE" if is_truthy(f.get("archived", False)) else "FALSE",
        "processed": "TRUE" if is_truthy(f.get("processed", False)) else "FALSE",
        "created_at": note.get("createdAt") or "",
        "updated_at": note.get("updatedAt") or "",
        "linked_entities": linked,
    }


async def export_notes(
    client: ProductboardClient,
    created_from: str | None = None,
    created_to: str | None = None,
    stream: "ProgressStream | None" = None,
) -> ExportResult:
    """Export notes, optionally bounded by creation date."""
    suffix = " (filtered by date)" if created_from or created_to else ""
    _progress(stream, f"Fetching notes from Productboard{suffix}...", 5)
    notes = await fetch_all_items(
        client, "/v2/notes", style="cursor", send_limit=False,
        params=note_filters(created_from, created_to),
    )
    result = ExportResult(
        fields=list(NOTE_FIELDS),
        headers=list(NOTE_FIELDS),
        filename=export_filename("notes", created_from, created_to),
    )
    if not notes:
        return result

    lookups = await build_note_lookups(client, stream)
    _progress(stream, "Building CSV...", 85)
    result.rows = [build_note_row(note, lookups) for note in notes]
    return result


async def export_resource(
    client: ProductboardClient,
    resource: str,
    stream: "ProgressStream | None" = None,
    **filters: Any,
) -> ExportResult:
    if resource == "companies":
        return await export_companies(client, stream)
    if resource == "notes":
        return await export_notes(client, filters.get("created_from"), filters.get("created_to"), stream)
    raise ValueError(f"Export is not supported for {resource}")
