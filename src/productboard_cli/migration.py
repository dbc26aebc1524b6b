"""Workspace-to-workspace migration helpers."""

import logging
from typing import Any

from .api import ProductboardClient
from .config import DEFAULT_MIGRATION_FIELD, ENTITY_TYPES
from .exceptions import ProductboardError
from .pagination import paginate
from .tabular import generate_csv, parse_csv
from .validation import is_uuid

logger = logging.getLogger(__name__)


async def find_migration_field_id(
    client: ProductboardClient, field_name: str = DEFAULT_MIGRATION_FIELD
) -> str | None:
    """Find the ID of the custom text field holding original entity UUIDs.

    Returns None when the field is not configured or the lookup fails.
    """
    try:
        config = await client.get_entity_configuration("feature")
    except ProductboardError as e:
        logger.warning("Could not read entity configuration: %s", e.detail)
        return None

    fields = config.get("fields") or {}
    if isinstance(fields, dict):
        fields = list(fields.values())
    for field_def in fields:
        if field_def.get("name") == field_name and field_def.get("schema") == "TextFieldValue":
            return field_def.get("id")
    return None


async def build_migration_cache(
    client: ProductboardClient,
    field_name: str = DEFAULT_MIGRATION_FIELD,
    entity_types: list[str] | None = None,
) -> tuple[str | None, dict[str, str]]:
    """Map original entity UUIDs to entity IDs in this workspace.

    Reads the migration text field from every hierarchy entity.

    Returns:
        Tuple of (field_id, {original_uuid: entity_id}); the map is empty
        when the field does not exist.
    """
    field_id = await find_migration_field_id(client, field_name)
    cache: dict[str, str] = {}
    if not field_id:
        return None, cache

    for entity_type in entity_types or ENTITY_TYPES:
        paginator = paginate(
            client,
            "/v2/entities/search",
            style="cursor",
            search_body={"data": {"type": entity_type}},
        )
        async for page in paginator:
            for entity in page.items:
                original = (entity.get("fields") or {}).get(field_id)
                if isinstance(original, str) and is_uuid(original):
                    cache[original.strip()] = entity["id"]

    logger.info("Migration cache: %d entity mappings", len(cache))
    return field_id, cache


def migrate_prep(csv_text: str, source_origin: str) -> tuple[str, int]:
    """Prepare an export CSV for import into another workspace.

    Each row with a pb_id gets that ID moved into source_record_id (the
    stable deduplication key on re-import), source_origin set to the
    migration name, and pb_id cleared so the row is created fresh.

    Returns:
        Tuple of (csv_text, number of rows transformed)
    """
    source_origin = source_origin.strip()
    if not source_origin:
        raise ValueError("source_origin must not be empty")

    headers, rows, _ = parse_csv(csv_text)
    if not rows:
        return "", 0

    processed = 0
    transformed: list[dict[str, Any]] = []
    for row in rows:
        out = dict(row)
        pb_id = (out.get("pb_id") or "").strip()
        if pb_id:
            out["source_record_id"] = pb_id
            out["source_origin"] = source_origin
            out["pb_id"] = ""
            processed += 1
        transformed.append(out)

    out_headers = list(headers)
    if "source_record_id" not in out_headers:
        out_headers.append("source_record_id")
    if "source_origin" not in out_headers:
        index = out_headers.index("source_record_id")
        out_headers.insert(index, "source_origin")

    return generate_csv(transformed, out_headers), processed
