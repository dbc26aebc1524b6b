"""Bulk deletion of companies and notes."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .api import ProductboardClient
from .config import RESOURCES
from .exceptions import NotFoundError, ProductboardError
from .pagination import fetch_all_items
from .tabular import parse_csv
from .validation import is_uuid

if TYPE_CHECKING:
    from .stream import ProgressStream

logger = logging.getLogger(__name__)


@dataclass
class DeleteResult:
    """Counts for a deletion run."""

    total: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    stopped: bool = False
    outcomes: list[dict[str, Any]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.deleted + self.skipped + self.errors

    def summary(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "errors": self.errors,
            "stopped": self.stopped,
        }


def _deleter(client: ProductboardClient, resource: str) -> Callable[[str], Awaitable[None]]:
    config = RESOURCES.get(resource)
    if config is None or not config.deletable:
        raise ValueError(f"Deletion is not supported for {resource}")
    if resource == "companies":
        return client.delete_company
    return client.delete_note


def ids_from_csv(csv_text: str, column: str) -> tuple[list[str], list[int]]:
    """Collect UUIDs from one CSV column.

    Returns:
        Tuple of (unique ids in file order, row numbers with an invalid value)
    """
    _, rows, _ = parse_csv(csv_text)
    ids: list[str] = []
    invalid: list[int] = []
    for row_num, row in enumerate(rows, 1):
        value = (row.get(column) or "").strip()
        if not value:
            continue
        if not is_uuid(value):
            invalid.append(row_num)
        elif value not in ids:
            ids.append(value)
    return ids, invalid


async def list_record_ids(client: ProductboardClient, resource: str) -> list[str]:
    """Collect the IDs of every record of a deletable resource."""
    if resource == "companies":
        items = await fetch_all_items(client, "/companies", style="offset")
    elif resource == "notes":
        items = await fetch_all_items(client, "/v2/notes", style="cursor", send_limit=False)
    else:
        raise ValueError(f"Deletion is not supported for {resource}")
    return [item["id"] for item in items if item.get("id")]


async def delete_records(
    client: ProductboardClient,
    resource: str,
    ids: list[str],
    *,
    missing_ok: bool = False,
    stream: "ProgressStream | None" = None,
    percent_range: tuple[float, float] = (0.0, 100.0),
) -> DeleteResult:
    """Delete records one at a time.

    A 404 is a skip with a warning, or a successful delete when missing_ok
    is set (the record is already gone). The stream's cancellation flag is
    checked between deletions.
    """
    delete = _deleter(client, resource)
    label = "company" if resource == "companies" else "note"
    result = DeleteResult(total=len(ids))
    low, high = percent_range

    for index, record_id in enumerate(ids):
        if stream is not None and stream.cancelled:
            result.stopped = True
            logger.warning("Deletion cancelled after %d of %d", index, len(ids))
            break

        try:
            await delete(record_id)
        except NotFoundError:
            if missing_ok:
                result.deleted += 1
                result.outcomes.append({"id": record_id, "status": "deleted"})
            else:
                result.skipped += 1
                result.outcomes.append({"id": record_id, "status": "skipped"})
                if stream is not None:
                    stream.log("warn", f"{label.capitalize()} {record_id} not found - skipped")
        except ProductboardError as e:
            result.errors += 1
            result.outcomes.append({"id": record_id, "status": "failed", "error": e.detail})
            logger.error("Failed to delete %s %s: %s", label, record_id, e.detail)
            if stream is not None:
                stream.log("error", f"Failed to delete {record_id}: {e.detail}")
        else:
            result.deleted += 1
            result.outcomes.append({"id": record_id, "status": "deleted"})
            if stream is not None and not missing_ok:
                stream.log("success", f"Deleted {label} {record_id}")

        if stream is not None:
            done = index + 1
            stream.progress(f"Deleted {result.deleted} of {len(ids)}...", low + done / len(ids) * (high - low))

    return result
