"""Per-resource payload and matching rules.

Each strategy knows how one resource type is validated, matched, written
and backfilled. The reconciliation engine only talks to this interface.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from .api import ProductboardClient
from .config import (
    DEFAULT_MIGRATION_FIELD,
    ENTITY_TYPES,
    MAX_TEXT_FIELD_LENGTH,
    NOTE_TYPES,
    RESOURCES,
    ResourceConfig,
)
from .exceptions import ConflictError, ProductboardError, ValidationError
from .migration import build_migration_cache
from .models import CustomFieldMapping, InputRow, KeyCache, RowIssue
from .pagination import paginate
from .validation import (
    DOMAIN_RE,
    EMAIL_RE,
    find_unsupported_html_tags,
    is_truthy,
    is_uuid,
    normalize_url,
    split_list,
)

logger = logging.getLogger(__name__)

OWNER_REJECTION_MARKERS = ("owner", "user does not exist")


def _set_ops(fields: dict[str, Any]) -> list[dict[str, Any]]:
    return [{"op": "set", "path": path, "value": value} for path, value in fields.items()]


class ResourceStrategy(ABC):
    """Validation, payload and write rules for one resource type."""

    resource: ResourceConfig
    field_names: list[str] = []
    labels: dict[str, str] = {}
    unique_secondary_key = True

    @property
    def name(self) -> str:
        return self.resource.name

    @property
    def primary_key_field(self) -> str:
        return self.resource.primary_key_field

    @property
    def secondary_key_field(self) -> str | None:
        return self.resource.secondary_key_field

    def label(self, row: InputRow) -> str:
        return f"row {row.row_num}"

    def prepare_row(self, row: InputRow, cache: KeyCache) -> InputRow:
        """Fill derived values before matching. Default: unchanged."""
        return row

    @abstractmethod
    def validate_row(self, row: InputRow) -> tuple[list[RowIssue], list[RowIssue]]:
        """Return (errors, warnings) for one row."""

    def primary_key(self, row: InputRow) -> str | None:
        value = row.get(self.primary_key_field)
        return value if is_uuid(value) else None

    def secondary_key(self, row: InputRow) -> str | None:
        return row.get(self.secondary_key_field) or None

    async def prepare(self, client: ProductboardClient, cache: KeyCache) -> None:
        """Build shared lookup state once per job. Default: nothing."""

    @abstractmethod
    async def find_by_secondary_key(
        self, client: ProductboardClient, key: str, cache: KeyCache
    ) -> str | None:
        """Resolve a secondary key to a remote ID, or None."""

    @abstractmethod
    async def fetch(self, client: ProductboardClient, remote_id: str) -> dict[str, Any] | None:
        """Fetch a record by remote ID, or None when it does not exist."""

    async def exists(self, client: ProductboardClient, remote_id: str, cache: KeyCache) -> bool:
        if remote_id in cache.confirmed:
            return True
        if await self.fetch(client, remote_id) is None:
            return False
        cache.confirmed.add(remote_id)
        return True

    @abstractmethod
    def build_create_payload(self, row: InputRow) -> dict[str, Any]:
        """Sparse create body: only non-empty mapped values."""

    @abstractmethod
    def build_update_payload(self, row: InputRow) -> dict[str, Any]:
        """Sparse update body: omitted fields are left untouched remotely."""

    @abstractmethod
    async def create(self, client: ProductboardClient, payload: dict[str, Any]) -> str:
        """Create the record and return its remote ID."""

    @abstractmethod
    async def update(self, client: ProductboardClient, remote_id: str, payload: dict[str, Any]) -> None:
        """Update the record."""

    def unsettable_field(self, error: ProductboardError, payload: dict[str, Any]) -> str | None:
        """Name the payload field a rejection blames, if it can be stripped.

        An owner that does not resolve to a workspace member is rejected by
        the primary write path; it can be retried later through backfill.
        """
        if "owner" not in self.writable_values(payload):
            return None
        status = error.status_code or 0
        if not 400 <= status < 500 or status == 429:
            return None
        message = f"{error.detail} {error}".lower()
        if any(marker in message for marker in OWNER_REJECTION_MARKERS):
            return "owner"
        return None

    def writable_values(self, payload: dict[str, Any]) -> dict[str, Any]:
        """The dict holding field values inside a payload."""
        return payload

    def strip_field(self, payload: dict[str, Any], field_name: str) -> dict[str, Any]:
        return {k: v for k, v in payload.items() if k != field_name}

    def backfill_fields(
        self, row: InputRow, stripped: list[str], cache: KeyCache
    ) -> tuple[dict[str, Any], list[str]]:
        """Fields the primary write could not carry, plus warnings. Default: none."""
        return {}, []

    async def backfill(self, client: ProductboardClient, remote_id: str, fields: dict[str, Any]) -> list[str]:
        """Write backfill fields through the newer API. Returns warnings."""
        return []

    def backfill_fallback(self, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Reduced field set to try when a backfill is rejected. Default: none."""
        return None

    async def after_write(self, client: ProductboardClient, remote_id: str, row: InputRow) -> list[str]:
        """Secondary writes that belong to the primary write path. Returns warnings."""
        return []


class CompanyStrategy(ResourceStrategy):
    """Companies: v1 writes, matched by domain then by UUID."""

    resource = RESOURCES["companies"]
    field_names = ["pb_id", "name", "domain", "description", "source_origin", "source_record_id"]
    labels = {
        "pb_id": "PB Company ID",
        "name": "Company Name",
        "domain": "Domain",
        "description": "Description",
        "source_origin": "Source Origin",
        "source_record_id": "Source Record ID",
    }

    def __init__(
        self,
        custom_fields: tuple[CustomFieldMapping, ...] | list[CustomFieldMapping] = (),
        clear_empty_fields: bool = False,
    ):
        self.custom_fields = tuple(custom_fields)
        self.clear_empty_fields = clear_empty_fields

    def label(self, row: InputRow) -> str:
        return row.get("name") or row.get("domain") or f"row {row.row_num}"

    def secondary_key(self, row: InputRow) -> str | None:
        return row.get("domain").lower() or None

    def validate_row(self, row: InputRow) -> tuple[list[RowIssue], list[RowIssue]]:
        errors: list[RowIssue] = []
        n = row.row_num
        pb_id = row.get("pb_id")

        if not row.get("name") and not is_uuid(pb_id):
            errors.append(RowIssue(n, "name", "Company name is required"))
        if not row.get("domain") and not is_uuid(pb_id):
            errors.append(RowIssue(n, "domain", "Domain is required when no UUID is provided"))
        if pb_id and not is_uuid(pb_id):
            errors.append(RowIssue(n, "pb_id", f"Invalid UUID format: '{pb_id}'"))

        description = row.get("description")
        if description:
            bad_tags = find_unsupported_html_tags(description)
            if bad_tags:
                tags = ">, <".join(bad_tags)
                errors.append(
                    RowIssue(n, "description", f"Description contains unsupported HTML tag(s): <{tags}>")
                )

        for custom in self.custom_fields:
            value = row.get(custom.key)
            if not value:
                continue
            if custom.field_type == "number":
                try:
                    float(value)
                except ValueError:
                    errors.append(
                        RowIssue(n, custom.column, f"'{custom.column}' must be a number (got '{value}')")
                    )
            elif len(value) > MAX_TEXT_FIELD_LENGTH:
                errors.append(
                    RowIssue(n, custom.column, f"'{custom.column}' exceeds {MAX_TEXT_FIELD_LENGTH} characters")
                )

        return errors, []

    async def prepare(self, client: ProductboardClient, cache: KeyCache) -> None:
        """Index every existing company by lower-cased domain."""
        if cache.indexed:
            return
        async for page in paginate(client, self.resource.endpoint, style="offset"):
            for company in page.items:
                domain = company.get("domain")
                if domain and company.get("id"):
                    cache.secondary[str(domain).lower()] = company["id"]
        cache.indexed = True
        logger.info("Domain cache built (%d companies)", len(cache.secondary))

    async def find_by_secondary_key(
        self, client: ProductboardClient, key: str, cache: KeyCache
    ) -> str | None:
        return cache.secondary.get(key.lower())

    async def fetch(self, client: ProductboardClient, remote_id: str) -> dict[str, Any] | None:
        return await client.get_company(remote_id)

    def build_create_payload(self, row: InputRow) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": row.get("name"), "domain": row.get("domain").lower()}
        if row.get("description"):
            payload["description"] = row.get("description")

        origin = row.get("source_origin")
        record_id = row.get("source_record_id")
        if origin or record_id:
            payload["source"] = {}
            if origin:
                payload["source"]["origin"] = origin
            if record_id:
                payload["source"]["record_id"] = record_id
        return payload

    def build_update_payload(self, row: InputRow) -> dict[str, Any]:
        # domain and source are immutable after creation
        payload: dict[str, Any] = {}
        if row.get("name"):
            payload["name"] = row.get("name")
        if row.get("description"):
            payload["description"] = row.get("description")
        return payload

    async def create(self, client: ProductboardClient, payload: dict[str, Any]) -> str:
        company = await client.create_company(payload)
        company_id = company.get("id")
        if not company_id:
            raise ProductboardError("API did not return a company ID", details=company)
        return company_id

    async def update(self, client: ProductboardClient, remote_id: str, payload: dict[str, Any]) -> None:
        if payload:
            await client.update_company(remote_id, payload)

    async def after_write(self, client: ProductboardClient, remote_id: str, row: InputRow) -> list[str]:
        """Set mapped custom field values; clear empty ones when asked to."""
        for custom in self.custom_fields:
            raw = row.get(custom.key)
            if raw:
                value: Any = raw
                if custom.field_type == "number":
                    number = float(raw)
                    value = int(number) if number.is_integer() else number
                await client.set_company_custom_value(remote_id, custom.field_id, custom.field_type, value)
            elif self.clear_empty_fields:
                await client.delete_company_custom_value(remote_id, custom.field_id)
        return []


class NoteStrategy(ResourceStrategy):
    """Notes: v1 create/update, v2 backfill for status, creator, owner and links."""

    resource = RESOURCES["notes"]
    field_names = [
        "pb_id", "type", "title", "content", "display_url",
        "user_email", "company_domain", "owner_email", "creator_email",
        "tags", "source_origin", "source_record_id", "archived", "processed",
        "linked_entities",
    ]
    unique_secondary_key = False

    def __init__(self, migration_mode: bool = False, migration_field: str = DEFAULT_MIGRATION_FIELD):
        self.migration_mode = migration_mode
        self.migration_field = migration_field

    def label(self, row: InputRow) -> str:
        return row.get("title") or f"row {row.row_num}"

    def prepare_row(self, row: InputRow, cache: KeyCache) -> InputRow:
        """Number rows that have a source origin but no source record ID."""
        origin = row.get("source_origin")
        if origin and not row.get("source_record_id"):
            count = cache.source_counters.get(origin, 0) + 1
            cache.source_counters[origin] = count
            return row.with_value("source_record_id", f"{origin}-{count}")
        return row

    def validate_row(self, row: InputRow) -> tuple[list[RowIssue], list[RowIssue]]:
        errors: list[RowIssue] = []
        warnings: list[RowIssue] = []
        n = row.row_num

        if not row.get("title"):
            errors.append(RowIssue(n, "title", "Title is required"))

        pb_id = row.get("pb_id")
        if pb_id and not is_uuid(pb_id):
            errors.append(RowIssue(n, "pb_id", "pb_id must be a valid UUID"))

        for field_name in ("user_email", "owner_email", "creator_email"):
            value = row.get(field_name)
            if value and not EMAIL_RE.match(value):
                errors.append(RowIssue(n, field_name, "Invalid email format"))

        domain = row.get("company_domain")
        if domain and not DOMAIN_RE.match(domain):
            errors.append(RowIssue(n, "company_domain", "Invalid domain format"))

        note_type = row.get("type")
        if note_type and note_type not in NOTE_TYPES:
            errors.append(RowIssue(n, "type", 'Type must be "simple", "conversation", or "opportunity"'))

        origin = row.get("source_origin")
        record_id = row.get("source_record_id")
        if record_id and not origin:
            errors.append(RowIssue(n, "source_record_id", "source_record_id requires source_origin"))
        if origin and not record_id:
            warnings.append(
                RowIssue(n, "source_origin", "source_record_id missing - will be auto-generated on import")
            )

        linked = row.get("linked_entities")
        if linked:
            bad = [u for u in split_list(linked) if not is_uuid(u)]
            if bad:
                errors.append(
                    RowIssue(n, "linked_entities", f"Invalid UUID(s) in linked_entities: {', '.join(bad)}")
                )

        if row.get("user_email") and domain:
            warnings.append(
                RowIssue(n, "user_email", "Both user_email and company_domain provided - user_email takes priority")
            )

        return errors, warnings

    async def prepare(self, client: ProductboardClient, cache: KeyCache) -> None:
        if not self.migration_mode or "migration" in cache.lookups:
            return
        field_id, mapping = await build_migration_cache(client, self.migration_field)
        cache.lookups["migration"] = mapping
        cache.lookups["migration_field"] = {"id": field_id}

    async def find_by_secondary_key(
        self, client: ProductboardClient, key: str, cache: KeyCache
    ) -> str | None:
        if key in cache.secondary:
            return cache.secondary[key]
        for note in await client.find_notes_by_source(key):
            source = (note.get("fields") or {}).get("source") or {}
            found = source.get("recordId") or source.get("id") or source.get("record_id")
            if found in (None, key) and note.get("id"):
                cache.secondary[key] = note["id"]
                return note["id"]
        return None

    async def fetch(self, client: ProductboardClient, remote_id: str) -> dict[str, Any] | None:
        return await client.get_note(remote_id)

    def _payload(self, row: InputRow, is_create: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if row.get("title"):
            payload["title"] = row.get("title")
        if row.get("content"):
            payload["content"] = row.get("content")
        display_url = normalize_url(row.get("display_url"))
        if display_url:
            payload["display_url"] = display_url

        # Customer: user takes priority over company
        if row.get("user_email"):
            payload["user"] = {"email": row.get("user_email")}
        elif row.get("company_domain"):
            payload["company"] = {"domain": row.get("company_domain")}

        if row.get("owner_email"):
            payload["owner"] = {"email": row.get("owner_email")}

        tags = split_list(row.get("tags"))
        if tags:
            payload["tags"] = tags

        # source is immutable - only set on create
        origin = row.get("source_origin")
        record_id = row.get("source_record_id")
        if is_create and origin and record_id:
            payload["source"] = {"origin": origin, "record_id": record_id}

        return payload

    def build_create_payload(self, row: InputRow) -> dict[str, Any]:
        return self._payload(row, is_create=True)

    def build_update_payload(self, row: InputRow) -> dict[str, Any]:
        return self._payload(row, is_create=False)

    async def create(self, client: ProductboardClient, payload: dict[str, Any]) -> str:
        return await client.create_note(payload)

    async def update(self, client: ProductboardClient, remote_id: str, payload: dict[str, Any]) -> None:
        await client.update_note(remote_id, payload)

    def backfill_fields(
        self, row: InputRow, stripped: list[str], cache: KeyCache
    ) -> tuple[dict[str, Any], list[str]]:
        fields: dict[str, Any] = {}
        warnings: list[str] = []

        for status_field in ("archived", "processed"):
            value = row.get(status_field)
            if value != "":
                fields[status_field] = is_truthy(value)
        if row.get("creator_email"):
            fields["creator"] = {"email": row.get("creator_email")}
        if "owner" in stripped and row.get("owner_email"):
            fields["owner"] = {"email": row.get("owner_email")}

        links: list[str] = []
        migration = cache.lookups.get("migration") if self.migration_mode else None
        for original in (u for u in split_list(row.get("linked_entities")) if is_uuid(u)):
            target = migration.get(original) if migration is not None else original
            if not target:
                warnings.append(f"Entity {original} not found in migration cache - skipped")
                continue
            links.append(target)
        if links:
            fields["links"] = links

        return fields, warnings

    async def backfill(self, client: ProductboardClient, remote_id: str, fields: dict[str, Any]) -> list[str]:
        warnings: list[str] = []
        ops = _set_ops({k: v for k, v in fields.items() if k != "links"})
        if ops:
            await client.patch_note_v2(remote_id, ops)

        for entity_id in fields.get("links") or []:
            try:
                await client.link_note(remote_id, entity_id)
            except ConflictError:
                continue
            except ValidationError as e:
                if "already" in f"{e.detail} {e}".lower():
                    continue
                warnings.append(f"Failed to link entity {entity_id}: {e.detail}")
        return warnings

    def backfill_fallback(self, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Status-only retry when creator/owner caused the rejection."""
        if "creator" not in fields and "owner" not in fields:
            return None
        status_only = {k: v for k, v in fields.items() if k in ("archived", "processed", "links")}
        return status_only or None


class EntityStrategy(ResourceStrategy):
    """Hierarchy entities (features, components, products) through v2."""

    resource = RESOURCES["entities"]
    field_names = ["pb_id", "type", "name", "description", "owner_email", "original_uuid"]

    def __init__(self, migration_field: str = DEFAULT_MIGRATION_FIELD, default_type: str = "feature"):
        self.migration_field = migration_field
        self.default_type = default_type

    def label(self, row: InputRow) -> str:
        return row.get("name") or f"row {row.row_num}"

    def secondary_key(self, row: InputRow) -> str | None:
        value = row.get("original_uuid")
        return value.lower() if is_uuid(value) else None

    def validate_row(self, row: InputRow) -> tuple[list[RowIssue], list[RowIssue]]:
        errors: list[RowIssue] = []
        warnings: list[RowIssue] = []
        n = row.row_num

        pb_id = row.get("pb_id")
        if pb_id and not is_uuid(pb_id):
            errors.append(RowIssue(n, "pb_id", "pb_id must be a valid UUID"))
        if not row.get("name") and not is_uuid(pb_id):
            errors.append(RowIssue(n, "name", "Name is required"))

        entity_type = row.get("type")
        if entity_type and entity_type not in ENTITY_TYPES:
            errors.append(RowIssue(n, "type", f"Type must be one of: {', '.join(ENTITY_TYPES)}"))

        owner = row.get("owner_email")
        if owner and not EMAIL_RE.match(owner):
            errors.append(RowIssue(n, "owner_email", "Invalid email format"))

        original = row.get("original_uuid")
        if original and not is_uuid(original):
            errors.append(RowIssue(n, "original_uuid", "original_uuid must be a valid UUID"))

        description = row.get("description")
        if description:
            bad_tags = find_unsupported_html_tags(description)
            if bad_tags:
                tags = ">, <".join(bad_tags)
                warnings.append(
                    RowIssue(n, "description", f"Description contains unsupported HTML tag(s): <{tags}>")
                )

        return errors, warnings

    async def prepare(self, client: ProductboardClient, cache: KeyCache) -> None:
        """Index existing entities by the original UUID stored in the migration field."""
        if cache.indexed:
            return
        field_id, mapping = await build_migration_cache(client, self.migration_field)
        for original, entity_id in mapping.items():
            cache.secondary[original.lower()] = entity_id
        cache.lookups["migration_field"] = {"id": field_id}
        cache.indexed = True

    async def find_by_secondary_key(
        self, client: ProductboardClient, key: str, cache: KeyCache
    ) -> str | None:
        return cache.secondary.get(key.lower())

    async def fetch(self, client: ProductboardClient, remote_id: str) -> dict[str, Any] | None:
        return await client.get_entity(remote_id)

    def _fields(self, row: InputRow) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if row.get("name"):
            fields["name"] = row.get("name")
        if row.get("description"):
            fields["description"] = row.get("description")
        if row.get("owner_email"):
            fields["owner"] = {"email": row.get("owner_email")}
        return fields

    def build_create_payload(self, row: InputRow) -> dict[str, Any]:
        return {"type": row.get("type") or self.default_type, "fields": self._fields(row)}

    def build_update_payload(self, row: InputRow) -> dict[str, Any]:
        return {"fields": self._fields(row)}

    def writable_values(self, payload: dict[str, Any]) -> dict[str, Any]:
        return payload.get("fields") or {}

    def strip_field(self, payload: dict[str, Any], field_name: str) -> dict[str, Any]:
        fields = {k: v for k, v in (payload.get("fields") or {}).items() if k != field_name}
        return {**payload, "fields": fields}

    async def create(self, client: ProductboardClient, payload: dict[str, Any]) -> str:
        return await client.create_entity(payload["type"], payload["fields"])

    async def update(self, client: ProductboardClient, remote_id: str, payload: dict[str, Any]) -> None:
        if payload.get("fields"):
            await client.update_entity(remote_id, payload["fields"])

    def backfill_fields(
        self, row: InputRow, stripped: list[str], cache: KeyCache
    ) -> tuple[dict[str, Any], list[str]]:
        fields: dict[str, Any] = {}
        if "owner" in stripped and row.get("owner_email"):
            fields["owner"] = {"email": row.get("owner_email")}

        # The migration field is a custom field, only settable through patch ops
        field_id = (cache.lookups.get("migration_field") or {}).get("id")
        original = self.secondary_key(row)
        if field_id and original:
            fields[field_id] = original
        return fields, []

    async def backfill(self, client: ProductboardClient, remote_id: str, fields: dict[str, Any]) -> list[str]:
        if fields:
            await client.patch_entity(remote_id, _set_ops(fields))
        return []

    def backfill_fallback(self, fields: dict[str, Any]) -> dict[str, Any] | None:
        if "owner" not in fields:
            return None
        return {k: v for k, v in fields.items() if k != "owner"} or None


STRATEGIES: dict[str, type[ResourceStrategy]] = {
    "companies": CompanyStrategy,
    "notes": NoteStrategy,
    "entities": EntityStrategy,
}


def get_strategy(resource: str, **options: Any) -> ResourceStrategy:
    """Instantiate the strategy for a resource name."""
    strategy_class = STRATEGIES.get(resource)
    if strategy_class is None:
        raise ValueError(f"Unknown resource: {resource}. Valid: {list(STRATEGIES.keys())}")
    return strategy_class(**options)
