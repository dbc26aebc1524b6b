"""Row and mapping types shared by import, validation and jobs."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class InputRow:
    """One CSV data row mapped to field names.

    row_num is the 1-based data row number (header excluded). Rows are
    immutable; with_value() returns a modified copy. parse_error is set
    when the CSV row had the wrong number of fields; such a row is never
    written.
    """

    row_num: int
    values: dict[str, str] = field(default_factory=dict)
    parse_error: str | None = None

    def get(self, field_name: str | None) -> str:
        """Trimmed value for a field, or '' when missing."""
        if not field_name:
            return ""
        value = self.values.get(field_name)
        return "" if value is None else str(value).strip()

    def with_value(self, field_name: str, value: str) -> "InputRow":
        return InputRow(self.row_num, {**self.values, field_name: value}, self.parse_error)


@dataclass(frozen=True)
class CustomFieldMapping:
    """A CSV column feeding a company custom field."""

    column: str
    field_id: str
    field_type: str = "text"  # "text" or "number"

    @property
    def key(self) -> str:
        return f"custom__{self.field_id}"


@dataclass(frozen=True)
class ColumnMapping:
    """Field name -> CSV column mapping, plus custom field columns."""

    columns: dict[str, str] = field(default_factory=dict)
    custom_fields: tuple[CustomFieldMapping, ...] = ()

    def apply(self, raw: dict[str, Any], row_num: int) -> InputRow:
        """Map a raw CSV row (column -> value) into an InputRow."""
        values: dict[str, str] = {}
        for field_name, column in self.columns.items():
            value = raw.get(column)
            if value is not None:
                values[field_name] = str(value).strip()
        for custom in self.custom_fields:
            value = raw.get(custom.column)
            if value is not None:
                values[custom.key] = str(value).strip()
        return InputRow(row_num, values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "columns": dict(self.columns),
            "custom_fields": [
                {"column": c.column, "field_id": c.field_id, "field_type": c.field_type}
                for c in self.custom_fields
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ColumnMapping":
        custom = tuple(
            CustomFieldMapping(
                column=c["column"],
                field_id=c["field_id"],
                field_type=c.get("field_type", "text"),
            )
            for c in data.get("custom_fields") or []
        )
        return cls(columns=dict(data.get("columns") or {}), custom_fields=custom)

    @classmethod
    def load(cls, path: Path) -> "ColumnMapping":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def identity(
        cls, headers: list[str], field_names: list[str], labels: dict[str, str] | None = None
    ) -> "ColumnMapping":
        """Map every known field to the header with the same name (or label).

        Matching is case-insensitive, so an export CSV can be re-imported
        without an explicit mapping file.
        """
        labels = labels or {}
        by_lower = {h.lower(): h for h in headers}
        columns: dict[str, str] = {}
        for name in field_names:
            column = by_lower.get(name.lower())
            if column is None and name in labels:
                column = by_lower.get(labels[name].lower())
            if column is not None:
                columns[name] = column
        return cls(columns=columns)


@dataclass(frozen=True)
class RowIssue:
    """A validation error or warning attributed to a row and field."""

    row: int | None
    field: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "field": self.field, "message": self.message}


@dataclass
class KeyCache:
    """Lookup state shared by every chunk of a job.

    secondary maps a secondary key (domain, source record ID, original
    UUID) to a remote ID. confirmed holds primary keys known to exist.
    lookups holds named enrichment maps (users, companies, migration).
    """

    secondary: dict[str, str] = field(default_factory=dict)
    confirmed: set[str] = field(default_factory=set)
    indexed: bool = False
    source_counters: dict[str, int] = field(default_factory=dict)
    lookups: dict[str, dict[str, Any]] = field(default_factory=dict)

    def remember(self, secondary_key: str | None, remote_id: str) -> None:
        if secondary_key:
            self.secondary[secondary_key] = remote_id
        self.confirmed.add(remote_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "secondary": dict(self.secondary),
            "confirmed": sorted(self.confirmed),
            "indexed": self.indexed,
            "source_counters": dict(self.source_counters),
            "lookups": {k: dict(v) for k, v in self.lookups.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "KeyCache":
        data = data or {}
        return cls(
            secondary=dict(data.get("secondary") or {}),
            confirmed=set(data.get("confirmed") or []),
            indexed=bool(data.get("indexed", False)),
            source_counters=dict(data.get("source_counters") or {}),
            lookups={k: dict(v) for k, v in (data.get("lookups") or {}).items()},
        )
