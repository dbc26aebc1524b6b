"""Local validation of import rows (no API calls)."""

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .config import SUPPORTED_HTML_TAGS
from .models import InputRow, RowIssue

if TYPE_CHECKING:
    from .strategies import ResourceStrategy

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
HTML_TAG_RE = re.compile(r"</?([a-z][a-z0-9]*)\b", re.IGNORECASE)

TRUTHY_VALUES = {"true", "1", "yes"}


def is_uuid(value: str | None) -> bool:
    return bool(value) and UUID_RE.match(value.strip()) is not None


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY_VALUES


def normalize_url(url: str) -> str:
    """Prefix a scheme-less URL with https://."""
    url = (url or "").strip()
    if not url:
        return ""
    if re.match(r"^https?://", url, re.IGNORECASE):
        return url
    return "https://" + url


def find_unsupported_html_tags(text: str) -> list[str]:
    """Return tag names not accepted by Productboard rich text, in order of appearance."""
    found: list[str] = []
    for match in HTML_TAG_RE.finditer(str(text)):
        tag = match.group(1).lower()
        if tag not in SUPPORTED_HTML_TAGS and tag not in found:
            found.append(tag)
    return found


def split_list(value: str) -> list[str]:
    """Split a comma-separated cell into trimmed, non-empty items."""
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class ValidationReport:
    """Result of validating a whole file before import."""

    total_rows: int = 0
    errors: list[RowIssue] = field(default_factory=list)
    warnings: list[RowIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "totalRows": self.total_rows,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def validate_rows(rows: list[InputRow], strategy: "ResourceStrategy") -> ValidationReport:
    """Run per-row checks plus duplicate-key detection across the file.

    Rows carrying a valid primary key must not repeat it. Rows without one
    are matched by secondary key, so their secondary keys must be unique.
    """
    report = ValidationReport(total_rows=len(rows))
    primary_seen: set[str] = set()
    secondary_seen: set[str] = set()
    primary_field = strategy.primary_key_field
    secondary_field = strategy.secondary_key_field

    for row in rows:
        errors, warnings = strategy.validate_row(row)
        report.errors.extend(errors)
        report.warnings.extend(warnings)

        primary = strategy.primary_key(row)
        if primary:
            if primary.lower() in primary_seen:
                report.errors.append(
                    RowIssue(row.row_num, primary_field, f"Duplicate {primary_field}: {primary}")
                )
            primary_seen.add(primary.lower())
            continue

        secondary = strategy.secondary_key(row)
        if secondary and secondary_field and strategy.unique_secondary_key:
            if secondary in secondary_seen:
                report.errors.append(
                    RowIssue(
                        row.row_num,
                        secondary_field,
                        f"Duplicate {secondary_field} '{secondary}' - add a {primary_field} "
                        "column to update these rows individually",
                    )
                )
            secondary_seen.add(secondary)

    return report


def validate_parse_errors(errors: list[str]) -> ValidationReport:
    """Wrap CSV parse errors in a report."""
    return ValidationReport(errors=[RowIssue(None, None, e) for e in errors])
