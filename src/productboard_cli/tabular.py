"""CSV parsing/serialization and datapackage descriptors for exports."""

import csv
import io
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from frictionless import Package, Resource, Schema
from frictionless.fields import StringField

from .models import ColumnMapping, InputRow


def _read_csv(text: str) -> tuple[list[str], list[dict[str, str]], dict[int, str], list[str]]:
    """Parse CSV text into (headers, rows, row errors by row number, file errors)."""
    reader = csv.reader(io.StringIO(text.strip()))

    try:
        header_row = next(reader)
    except StopIteration:
        return [], [], {}, []
    except csv.Error as e:
        return [], [], {}, [f"Header row: {e}"]

    headers = [h.strip() for h in header_row]
    rows: list[dict[str, str]] = []
    row_errors: dict[int, str] = {}
    errors: list[str] = []

    try:
        for values in reader:
            if not values or all(not v.strip() for v in values):
                continue
            row_num = len(rows) + 1
            if len(values) > len(headers):
                row_errors[row_num] = f"too many fields (expected {len(headers)}, got {len(values)})"
            elif len(values) < len(headers):
                row_errors[row_num] = f"too few fields (expected {len(headers)}, got {len(values)})"
            rows.append({h: (values[i] if i < len(values) else "") for i, h in enumerate(headers)})
    except csv.Error as e:
        errors.append(f"Line {reader.line_num}: {e}")

    return headers, rows, row_errors, errors


def parse_csv(text: str) -> tuple[list[str], list[dict[str, str]], list[str]]:
    """Parse CSV text with a header row.

    Headers are trimmed and blank lines skipped. Rows with a different
    number of fields than the header are reported in the error list.

    Returns:
        Tuple of (headers, rows, errors)
    """
    headers, rows, row_errors, file_errors = _read_csv(text)
    errors = [f"Row {row_num}: {message}" for row_num, message in row_errors.items()]
    return headers, rows, errors + file_errors


def load_input_rows(text: str, mapping: ColumnMapping) -> list[InputRow]:
    """Parse CSV text and map each data row through the column mapping.

    Rows with the wrong number of fields carry their parse error.
    """
    _, rows, row_errors, _ = _read_csv(text)
    return [
        replace(mapping.apply(row, row_num), parse_error=row_errors.get(row_num))
        for row_num, row in enumerate(rows, 1)
    ]


def _cell(value: Any) -> str:
    return "" if value is None else str(value)


def generate_csv(rows: list[dict[str, Any]], fields: list[str], headers: list[str] | None = None) -> str:
    """Serialize rows to CSV text with the given column order and labels."""
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\r\n")
    writer.writerow(headers or fields)
    for row in rows:
        writer.writerow([_cell(row.get(f)) for f in fields])
    return out.getvalue()


def append_csv_rows(
    path: Path, rows: list[dict[str, Any]], fields: list[str], headers: list[str] | None = None
) -> int:
    """Append rows to a CSV file, writing the header if the file is new."""
    new_file = not path.exists() or path.stat().st_size == 0
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, lineterminator="\r\n")
        if new_file:
            writer.writerow(headers or fields)
        for row in rows:
            writer.writerow([_cell(row.get(f)) for f in fields])
    return len(rows)


def describe_export(csv_path: Path, name: str, headers: list[str]) -> Package:
    """Write a datapackage.json describing an exported CSV file.

    headers must match the header row of the CSV file.
    """
    schema = Schema(fields=[StringField(name=header) for header in headers])
    resource = Resource(name=name, path=csv_path.name, schema=schema)
    package = Package(
        name="productboard-export",
        title="Productboard Export",
        description=f"Export created on {datetime.now().isoformat()}",
        resources=[resource],
    )
    package.to_json(str(csv_path.parent / "datapackage.json"))
    return package


def write_export(
    output_dir: Path,
    name: str,
    rows: list[dict[str, Any]],
    fields: list[str],
    headers: list[str] | None = None,
) -> Path:
    """Write rows to <output_dir>/<name>.csv with a datapackage descriptor."""
    output_dir.mkdir(parents=True, exist_ok=True)
    csv_path = output_dir / f"{name}.csv"
    csv_path.write_text(generate_csv(rows, fields, headers), encoding="utf-8")
    describe_export(csv_path, name, headers or fields)
    return csv_path
