"""Tests for local row validation and CSV handling."""

import json

import pytest

from productboard_cli.models import ColumnMapping, CustomFieldMapping, InputRow, KeyCache
from productboard_cli.strategies import CompanyStrategy, EntityStrategy, NoteStrategy, get_strategy
from productboard_cli.tabular import load_input_rows, parse_csv, write_export
from productboard_cli.validation import (
    find_unsupported_html_tags,
    is_truthy,
    is_uuid,
    normalize_url,
    validate_parse_errors,
    validate_rows,
)

from .conftest import COMPANY_ID, NOTE_ID


def rows(*values: dict) -> list[InputRow]:
    return [InputRow(i, v) for i, v in enumerate(values, 1)]


class TestHelpers:
    """Tests for small validation helpers."""

    def test_is_uuid(self):
        """UUIDs match case-insensitively; anything else does not."""
        assert is_uuid(COMPANY_ID)
        assert is_uuid(COMPANY_ID.upper())
        assert not is_uuid("not-a-uuid")
        assert not is_uuid("")
        assert not is_uuid(None)

    def test_is_truthy(self):
        """Spreadsheet booleans are recognized."""
        assert is_truthy("TRUE")
        assert is_truthy(" yes ")
        assert is_truthy(True)
        assert not is_truthy("no")
        assert not is_truthy("")

    def test_normalize_url(self):
        """Scheme-less URLs get https://."""
        assert normalize_url("example.com/x") == "https://example.com/x"
        assert normalize_url("http://example.com") == "http://example.com"
        assert normalize_url("  ") == ""

    def test_unsupported_html_tags(self):
        """Only tags outside the rich text set are reported, once each."""
        text = "<p>ok</p><table><tr><td>x</td></tr></table><b>b</b><table></table>"
        assert find_unsupported_html_tags(text) == ["table", "tr", "td"]


class TestCompanyRules:
    """Tests for company row validation."""

    def test_name_and_domain_required_without_uuid(self):
        """A row with neither a UUID nor name and domain gets two errors."""
        report = validate_rows(rows({"description": "x"}), CompanyStrategy())
        assert {e.field for e in report.errors} == {"name", "domain"}
        assert not report.valid

    def test_uuid_alone_is_enough(self):
        """Updating by UUID needs no name or domain."""
        report = validate_rows(rows({"pb_id": COMPANY_ID}), CompanyStrategy())
        assert report.valid

    def test_unsupported_description_tags(self):
        """Descriptions with unsupported HTML are rejected."""
        report = validate_rows(
            rows({"name": "Acme", "domain": "acme.com", "description": "<div>x</div>"}), CompanyStrategy()
        )
        assert report.errors[0].message == "Description contains unsupported HTML tag(s): <div>"

    def test_number_custom_field(self):
        """Number custom fields must parse as numbers."""
        custom = CustomFieldMapping("ARR", "f1", "number")
        strategy = CompanyStrategy(custom_fields=[custom])
        report = validate_rows(
            rows({"name": "Acme", "domain": "acme.com", custom.key: "lots"}), strategy
        )
        assert report.errors[0].field == "ARR"

    def test_duplicate_domain(self):
        """Rows matched by domain must not repeat the domain."""
        report = validate_rows(
            rows({"name": "A", "domain": "acme.com"}, {"name": "B", "domain": "ACME.com"}), CompanyStrategy()
        )
        assert len(report.errors) == 1
        assert report.errors[0].row == 2
        assert report.errors[0].field == "domain"

    def test_duplicate_uuid(self):
        """The same UUID twice is an error."""
        report = validate_rows(rows({"pb_id": COMPANY_ID}, {"pb_id": COMPANY_ID}), CompanyStrategy())
        assert [e.row for e in report.errors] == [2]

    def test_rows_with_uuid_skip_domain_check(self):
        """A shared domain is fine when one row carries its UUID."""
        report = validate_rows(
            rows({"pb_id": COMPANY_ID, "domain": "acme.com"}, {"name": "B", "domain": "acme.com"}),
            CompanyStrategy(),
        )
        assert report.valid


class TestNoteRules:
    """Tests for note row validation."""

    def test_invalid_fields(self):
        """Emails, domains, types and linked entity UUIDs are checked."""
        report = validate_rows(
            rows({
                "title": "T",
                "user_email": "nope",
                "company_domain": "bad domain",
                "type": "memo",
                "linked_entities": f"{NOTE_ID}, xyz",
            }),
            NoteStrategy(),
        )
        fields = [e.field for e in report.errors]
        assert fields == ["user_email", "company_domain", "type", "linked_entities"]
        assert "xyz" in report.errors[-1].message

    def test_source_rules(self):
        """A record ID needs an origin; an origin alone is only a warning."""
        report = validate_rows(
            rows({"title": "A", "source_record_id": "1"}, {"title": "B", "source_origin": "csv"}),
            NoteStrategy(),
        )
        assert [e.field for e in report.errors] == ["source_record_id"]
        assert [w.field for w in report.warnings] == ["source_origin"]

    def test_user_and_company_warning(self):
        """user_email wins over company_domain, with a warning."""
        report = validate_rows(
            rows({"title": "A", "user_email": "a@b.com", "company_domain": "b.com"}), NoteStrategy()
        )
        assert report.valid
        assert report.warnings[0].field == "user_email"

    def test_duplicate_source_keys_allowed(self):
        """Notes sharing a source key are not flagged."""
        report = validate_rows(
            rows(
                {"title": "A", "source_origin": "zd", "source_record_id": "1"},
                {"title": "B", "source_origin": "zd", "source_record_id": "1"},
            ),
            NoteStrategy(),
        )
        assert report.valid

    def test_title_required(self):
        """Notes must have a title."""
        report = validate_rows(rows({"content": "x"}), NoteStrategy())
        assert report.errors[0].message == "Title is required"


class TestEntityRules:
    """Tests for hierarchy entity validation."""

    def test_type_and_original_uuid(self):
        """Unknown types and malformed original UUIDs are errors; bad HTML only warns."""
        report = validate_rows(
            rows({"name": "F", "type": "epic", "original_uuid": "x", "description": "<table></table>"}),
            EntityStrategy(),
        )
        assert [e.field for e in report.errors] == ["type", "original_uuid"]
        assert [w.field for w in report.warnings] == ["description"]

    def test_unknown_strategy(self):
        """Only importable resources have a strategy."""
        with pytest.raises(ValueError):
            get_strategy("users")


class TestParseCsv:
    """Tests for CSV parsing."""

    def test_quoted_fields_and_blank_lines(self):
        """Quoted commas and newlines survive; blank lines are skipped."""
        text = ' Name ,Domain\n"Acme, Inc",acme.com\n\n"Multi\nline",multi.com\n'
        headers, parsed, errors = parse_csv(text)
        assert headers == ["Name", "Domain"]
        assert parsed[0]["Name"] == "Acme, Inc"
        assert parsed[1]["Name"] == "Multi\nline"
        assert errors == []

    def test_field_count_errors(self):
        """Rows with the wrong number of fields are reported."""
        _, parsed, errors = parse_csv("a,b\n1,2,3\n4\n")
        assert errors == [
            "Row 1: too many fields (expected 2, got 3)",
            "Row 2: too few fields (expected 2, got 1)",
        ]
        assert parsed[1] == {"a": "4", "b": ""}

    def test_empty_input(self):
        """Empty input has no headers and no rows."""
        assert parse_csv("") == ([], [], [])

    def test_parse_errors_report(self):
        """Parse errors become row-less report errors."""
        report = validate_parse_errors(["Row 1: too many fields"])
        assert not report.valid
        assert report.to_dict()["errors"] == [{"row": None, "field": None, "message": "Row 1: too many fields"}]


class TestMappingAndCache:
    """Tests for column mapping and the key cache."""

    def test_apply_mapping(self):
        """Mapped columns and custom field columns land under field keys."""
        mapping = ColumnMapping(
            columns={"name": "Company", "domain": "Web"},
            custom_fields=(CustomFieldMapping("Tier", "f9"),),
        )
        loaded = load_input_rows("Company,Web,Tier,Other\n Acme ,acme.com,Gold,x\n", mapping)
        assert loaded == [InputRow(1, {"name": "Acme", "domain": "acme.com", "custom__f9": "Gold"})]

    def test_malformed_rows_carry_parse_error(self):
        """Rows with the wrong field count keep their row number and error."""
        mapping = ColumnMapping(columns={"name": "Name", "description": "Description"})
        loaded = load_input_rows("Name,Description\nAcme,big, old\nGlobex,ok\n", mapping)
        assert loaded[0].parse_error == "too many fields (expected 2, got 3)"
        assert loaded[0].with_value("pb_id", "x").parse_error == loaded[0].parse_error
        assert loaded[1].parse_error is None

    def test_mapping_file(self, tmp_path):
        """Mappings load from JSON files."""
        path = tmp_path / "mapping.json"
        mapping = ColumnMapping(columns={"title": "Subject"}, custom_fields=(CustomFieldMapping("ARR", "f1", "number"),))
        path.write_text(json.dumps(mapping.to_dict()))
        assert ColumnMapping.load(path) == mapping

    def test_identity_uses_labels(self):
        """Identity mapping matches field names first, then labels."""
        mapping = ColumnMapping.identity(["TITLE", "Company Name"], ["title", "name"], {"name": "Company Name"})
        assert mapping.columns == {"title": "TITLE", "name": "Company Name"}

    def test_key_cache_round_trip(self):
        """The cache survives serialization between chunks."""
        cache = KeyCache()
        cache.remember("acme.com", COMPANY_ID)
        cache.remember(None, NOTE_ID)
        cache.source_counters["csv"] = 3
        cache.lookups["users"] = {"a@b.com": "u1"}

        restored = KeyCache.from_dict(json.loads(json.dumps(cache.to_dict())))

        assert restored == cache
        assert KeyCache.from_dict(None) == KeyCache()


class TestWriteExport:
    """Tests for export files."""

    def test_writes_csv_and_descriptor(self, tmp_path):
        """The CSV uses labels as headers and gets a datapackage.json beside it."""
        path = write_export(
            tmp_path / "out", "companies", [{"name": "Acme", "domain": None}], ["name", "domain"], ["Name", "Domain"]
        )

        assert path.read_bytes() == b"Name,Domain\r\nAcme,\r\n"
        descriptor = json.loads((tmp_path / "out" / "datapackage.json").read_text())
        resource = descriptor["resources"][0]
        assert resource["path"] == "companies.csv"
        assert [f["name"] for f in resource["schema"]["fields"]] == ["Name", "Domain"]
