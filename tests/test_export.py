"""Tests for company and note exports."""

from datetime import date

from productboard_cli.export import (
    build_note_row,
    export_companies,
    export_filename,
    fetch_custom_field_values,
)
from productboard_cli.stream import ProgressStream

from .conftest import COMPANY_ID, NOTE_ID, CompanyBackend, drain, fake_id, make_error


class TestExportFilename:
    """Tests for export file names."""

    def test_notes_date_bounds(self):
        """Created-at bounds are reflected in the name, date part only."""
        assert export_filename("notes", "2024-01-01T00:00:00Z", "2024-02-01") == "notes-export-2024-01-01-to-2024-02-01.csv"
        assert export_filename("notes", None, "2024-02-01") == "notes-export-to-2024-02-01.csv"

    def test_dated_default(self):
        """Without bounds the name carries today's date."""
        today = date.today().isoformat()
        assert export_filename("notes") == f"notes-export-{today}.csv"
        assert export_filename("companies") == f"companies-{today}.csv"


class TestCustomFieldValues:
    """Tests for the bounded custom field value fan-out."""

    async def test_batches_with_pause(self, mock_api, client):
        """Values are fetched five at a time with a pause between batches."""
        ids = [fake_id(i) for i in range(1, 7)]
        backend = CompanyBackend(mock_api, [{"id": i} for i in ids])
        backend.custom_values[(ids[0], "f1")] = "gold"
        backend.custom_values[(ids[5], "f1")] = "silver"
        pauses: list[float] = []
        progress: list[tuple[int, int]] = []

        async def pause(delay: float) -> None:
            pauses.append(delay)

        values = await fetch_custom_field_values(
            client, ids, ["f1"], sleep=pause, on_progress=lambda done, total: progress.append((done, total))
        )

        assert values == {ids[0]: {"f1": "gold"}, ids[5]: {"f1": "silver"}}
        assert pauses == [0.1]
        assert progress == [(5, 6), (6, 6)]

    async def test_failures_treated_as_unset(self, mock_api, client):
        """A failing value read is logged and left empty."""
        mock_api.get(f"/companies/{COMPANY_ID}/custom-fields/f1/value").mock(
            return_value=make_error(403, "Forbidden")
        )
        assert await fetch_custom_field_values(client, [COMPANY_ID], ["f1"]) == {}


class TestExportCompanies:
    """Tests for the company export."""

    async def test_empty_workspace(self, mock_api, client):
        """No companies gives headers but no rows."""
        CompanyBackend(mock_api, custom_fields=[{"id": "f1", "name": "Tier"}])
        stream = ProgressStream()

        result = await export_companies(client, stream)
        frames = await drain(stream)

        assert result.count == 0
        assert result.headers[-1] == "Tier"
        assert result.to_csv() == ""
        assert frames[1].data["message"] == "Found 1 custom fields"


class TestBuildNoteRow:
    """Tests for flattening v2 notes."""

    def test_company_customer_and_links(self):
        """A company customer gives company_domain; link targets are joined."""
        note = {
            "id": NOTE_ID,
            "type": "conversation",
            "fields": {
                "name": "Call",
                "content": [{"author": "a", "text": "hi"}],
                "tags": [{"name": "vip"}, {"name": "q1"}],
                "owner": {"email": "o@acme.com"},
                "source": {"origin": "intercom", "id": "77"},
                "processed": "true",
            },
            "relationships": {
                "data": [
                    {"type": "customer", "target": {"type": "company", "id": COMPANY_ID}},
                    {"type": "link", "target": {"type": "feature", "id": fake_id(1)}},
                    {"type": "link", "target": {"type": "feature", "id": fake_id(2)}},
                ]
            },
        }

        row = build_note_row(note, {"companies": {COMPANY_ID: "acme.com"}})

        assert row["company_domain"] == "acme.com"
        assert row["user_email"] == ""
        assert row["linked_entities"] == f"{fake_id(1)},{fake_id(2)}"
        assert row["tags"] == "vip, q1"
        assert row["content"] == '[{"author": "a", "text": "hi"}]'
        assert (row["source_origin"], row["source_record_id"]) == ("intercom", "77")
        assert (row["processed"], row["archived"]) == ("TRUE", "FALSE")
        assert row["owner_email"] == "o@acme.com"

    def test_defaults(self):
        """Missing pieces become empty cells and a simple type."""
        row = build_note_row({"id": NOTE_ID}, {})
        assert row["type"] == "simple"
        assert row["title"] == ""
        assert row["linked_entities"] == ""
