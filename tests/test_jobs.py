"""Tests for the import, export and delete job handlers."""

import json
from pathlib import Path

import pytest
from httpx import Response

from productboard_cli.api import ProductboardClient
from productboard_cli.exceptions import JobError
from productboard_cli.jobs import create_scheduler, resolve_mapping, write_back_columns
from productboard_cli.models import ColumnMapping
from productboard_cli.scheduler import MemoryJobStore
from productboard_cli.stream import ProgressStream
from productboard_cli.tabular import generate_csv, parse_csv

from .conftest import COMPANY_ID, NOTE_ID, CompanyBackend, fake_id, make_cursor_page, make_error, make_response


@pytest.fixture
def scheduler(mock_api, fake_api_token, fake_sleep):
    """Scheduler wired to the mocked API with sleeps stubbed out."""
    outcomes: list[dict] = []
    instance = create_scheduler(
        MemoryJobStore(),
        lambda: ProductboardClient(fake_api_token, base_delay=0, sleep=fake_sleep),
        on_outcomes=outcomes.extend,
    )
    instance.outcomes = outcomes
    return instance


async def run_to_end(scheduler) -> dict:
    while True:
        step = await scheduler.process_next_job()
        if not step["hasMore"]:
            return step["summary"]


class TestMapping:
    """Tests for column mapping resolution."""

    def test_identity_matches_labels(self):
        """Export headers map back onto field names without a mapping file."""
        mapping = resolve_mapping("companies", ["PB Company ID", "Company Name", "domain"], None)
        assert mapping.columns == {"pb_id": "PB Company ID", "name": "Company Name", "domain": "domain"}

    def test_explicit_mapping_wins(self):
        """A given mapping is used as-is."""
        mapping = resolve_mapping("notes", ["Subject"], {"columns": {"title": "Subject"}})
        assert mapping.columns == {"title": "Subject"}

    def test_write_back_puts_primary_key_first(self):
        """Reconciled rows are written with the primary key as first column."""
        mapping = ColumnMapping(columns={"name": "Name", "domain": "Domain"})
        fields, headers = write_back_columns(mapping, "pb_id")
        assert fields == ["pb_id", "name", "domain"]
        assert headers == fields


class TestImportJob:
    """Tests for chunked imports."""

    async def test_120_notes_in_three_chunks(self, mock_api, scheduler, tmp_path):
        """Row 37 updates by source key; row 90 is created and its ID written back."""
        existing = fake_id(37)

        def find(request):
            if request.url.params.get("source[recordId]") == "ext-37":
                return make_response([{"id": existing, "fields": {"source": {"recordId": "ext-37"}}}])
            return make_response([])

        def create(request):
            number = int(json.loads(request.content)["title"].split()[-1])
            return Response(201, json={"data": {"id": fake_id(1000 + number)}})

        mock_api.get("/v2/notes").mock(side_effect=find)
        mock_api.post("/notes").mock(side_effect=create)
        update = mock_api.patch(f"/notes/{existing}").mock(return_value=make_response({}))

        rows = [{"title": f"Note {i}", "source_origin": "", "source_record_id": ""} for i in range(1, 121)]
        rows[36].update(source_origin="crm", source_record_id="ext-37")
        csv_text = generate_csv(rows, ["title", "source_origin", "source_record_id"])
        output = tmp_path / "out.csv"

        started = await scheduler.start_job(
            {"operation": "import", "resource": "notes", "csv": csv_text, "output": str(output)}
        )
        summary = await run_to_end(scheduler)

        assert started["chunks"] == 3
        assert (summary["created"], summary["updated"], summary["errors"]) == (119, 1, 0)
        assert update.call_count == 1

        by_row = {o["row"]: o for o in scheduler.outcomes}
        assert by_row[37]["action"] == "update"
        assert by_row[37]["id"] == existing
        assert by_row[90]["action"] == "create"
        assert by_row[90]["id"] == fake_id(1090)

        headers, written, _ = parse_csv(output.read_text())
        assert headers[0] == "pb_id"
        assert len(written) == 120
        assert written[89]["pb_id"] == fake_id(1090)
        assert summary["output"] == str(output)

    async def test_generated_source_ids_stable_across_chunks(self, mock_api, scheduler):
        """Auto-numbered source IDs continue across chunk boundaries."""
        mock_api.get("/v2/notes").mock(return_value=make_response([]))
        create = mock_api.post("/notes").mock(return_value=Response(201, json={"id": NOTE_ID}))
        mock_api.patch(f"/notes/{NOTE_ID}").mock(return_value=make_response({}))

        rows = [{"title": f"Note {i}", "source_origin": "csv"} for i in range(1, 106)]
        await scheduler.start_job(
            {"operation": "import", "resource": "notes", "csv": generate_csv(rows, ["title", "source_origin"])}
        )
        await run_to_end(scheduler)

        record_ids = [json.loads(c.request.content)["source"]["record_id"] for c in create.calls]
        assert record_ids[0] == "csv-1"
        assert record_ids[50] == "csv-51"
        assert record_ids[-1] == "csv-105"

    async def test_small_company_import_runs_now(self, mock_api, scheduler):
        """A small file is imported synchronously and summarized."""
        backend = CompanyBackend(mock_api, [{"id": COMPANY_ID, "name": "Acme", "domain": "acme.com"}])
        csv_text = "Company Name,Domain\nAcme Corp,acme.com\nGlobex,globex.com\n"

        summary = await scheduler.start_job({"operation": "import", "resource": "companies", "csv": csv_text})

        assert summary["created"] == 1
        assert summary["updated"] == 1
        assert len(backend.companies) == 2

    async def test_malformed_row_skipped(self, mock_api, scheduler):
        """A row with an unquoted comma is reported by row number and not imported."""
        backend = CompanyBackend(mock_api)
        csv_text = "name,domain\nAcme, Inc,acme.com\nGlobex,globex.com\n"

        summary = await scheduler.start_job({"operation": "import", "resource": "companies", "csv": csv_text})

        assert summary["errors"] == 1
        assert summary["created"] == 1
        assert [c["name"] for c in backend.created] == ["Globex"]
        assert scheduler.outcomes[0]["row"] == 1
        assert scheduler.outcomes[0]["status"] == "skipped"
        assert "too many fields" in scheduler.outcomes[0]["error"]

    async def test_cancelled_sync_import_stops(self, mock_api, scheduler):
        """Cancelling mid-run ends the job after the current row and frees the slot."""
        stream = ProgressStream()

        class CancellingBackend(CompanyBackend):
            def create(self, request):
                stream.cancel()
                return super().create(request)

        backend = CancellingBackend(mock_api)
        csv_text = "name,domain\nA,a.com\nB,b.com\nC,c.com\n"

        summary = await scheduler.start_job({"operation": "import", "resource": "companies", "csv": csv_text}, stream)

        assert summary["stopped"] is True
        assert summary["status"] == "stopped"
        assert summary["created"] == 1
        assert len(backend.companies) == 1
        assert scheduler.load_job() is None
        assert [o["row"] for o in scheduler.outcomes] == [1]

    async def test_users_not_importable(self, mock_api, scheduler):
        """Resources without a write path are rejected."""
        with pytest.raises(JobError):
            await scheduler.start_job({"operation": "import", "resource": "users", "csv": "a\n1\n"})


class TestExportJob:
    """Tests for export jobs."""

    async def test_export_companies_with_custom_fields(self, mock_api, scheduler, tmp_path):
        """Companies are written to CSV with custom field columns and a descriptor."""
        backend = CompanyBackend(
            mock_api,
            [{"id": COMPANY_ID, "name": "Acme", "domain": "acme.com", "source": {"origin": "crm", "record_id": "1"}}],
            custom_fields=[{"id": "f1", "name": "ARR", "type": "number"}],
        )
        backend.custom_values[(COMPANY_ID, "f1")] = 1200

        summary = await scheduler.start_job({"operation": "export", "resource": "companies", "output_dir": str(tmp_path)})

        assert summary["exported"] == 1
        headers, rows, _ = parse_csv(Path(summary["output"]).read_text())
        assert headers == [
            "PB Company ID", "Company Name", "Domain", "Description", "Source Origin", "Source Record ID", "ARR",
        ]
        assert rows[0]["ARR"] == "1200"
        assert rows[0]["Source Origin"] == "crm"
        assert (tmp_path / "datapackage.json").exists()

    async def test_export_notes_follows_cursor(self, mock_api, scheduler, tmp_path):
        """Notes are paged by cursor, filtered by date and enriched from lookups."""
        user_id = fake_id(1)

        def notes_page(request):
            assert request.url.params["createdFrom"] == "2024-01-01"
            if request.url.params.get("pageCursor") == "p2":
                return make_cursor_page([{"id": fake_id(3), "fields": {"name": "Second"}}], "/v2/notes")
            note = {
                "id": NOTE_ID,
                "type": "simple",
                "fields": {"name": "First", "content": "<p>hi</p>", "archived": True},
                "relationships": {"data": [{"type": "customer", "target": {"type": "user", "id": user_id}}]},
            }
            return make_cursor_page([note], "/v2/notes", "p2")

        mock_api.get("/v2/notes").mock(side_effect=notes_page)
        mock_api.get("/users").mock(return_value=make_response([{"id": user_id, "email": "jo@acme.com"}]))
        mock_api.get("/companies").mock(return_value=make_response([]))
        mock_api.get("/notes").mock(
            return_value=Response(200, json={"data": [{"id": NOTE_ID, "source": {"origin": "zd", "record_id": "9"}}]})
        )

        summary = await scheduler.start_job({
            "operation": "export", "resource": "notes",
            "output_dir": str(tmp_path), "created_from": "2024-01-01",
        })

        assert summary["exported"] == 2
        output = tmp_path / "notes-export-from-2024-01-01.csv"
        _, rows, _ = parse_csv(output.read_text())
        assert rows[0]["user_email"] == "jo@acme.com"
        assert rows[0]["archived"] == "TRUE"
        assert rows[0]["source_origin"] == "zd"
        assert rows[1]["title"] == "Second"


class TestDeleteJob:
    """Tests for delete jobs."""

    async def test_delete_by_csv(self, mock_api, scheduler):
        """IDs are read from the named column; missing records are skipped."""
        backend = CompanyBackend(mock_api, [{"id": COMPANY_ID, "domain": "acme.com"}])
        csv_text = f"pb_id,name\n{COMPANY_ID},Acme\n{fake_id(9)},Gone\nnot-a-uuid,Bad\n"

        summary = await scheduler.start_job({"operation": "delete", "resource": "companies", "csv": csv_text})

        assert backend.deleted == [COMPANY_ID]
        assert summary["deleted"] == 1
        assert summary["skipped"] == 1
        assert summary["warnings"] == 1

    async def test_delete_all_notes(self, mock_api, scheduler):
        """Delete-all lists every note; one already gone still counts as deleted."""
        mock_api.get("/v2/notes").mock(return_value=make_cursor_page([{"id": NOTE_ID}, {"id": fake_id(5)}], "/v2/notes"))
        mock_api.delete(f"/v2/notes/{NOTE_ID}").mock(return_value=Response(204))
        mock_api.delete(f"/v2/notes/{fake_id(5)}").mock(return_value=make_error(404))

        summary = await scheduler.start_job({"operation": "delete", "resource": "notes", "all": True})

        assert summary["deleted"] == 2
        assert summary["skipped"] == 0

    async def test_cancelled_before_start_deletes_nothing(self, mock_api, scheduler):
        """A stream cancelled up front stops the delete before its first record."""
        backend = CompanyBackend(mock_api, [{"id": COMPANY_ID}])
        stream = ProgressStream()
        stream.cancel()

        summary = await scheduler.start_job(
            {"operation": "delete", "resource": "companies", "ids": [COMPANY_ID]}, stream
        )

        assert summary["stopped"] is True
        assert summary["deleted"] == 0
        assert backend.deleted == []
        assert scheduler.status() is None

    async def test_entities_not_deletable(self, mock_api, scheduler):
        """Hierarchy entities have no delete operation."""
        with pytest.raises(JobError):
            await scheduler.start_job({"operation": "delete", "resource": "entities", "ids": [COMPANY_ID]})
