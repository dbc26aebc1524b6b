"""Tests for offset and cursor pagination."""

import pytest
from httpx import Response

from productboard_cli.api import ProductboardClient
from productboard_cli.pagination import Paginator, extract_cursor, fetch_all_items, paginate

from .conftest import make_cursor_page, request_json


def companies(start: int, count: int) -> list[dict]:
    return [{"id": f"c{i}", "domain": f"c{i}.com"} for i in range(start, start + count)]


class TestExtractCursor:
    """Tests for reading the cursor out of links.next."""

    def test_extracts_page_cursor(self):
        """The pageCursor query parameter is returned."""
        assert extract_cursor("https://api.productboard.com/v2/notes?pageCursor=abc&x=1") == "abc"

    def test_missing(self):
        """No link or no parameter means no next page."""
        assert extract_cursor(None) is None
        assert extract_cursor("https://api.productboard.com/v2/notes") is None


class TestOffsetPagination:
    """Tests for pageOffset/pageLimit listings."""

    async def test_stops_on_short_page(self, mock_api, client):
        """Pagination continues while full pages come back."""
        offsets = []

        def handler(request):
            offset = int(request.url.params["pageOffset"])
            offsets.append(offset)
            count = 2 if offset < 4 else 1
            return Response(200, json={"data": companies(offset, count)})

        mock_api.get("/companies").mock(side_effect=handler)

        items = await fetch_all_items(client, "/companies", style="offset", limit=2)

        assert offsets == [0, 2, 4]
        assert [c["id"] for c in items] == ["c0", "c1", "c2", "c3", "c4"]

    async def test_uses_reported_total(self, mock_api, client):
        """A reported total ends pagination without an extra empty request."""

        def handler(request):
            offset = int(request.url.params["pageOffset"])
            body = {
                "data": companies(offset, 2),
                "pagination": {"offset": offset, "limit": 2, "total": 4},
            }
            return Response(200, json=body)

        route = mock_api.get("/companies").mock(side_effect=handler)

        pages = [page async for page in paginate(client, "/companies", style="offset", limit=2)]

        assert route.call_count == 2
        assert [p.next_cursor for p in pages] == ["2", None]
        assert pages[0].total == 4

    async def test_resumes_from_start(self, mock_api, client):
        """start sets the first offset."""
        route = mock_api.get("/companies").mock(return_value=Response(200, json={"data": []}))
        await fetch_all_items(client, "/companies", style="offset", start="200")
        assert route.calls.last.request.url.params["pageOffset"] == "200"


class TestCursorPagination:
    """Tests for pageCursor listings."""

    async def test_follows_links_next(self, mock_api, client):
        """Each page's links.next cursor is sent with the following request."""
        cursors = []

        def handler(request):
            cursor = request.url.params.get("pageCursor")
            cursors.append(cursor)
            if cursor is None:
                return make_cursor_page([{"id": "n1"}], "/v2/notes", "p2")
            return make_cursor_page([{"id": "n2"}], "/v2/notes")

        mock_api.get("/v2/notes").mock(side_effect=handler)

        items = await fetch_all_items(client, "/v2/notes", style="cursor", send_limit=False)

        assert cursors == [None, "p2"]
        assert [n["id"] for n in items] == ["n1", "n2"]

    async def test_repeated_cursor_stops(self, mock_api, client):
        """The same cursor twice in a row ends iteration instead of looping."""
        route = mock_api.get("/v2/notes").mock(
            return_value=make_cursor_page([{"id": "n1"}], "/v2/notes", "same")
        )

        paginator = paginate(client, "/v2/notes", style="cursor")
        pages = [page async for page in paginator]

        assert route.call_count == 2
        assert paginator.repeated_cursor is True
        assert pages[-1].next_cursor is None

    async def test_body_cursor(self, mock_api, client):
        """Older listings return the cursor as a top-level pageCursor key."""
        mock_api.get("/notes").mock(
            side_effect=[
                Response(200, json={"data": [{"id": "a"}], "pageCursor": "next"}),
                Response(200, json={"data": [{"id": "b"}], "pageCursor": None}),
            ]
        )
        items = await fetch_all_items(client, "/notes", style="cursor", cursor_source="body")
        assert [n["id"] for n in items] == ["a", "b"]

    async def test_search_body_carries_cursor(self, mock_api, client):
        """POST search listings send the cursor inside the request body."""
        route = mock_api.post("/v2/entities/search").mock(
            side_effect=[
                make_cursor_page([{"id": "e1"}], "/v2/entities/search", "c2"),
                make_cursor_page([{"id": "e2"}], "/v2/entities/search"),
            ]
        )
        body = {"data": {"type": "feature"}}

        items = await fetch_all_items(client, "/v2/entities/search", style="cursor", search_body=body)

        assert len(items) == 2
        assert request_json(route.calls[1].request) == {"data": {"type": "feature", "pageCursor": "c2"}}
        assert body == {"data": {"type": "feature"}}

    async def test_max_pages_truncates(self, mock_api, client):
        """Reaching the page ceiling with data left marks the result truncated."""
        counter = {"n": 0}

        def handler(request):
            counter["n"] += 1
            return make_cursor_page([{"id": str(counter["n"])}], "/v2/notes", f"c{counter['n']}")

        mock_api.get("/v2/notes").mock(side_effect=handler)

        paginator = paginate(client, "/v2/notes", style="cursor", max_pages=3)
        pages = [page async for page in paginator]

        assert len(pages) == 3
        assert paginator.truncated is True


class TestPaginator:
    """Tests for paginator construction."""

    def test_unknown_style(self):
        """Only offset and cursor styles exist."""
        with pytest.raises(ValueError):
            Paginator(ProductboardClient("token"), "/x", style="page")

    async def test_single_use(self, mock_api, client):
        """A paginator cannot be iterated twice."""
        mock_api.get("/users").mock(return_value=Response(200, json={"data": []}))
        paginator = paginate(client, "/users")
        [page async for page in paginator]
        with pytest.raises(RuntimeError):
            paginator.__aiter__()
