"""Pytest fixtures for productboard-cli tests."""

import json

import pytest
import respx
from httpx import Request, Response

from productboard_cli.api import ProductboardClient
from productboard_cli.config import API_BASE_URL
from productboard_cli.stream import Frame, ProgressStream

COMPANY_ID = "11111111-1111-4111-8111-111111111111"
NOTE_ID = "22222222-2222-4222-8222-222222222222"
ENTITY_ID = "33333333-3333-4333-8333-333333333333"
ORIGINAL_ID = "44444444-4444-4444-8444-444444444444"


@pytest.fixture
def fake_api_token() -> str:
    """Fake API token for testing."""
    return "test-token-123"


@pytest.fixture
def sleeps() -> list[float]:
    """Delays passed to the injected sleep function."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    """Sleep replacement that records the delay and returns immediately."""

    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleep


@pytest.fixture
def mock_api():
    """Mock httpx transport for the Productboard API."""
    with respx.mock(base_url=API_BASE_URL, assert_all_called=False) as respx_mock:
        yield respx_mock


@pytest.fixture
async def client(mock_api, fake_api_token, fake_sleep):
    """Open client with throttling and retry sleeps stubbed out."""
    async with ProductboardClient(fake_api_token, base_delay=0, sleep=fake_sleep) as pb:
        yield pb


def make_response(data: list | dict | None = None, status: int = 200, **extra) -> Response:
    """Create a mock Productboard API response with a data envelope."""
    body = {"data": data, **extra}
    return Response(status, json=body)


def make_error(status: int, detail: str = "error", headers: dict | None = None) -> Response:
    """Create a mock error response with a structured errors body."""
    body = {"errors": [{"code": f"http.{status}", "detail": detail}]}
    return Response(status, json=body, headers=headers)


def make_cursor_page(items: list[dict], path: str, cursor: str | None = None) -> Response:
    """Create a v2 listing page whose links.next carries the next cursor."""
    links = {"next": f"{API_BASE_URL}{path}?pageCursor={cursor}" if cursor else None}
    return Response(200, json={"data": items, "links": links})


def request_json(request: Request) -> dict:
    return json.loads(request.content or b"{}")


async def drain(stream: ProgressStream) -> list[Frame]:
    """Close a stream and collect every frame still queued."""
    stream.close()
    return [frame async for frame in stream]


def fake_id(n: int) -> str:
    """Deterministic UUID-shaped ID."""
    return f"{n:08x}-aaaa-4aaa-8aaa-aaaaaaaaaaaa"


def _last_segment(request: Request, index: int = -1) -> str:
    return request.url.path.rstrip("/").split("/")[index]


class CompanyBackend:
    """In-memory v1 companies API mounted on a respx router."""

    def __init__(self, router, companies: list[dict] | None = None, custom_fields: list[dict] | None = None):
        self.companies: dict[str, dict] = {c["id"]: dict(c) for c in companies or []}
        self.custom_fields = list(custom_fields or [])
        self.custom_values: dict[tuple[str, str], object] = {}
        self.created: list[dict] = []
        self.updated: list[tuple[str, dict]] = []
        self.deleted: list[str] = []
        self._counter = 1000

        value_path = r"^/companies/[^/]+/custom-fields/[^/]+/value$"
        router.get("/companies").mock(side_effect=self.list)
        router.post("/companies").mock(side_effect=self.create)
        router.get("/companies/custom-fields").mock(side_effect=self.list_custom_fields)
        router.route(method="PUT", path__regex=value_path).mock(side_effect=self.set_value)
        router.route(method="GET", path__regex=value_path).mock(side_effect=self.get_value)
        router.route(method="DELETE", path__regex=value_path).mock(side_effect=self.delete_value)
        router.route(method="GET", path__regex=r"^/companies/[^/]+$").mock(side_effect=self.get)
        router.route(method="PATCH", path__regex=r"^/companies/[^/]+$").mock(side_effect=self.update)
        router.route(method="DELETE", path__regex=r"^/companies/[^/]+$").mock(side_effect=self.delete)

    def list(self, request: Request) -> Response:
        offset = int(request.url.params.get("pageOffset", 0))
        limit = int(request.url.params.get("pageLimit", 100))
        return make_response(list(self.companies.values())[offset:offset + limit])

    def list_custom_fields(self, request: Request) -> Response:
        return make_response(self.custom_fields)

    def create(self, request: Request) -> Response:
        body = request_json(request)
        self._counter += 1
        company = {"id": fake_id(self._counter), **body}
        self.companies[company["id"]] = company
        self.created.append(body)
        return make_response(company, status=201)

    def get(self, request: Request) -> Response:
        company = self.companies.get(_last_segment(request))
        return make_response(company) if company else make_error(404, "Company not found")

    def update(self, request: Request) -> Response:
        company_id = _last_segment(request)
        if company_id not in self.companies:
            return make_error(404, "Company not found")
        body = request_json(request)["data"]
        self.companies[company_id].update(body)
        self.updated.append((company_id, body))
        return make_response(self.companies[company_id])

    def delete(self, request: Request) -> Response:
        company_id = _last_segment(request)
        if self.companies.pop(company_id, None) is None:
            return make_error(404, "Company not found")
        self.deleted.append(company_id)
        return Response(204)

    def set_value(self, request: Request) -> Response:
        key = (_last_segment(request, -4), _last_segment(request, -2))
        self.custom_values[key] = request_json(request)["data"]["value"]
        return make_response({})

    def get_value(self, request: Request) -> Response:
        key = (_last_segment(request, -4), _last_segment(request, -2))
        if key not in self.custom_values:
            return make_error(404, "No value")
        return make_response({"value": self.custom_values[key]})

    def delete_value(self, request: Request) -> Response:
        key = (_last_segment(request, -4), _last_segment(request, -2))
        if self.custom_values.pop(key, None) is None:
            return make_error(404, "No value")
        return Response(204)


@pytest.fixture
def companies_api(mock_api):
    """Empty in-memory companies backend; tests add records as needed."""
    return CompanyBackend(mock_api)
