"""Lazy page iteration over offset- and cursor-paginated endpoints."""

import copy
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlparse

from .api import ProductboardClient
from .config import DEFAULT_LIMIT, MAX_PAGES

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """One page of results.

    next_cursor is the position of the following page (an opaque cursor, or
    the next offset as a string) and is None on the last page.
    """

    number: int
    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    total: int | None = None


def extract_cursor(next_link: str | None) -> str | None:
    """Pull the pageCursor query parameter out of a links.next URL."""
    if not next_link:
        return None
    values = parse_qs(urlparse(str(next_link)).query).get("pageCursor")
    return values[0] if values and values[0] else None


class Paginator:
    """Async iterator of Pages for one listing.

    Two strategies:
    - offset: pageOffset/pageLimit query params; continues while a full page
      comes back, or while offset + limit < total when a total is reported.
    - cursor: opaque pageCursor taken from links.next (or from a top-level
      pageCursor key for older endpoints); continues while one is present.

    Iteration stops with a warning if the same cursor comes back twice in a
    row or if max_pages is reached with more data remaining. A Paginator
    can only be iterated once.
    """

    def __init__(
        self,
        client: ProductboardClient,
        path: str,
        *,
        style: str = "offset",
        limit: int = DEFAULT_LIMIT,
        params: dict[str, Any] | None = None,
        max_pages: int = MAX_PAGES,
        start: str | None = None,
        cursor_source: str = "links",
        search_body: dict[str, Any] | None = None,
        send_limit: bool = True,
    ):
        if style not in ("offset", "cursor"):
            raise ValueError(f"Unknown pagination style: {style}")
        self.client = client
        self.path = path
        self.style = style
        self.limit = limit
        self.params = dict(params or {})
        self.max_pages = max_pages
        self.start = start
        self.cursor_source = cursor_source
        self.search_body = search_body
        self.send_limit = send_limit

        self.pages_fetched = 0
        self.truncated = False
        self.repeated_cursor = False
        self.next_cursor: str | None = None
        self._started = False

    def __aiter__(self) -> AsyncIterator[Page]:
        if self._started:
            raise RuntimeError(f"Paginator for {self.path} has already been consumed")
        self._started = True
        if self.style == "offset":
            return self._iter_offset()
        return self._iter_cursor()

    async def _iter_offset(self) -> AsyncIterator[Page]:
        offset = int(self.start or 0)

        while True:
            if self.pages_fetched >= self.max_pages:
                self._truncate()
                return

            params = {**self.params, "pageLimit": self.limit, "pageOffset": offset}
            result = await self.client.call(
                "GET", self.path, params=params, label=f"fetch {self.path} offset {offset}"
            )
            self.pages_fetched += 1

            items = result.get("data") or []
            pagination = result.get("pagination") or {}
            total = pagination.get("total")

            if not items:
                has_more = False
            elif total is not None:
                reported_offset = pagination.get("offset", offset)
                reported_limit = pagination.get("limit", self.limit)
                has_more = reported_offset + reported_limit < total
            else:
                has_more = len(items) >= self.limit

            offset += self.limit
            self.next_cursor = str(offset) if has_more else None
            yield Page(self.pages_fetched, items, self.next_cursor, total)

            if not has_more:
                return

    async def _iter_cursor(self) -> AsyncIterator[Page]:
        cursor = self.start

        while True:
            if self.pages_fetched >= self.max_pages:
                self._truncate()
                return

            result = await self._fetch_cursor_page(cursor)
            self.pages_fetched += 1

            items = result.get("data") or []
            if self.cursor_source == "body":
                new_cursor = result.get("pageCursor") or None
            else:
                new_cursor = extract_cursor((result.get("links") or {}).get("next"))

            if new_cursor is not None and new_cursor == cursor:
                logger.warning(
                    "%s returned the same page cursor twice; stopping pagination after %d pages",
                    self.path, self.pages_fetched,
                )
                self.repeated_cursor = True
                new_cursor = None

            self.next_cursor = new_cursor
            yield Page(self.pages_fetched, items, new_cursor)

            if new_cursor is None:
                return
            cursor = new_cursor

    async def _fetch_cursor_page(self, cursor: str | None) -> dict[str, Any]:
        label = f"fetch {self.path} page {self.pages_fetched + 1}"

        if self.search_body is not None:
            body = copy.deepcopy(self.search_body)
            if cursor:
                body.setdefault("data", {})["pageCursor"] = cursor
            return await self.client.call("POST", self.path, json=body, label=label)

        params = dict(self.params)
        if self.send_limit:
            params["pageLimit"] = self.limit
        if cursor:
            params["pageCursor"] = cursor
        return await self.client.call("GET", self.path, params=params or None, label=label)

    def _truncate(self) -> None:
        if self.next_cursor is None:
            return
        self.truncated = True
        logger.warning(
            "%s: stopped after %d pages (page limit reached); results are truncated",
            self.path, self.max_pages,
        )


def paginate(client: ProductboardClient, path: str, **kwargs: Any) -> Paginator:
    """Create a Paginator. See Paginator for the supported keyword arguments."""
    return Paginator(client, path, **kwargs)


async def fetch_all_items(client: ProductboardClient, path: str, **kwargs: Any) -> list[dict[str, Any]]:
    """Collect every item of a listing into a list."""
    items: list[dict[str, Any]] = []
    async for page in paginate(client, path, **kwargs):
        items.extend(page.items)
    return items
