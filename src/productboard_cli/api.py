"""Async Productboard API client with header-driven throttling and retry."""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from .config import (
    API_BASE_URL,
    API_BASE_URL_EU,
    API_VERSION_HEADER,
    BACKOFF_BASE,
    BACKOFF_JITTER,
    BASE_DELAY,
    CRITICAL_FLOOR,
    CRITICAL_REMAINING,
    DEFAULT_RATE_LIMIT,
    MAX_ATTEMPTS,
    REQUEST_TIMEOUT,
    SLOW_REMAINING,
)
from .exceptions import NotFoundError, ProductboardError, error_for_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

# (limit header, remaining header) pairs, most specific first
RATE_LIMIT_HEADERS = (
    ("x-ratelimit-limit-second", "x-ratelimit-remaining-second"),
    ("ratelimit-limit", "ratelimit-remaining"),
    ("x-ratelimit-limit", "x-ratelimit-remaining"),
)


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).split(",")[0].strip())
    except ValueError:
        return None


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds. HTTP dates are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


@dataclass
class RateLimitState:
    """Rate limit budget observed from the most recent response headers."""

    remaining: int | None = None
    limit: int = DEFAULT_RATE_LIMIT
    last_request_at: float = 0.0

    def reset(self) -> None:
        """Forget observed state, e.g. at the start of a new chunk."""
        self.remaining = None
        self.limit = DEFAULT_RATE_LIMIT
        self.last_request_at = 0.0

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Update limit/remaining from whichever header convention is present."""
        limit: int | None = None
        remaining: int | None = None
        for limit_header, remaining_header in RATE_LIMIT_HEADERS:
            if limit is None:
                limit = _parse_int(headers.get(limit_header))
            if remaining is None:
                remaining = _parse_int(headers.get(remaining_header))

        if limit is not None:
            self.limit = limit
        if remaining is not None:
            self.remaining = remaining


class RateLimiter:
    """Spaces requests according to the remaining budget in RateLimitState."""

    def __init__(
        self,
        state: RateLimitState | None = None,
        base_delay: float = BASE_DELAY,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state or RateLimitState()
        self.base_delay = base_delay
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()

    def compute_delay(self) -> float:
        """Minimum spacing between calls for the current remaining budget."""
        remaining = self.state.remaining
        if remaining is None or remaining >= SLOW_REMAINING:
            return self.base_delay
        if remaining < CRITICAL_REMAINING:
            return max(CRITICAL_FLOOR, self.base_delay * 5)
        return self.base_delay * 2

    async def throttle(self) -> None:
        """Wait until the computed delay has elapsed since the previous call."""
        async with self._lock:
            delay = self.compute_delay()
            elapsed = self._clock() - self.state.last_request_at
            if elapsed < delay:
                await self._sleep(delay - elapsed)
            self.state.last_request_at = self._clock()


class ProductboardClient:
    """Async client for the Productboard API (v1 and v2 endpoints)."""

    def __init__(
        self,
        api_token: str,
        eu: bool = False,
        *,
        base_url: str | None = None,
        rate_limit: RateLimitState | None = None,
        base_delay: float = BASE_DELAY,
        max_attempts: int = MAX_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_token = api_token
        self.base_url = base_url or (API_BASE_URL_EU if eu else API_BASE_URL)
        self.rate_limiter = RateLimiter(rate_limit, base_delay=base_delay, sleep=sleep)
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def rate_limit(self) -> RateLimitState:
        return self.rate_limiter.state

    async def __aenter__(self) -> "ProductboardClient":
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
                "X-Version": API_VERSION_HEADER,
            },
            timeout=REQUEST_TIMEOUT,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make one throttled API request.

        Raises ProductboardError on non-2xx and on transport failures.
        """
        if not self._client:
            raise ProductboardError("Client not initialized. Use async context manager.")

        await self.rate_limiter.throttle()

        method = method.upper()
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            # No status: not retried, a write may already have landed
            raise ProductboardError(
                f"{method} {path} failed: {exc.__class__.__name__}: {exc}",
                details={"errors": [{"detail": f"Network error: {exc}"}]},
            ) from exc
        self.rate_limit.update_from_headers(response.headers)
        status = response.status_code

        if status >= 300:
            try:
                details = response.json() if response.content else {}
            except ValueError:
                details = {"content": response.text[:500]}
            if not isinstance(details, dict):
                details = {"content": details}
            error_class = error_for_status(status)
            raise error_class(
                f"{method} {path} -> {status}: {response.text[:500]}",
                status_code=status,
                details=details,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        if not response.content:
            return {}

        try:
            result = response.json()
        except ValueError:
            raise ProductboardError(
                f"Invalid JSON response from {path}",
                status_code=status,
                details={"content": response.text[:500]},
            )
        return result if isinstance(result, dict) else {"data": result}

    async def with_retry(self, fn: Callable[[], Awaitable[T]], label: str = "request") -> T:
        """Call fn, retrying 429 and 5xx failures with backoff.

        A 429 carrying Retry-After sleeps exactly that long; everything else
        retryable uses exponential backoff with jitter. Other errors propagate
        immediately and the last error is re-raised once attempts run out.
        """
        for attempt in range(self.max_attempts):
            try:
                return await fn()
            except ProductboardError as exc:
                if not exc.retryable or attempt == self.max_attempts - 1:
                    raise

                if exc.status_code == 429 and exc.retry_after is not None:
                    delay = exc.retry_after
                    logger.warning("%s: 429 rate limited, Retry-After: %ss", label, delay)
                else:
                    delay = BACKOFF_BASE * (2**attempt) + random.uniform(0, BACKOFF_JITTER)
                    logger.warning(
                        "%s: %s error (attempt %d), backoff %.0fms",
                        label, exc.status_code, attempt + 1, delay * 1000,
                    )
                await self._sleep(delay)

        raise ProductboardError(f"{label}: no attempts made")

    async def call(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
        label: str | None = None,
    ) -> dict[str, Any]:
        """request() wrapped in with_retry()."""
        return await self.with_retry(
            lambda: self.request(method, path, json=json, params=params),
            label or f"{method.upper()} {path}",
        )

    # Companies (v1)

    async def get_company(self, company_id: str) -> dict[str, Any] | None:
        """Fetch a company by ID. Returns None if not found."""
        try:
            result = await self.call("GET", f"/companies/{company_id}")
        except NotFoundError:
            return None
        return result.get("data") or None

    async def create_company(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a company. The v1 create body is sent unwrapped."""
        result = await self.call("POST", "/companies", json=payload, label="create company")
        return result.get("data") or result

    async def update_company(self, company_id: str, payload: dict[str, Any]) -> None:
        """Patch a company. The v1 update body is wrapped in a data envelope."""
        await self.call(
            "PATCH", f"/companies/{company_id}", json={"data": payload},
            label=f"update company {company_id}",
        )

    async def delete_company(self, company_id: str) -> None:
        await self.call("DELETE", f"/companies/{company_id}", label=f"delete company {company_id}")

    async def set_company_custom_value(
        self, company_id: str, field_id: str, field_type: str, value: Any
    ) -> None:
        await self.call(
            "PUT",
            f"/companies/{company_id}/custom-fields/{field_id}/value",
            json={"data": {"type": field_type, "value": value}},
            label=f"set custom field {field_id}",
        )

    async def delete_company_custom_value(self, company_id: str, field_id: str) -> bool:
        """Clear a custom field value. Returns False if it was already empty."""
        try:
            await self.call(
                "DELETE",
                f"/companies/{company_id}/custom-fields/{field_id}/value",
                label=f"delete custom field {field_id}",
            )
        except NotFoundError:
            return False
        return True

    async def get_company_custom_value(self, company_id: str, field_id: str) -> Any:
        """Fetch one custom field value. Returns None if unset."""
        try:
            result = await self.call(
                "GET", f"/companies/{company_id}/custom-fields/{field_id}/value",
                label=f"get custom field {field_id}",
            )
        except NotFoundError:
            return None
        return (result.get("data") or {}).get("value")

    # Notes (v1 writes, v2 reads/backfill)

    async def get_note(self, note_id: str) -> dict[str, Any] | None:
        try:
            result = await self.call("GET", f"/notes/{note_id}")
        except NotFoundError:
            return None
        return result.get("data") or None

    async def find_notes_by_source(self, record_id: str) -> list[dict[str, Any]]:
        """Search v2 notes by source record ID."""
        result = await self.call(
            "GET", "/v2/notes", params={"source[recordId]": record_id},
            label=f"find note by source {record_id}",
        )
        return result.get("data") or []

    async def create_note(self, payload: dict[str, Any]) -> str:
        """Create a note via v1 (unwrapped body) and return its ID."""
        result = await self.call("POST", "/notes", json=payload, label="create note")
        note_id = result.get("id") or (result.get("data") or {}).get("id")
        if not note_id:
            raise ProductboardError("API did not return a note ID", details=result)
        return note_id

    async def update_note(self, note_id: str, payload: dict[str, Any]) -> None:
        """Update a note via v1 (unwrapped body)."""
        await self.call("PATCH", f"/notes/{note_id}", json=payload, label=f"update note {note_id}")

    async def patch_note_v2(self, note_id: str, ops: list[dict[str, Any]]) -> None:
        """Apply set operations to a note through the v2 API."""
        await self.call(
            "PATCH", f"/v2/notes/{note_id}", json={"data": {"patch": ops}},
            label=f"backfill note {note_id}",
        )

    async def link_note(self, note_id: str, entity_id: str) -> None:
        await self.call(
            "POST",
            f"/v2/notes/{note_id}/relationships",
            json={"data": {"type": "link", "target": {"id": entity_id, "type": "link"}}},
            label=f"link note {note_id} -> entity {entity_id}",
        )

    async def delete_note(self, note_id: str) -> None:
        await self.call("DELETE", f"/v2/notes/{note_id}", label=f"delete note {note_id}")

    # Hierarchy entities (v2)

    async def get_entity(self, entity_id: str) -> dict[str, Any] | None:
        try:
            result = await self.call("GET", f"/v2/entities/{entity_id}")
        except NotFoundError:
            return None
        return result.get("data") or None

    async def create_entity(self, entity_type: str, fields: dict[str, Any]) -> str:
        result = await self.call(
            "POST", "/v2/entities", json={"data": {"type": entity_type, "fields": fields}},
            label=f"create {entity_type}",
        )
        entity_id = (result.get("data") or {}).get("id")
        if not entity_id:
            raise ProductboardError("API did not return an entity ID", details=result)
        return entity_id

    async def update_entity(self, entity_id: str, fields: dict[str, Any]) -> None:
        await self.call(
            "PATCH", f"/v2/entities/{entity_id}", json={"data": {"fields": fields}},
            label=f"update entity {entity_id}",
        )

    async def patch_entity(self, entity_id: str, ops: list[dict[str, Any]]) -> None:
        await self.call(
            "PATCH", f"/v2/entities/{entity_id}", json={"data": {"patch": ops}},
            label=f"backfill entity {entity_id}",
        )

    async def get_entity_configuration(self, entity_type: str) -> dict[str, Any]:
        result = await self.call(
            "GET", f"/v2/entities/configurations/{entity_type}",
            label=f"fetch {entity_type} configuration",
        )
        return result.get("data") or {}
