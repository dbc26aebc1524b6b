"""Row-to-record reconciliation: match, two-phase write, backfill."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .api import ProductboardClient
from .config import BACKFILL_DELAYS
from .exceptions import NotFoundError, ProductboardError, RowValidationError
from .models import InputRow, KeyCache
from .strategies import ResourceStrategy

if TYPE_CHECKING:
    from .stream import ProgressStream

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class MatchedBy(str, Enum):
    PRIMARY_KEY = "primaryKey"
    SECONDARY_KEY = "secondaryKey"
    NONE = "none"


@dataclass(frozen=True)
class MatchResult:
    """How a row maps onto the remote service.

    action is UPDATE iff remote_id is set.
    """

    action: Action
    remote_id: str | None = None
    matched_by: MatchedBy = MatchedBy.NONE


@dataclass
class BackfillTask:
    """Fields to write through the newer API once the record exists."""

    remote_id: str
    fields: dict[str, Any]
    row_num: int
    attempts: int = 0
    retry_delays: list[float] = field(default_factory=list)
    status: str = "pending"  # "pending", "succeeded", "failed"
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "remoteId": self.remote_id,
            "row": self.row_num,
            "fields": sorted(self.fields),
            "attempts": self.attempts,
            "retryDelays": list(self.retry_delays),
            "status": self.status,
            "error": self.error,
        }


@dataclass
class RowOutcome:
    """Result of reconciling one row."""

    row_num: int
    status: str  # "success", "failed", "skipped"
    action: Action | None = None
    remote_id: str | None = None
    matched_by: MatchedBy = MatchedBy.NONE
    error: str | None = None
    stripped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON logging."""
        result: dict[str, Any] = {
            "row": self.row_num,
            "action": self.action.value if self.action else None,
            "status": self.status,
            "id": self.remote_id,
        }
        if self.error:
            result["error"] = self.error
        if self.stripped:
            result["stripped"] = list(self.stripped)
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result


@dataclass
class ReconcileResult:
    """Counts and per-row outcomes for one reconcile() call."""

    total: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    warnings: int = 0
    processed: int = 0
    stopped: bool = False
    outcomes: list[RowOutcome] = field(default_factory=list)
    backfill_queue: list[BackfillTask] = field(default_factory=list)
    rows: list[InputRow] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
            "warnings": self.warnings,
            "stopped": self.stopped,
        }


class Reconciler:
    """Reconciles input rows against one resource type.

    Rows are processed strictly in order with one write in flight at a
    time. Fields the primary write path cannot set are queued as backfill
    tasks and written in a second pass once every row has been handled.

    Args:
        client: Open API client
        strategy: Resource strategy (payloads, matching, backfill)
        cache: Lookup state shared across chunks of the same job
        stream: Optional progress stream; its cancellation flag is checked
            between rows
        backfill_delays: Waits before each retry of a backfill that hit 404
        sleep: Awaitable sleep, injectable for tests
        percent_range: Progress percentage reported for the first/last row
    """

    def __init__(
        self,
        client: ProductboardClient,
        strategy: ResourceStrategy,
        cache: KeyCache | None = None,
        stream: "ProgressStream | None" = None,
        backfill_delays: tuple[float, ...] = BACKFILL_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        percent_range: tuple[float, float] = (5.0, 95.0),
    ):
        self.client = client
        self.strategy = strategy
        self.cache = cache if cache is not None else KeyCache()
        self.stream = stream
        self.backfill_delays = tuple(backfill_delays)
        self._sleep = sleep
        self.percent_range = percent_range

    def _log(self, level: str, message: str, detail: Any = None) -> None:
        if self.stream is not None:
            self.stream.log(level, message, detail)

    def _progress(self, message: str, done: int, total: int) -> None:
        if self.stream is None:
            return
        low, high = self.percent_range
        percent = high if total == 0 else low + done / total * (high - low)
        self.stream.progress(message, percent)

    async def match(self, row: InputRow) -> MatchResult:
        """Resolve a row to UPDATE or CREATE.

        Secondary key first, then an existence check on the primary key.
        The first hit wins.
        """
        secondary = self.strategy.secondary_key(row)
        if secondary:
            remote_id = await self.strategy.find_by_secondary_key(self.client, secondary, self.cache)
            if remote_id:
                return MatchResult(Action.UPDATE, remote_id, MatchedBy.SECONDARY_KEY)

        primary = self.strategy.primary_key(row)
        if primary and await self.strategy.exists(self.client, primary, self.cache):
            return MatchResult(Action.UPDATE, primary, MatchedBy.PRIMARY_KEY)

        return MatchResult(Action.CREATE)

    async def _write(self, match: MatchResult, payload: dict[str, Any]) -> str:
        if match.action is Action.UPDATE:
            await self.strategy.update(self.client, match.remote_id, payload)
            return match.remote_id
        return await self.strategy.create(self.client, payload)

    def check_row(self, row: InputRow) -> None:
        """Raise RowValidationError if the row was malformed or fails validation."""
        if row.parse_error:
            raise RowValidationError(row.row_num, None, row.parse_error)
        errors, _ = self.strategy.validate_row(row)
        if errors:
            raise RowValidationError(row.row_num, errors[0].field, "; ".join(e.message for e in errors))

    async def reconcile_row(self, row: InputRow) -> tuple[RowOutcome, InputRow, BackfillTask | None]:
        """Match and write one valid row.

        Raises ProductboardError when the primary write fails after the
        single compensating retry.
        """
        match = await self.match(row)
        outcome = RowOutcome(row.row_num, "success", match.action, match.remote_id, match.matched_by)

        if match.matched_by is MatchedBy.NONE and self.strategy.primary_key(row):
            outcome.warnings.append(
                f"{self.strategy.primary_key_field} {self.strategy.primary_key(row)} not found - creating new record"
            )

        if match.action is Action.UPDATE:
            payload = self.strategy.build_update_payload(row)
        else:
            payload = self.strategy.build_create_payload(row)

        try:
            remote_id = await self._write(match, payload)
        except ProductboardError as exc:
            stripped = self.strategy.unsettable_field(exc, payload)
            if stripped is None:
                raise
            logger.warning(
                "Row %d: %s rejected (%s), retrying without it", row.row_num, stripped, exc.detail
            )
            payload = self.strategy.strip_field(payload, stripped)
            outcome.stripped.append(stripped)
            remote_id = await self._write(match, payload)

        outcome.remote_id = remote_id
        self.cache.remember(self.strategy.secondary_key(row), remote_id)
        if match.action is Action.CREATE:
            row = row.with_value(self.strategy.primary_key_field, remote_id)

        try:
            outcome.warnings.extend(await self.strategy.after_write(self.client, remote_id, row))
        except ProductboardError as exc:
            outcome.warnings.append(f"Follow-up write failed: {exc.detail}")

        fields, warnings = self.strategy.backfill_fields(row, outcome.stripped, self.cache)
        outcome.warnings.extend(warnings)
        task = BackfillTask(remote_id, fields, row.row_num) if fields else None
        return outcome, row, task

    async def reconcile(self, rows: list[InputRow]) -> ReconcileResult:
        """Reconcile rows in order, then run the backfill pass.

        Row failures are counted and never stop the loop. Cancellation is
        honoured between rows; rows already written still get their
        backfill.
        """
        result = ReconcileResult(total=len(rows))
        await self.strategy.prepare(self.client, self.cache)

        for index, row in enumerate(rows):
            if self.stream is not None and self.stream.cancelled:
                result.stopped = True
                logger.warning("Reconciliation cancelled before row %d", row.row_num)
                self._log("warn", f"Stopped by user after {result.processed} rows")
                break

            row = self.strategy.prepare_row(row, self.cache)
            label = self.strategy.label(row)
            try:
                self.check_row(row)
                outcome, row, task = await self.reconcile_row(row)
            except RowValidationError as exc:
                outcome = RowOutcome(row.row_num, "skipped", error=exc.message)
                result.errors += 1
                logger.error("Row %d: %s", row.row_num, exc.message)
                self._log("error", f"Row {row.row_num}: skipped - {exc.message}")
            except ProductboardError as exc:
                outcome = RowOutcome(row.row_num, "failed", error=exc.detail)
                result.errors += 1
                logger.error("Row %d: %s", row.row_num, exc.detail)
                self._log("error", f"Row {row.row_num}: {exc.detail}", exc.details or None)
            else:
                if outcome.action is Action.CREATE:
                    result.created += 1
                    self._log("success", f"Row {row.row_num}: created {label} ({outcome.remote_id})")
                else:
                    result.updated += 1
                    self._log("info", f"Row {row.row_num}: updated {label} ({outcome.remote_id})")
                if task is not None:
                    result.backfill_queue.append(task)

            for warning in outcome.warnings:
                result.warnings += 1
                self._log("warn", f"Row {row.row_num}: {warning}")

            result.outcomes.append(outcome)
            result.rows.append(row)
            result.processed += 1
            self._progress(f"Processed {index + 1} of {len(rows)}", index + 1, len(rows))

        if result.backfill_queue:
            await self.run_backfill(result)

        return result

    async def run_backfill(self, result: ReconcileResult) -> None:
        """Write every queued task, isolating failures per task."""
        self._log("info", f"Backfilling {len(result.backfill_queue)} records")
        for task in result.backfill_queue:
            await self.backfill_task(task)
            for warning in task.warnings:
                result.warnings += 1
                self._log("warn", f"Row {task.row_num}: {warning}")
            if task.status == "failed":
                result.warnings += 1
                self._log("warn", f"Row {task.row_num}: backfill failed - {task.error}")

    async def backfill_task(self, task: BackfillTask) -> BackfillTask:
        """Run one backfill task to a terminal status.

        A 404 means the new record is not visible to the newer API yet, so
        it is retried after each configured delay. Any other rejection gets
        one retry with the strategy's reduced field set, if it has one.
        """
        fields = task.fields
        fallback_used = False

        while True:
            task.attempts += 1
            try:
                task.warnings.extend(await self.strategy.backfill(self.client, task.remote_id, fields))
            except NotFoundError as exc:
                retry = len(task.retry_delays)
                if retry >= len(self.backfill_delays):
                    return self._fail(task, exc)
                delay = self.backfill_delays[retry]
                task.retry_delays.append(delay)
                logger.info(
                    "Backfill %s: not found yet, retrying in %.1fs (retry %d/%d)",
                    task.remote_id, delay, retry + 1, len(self.backfill_delays),
                )
                await self._sleep(delay)
                continue
            except ProductboardError as exc:
                fallback = None if fallback_used else self.strategy.backfill_fallback(fields)
                if fallback is None:
                    return self._fail(task, exc)
                logger.warning(
                    "Backfill %s rejected (%s), retrying with %s only",
                    task.remote_id, exc.detail, ", ".join(sorted(fallback)),
                )
                task.warnings.append(f"{', '.join(sorted(set(fields) - set(fallback)))} not set: {exc.detail}")
                fields = fallback
                fallback_used = True
                continue

            task.status = "succeeded"
            return task

    def _fail(self, task: BackfillTask, exc: ProductboardError) -> BackfillTask:
        task.status = "failed"
        task.error = exc.detail
        logger.error("Row %d: backfill of %s failed: %s", task.row_num, task.remote_id, exc.detail)
        return task


async def reconcile(
    client: ProductboardClient,
    rows: list[InputRow],
    strategy: ResourceStrategy,
    **kwargs: Any,
) -> ReconcileResult:
    """Reconcile rows with a fresh Reconciler. See Reconciler for kwargs."""
    return await Reconciler(client, strategy, **kwargs).reconcile(rows)
