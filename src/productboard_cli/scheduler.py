"""Chunked, resumable batch jobs.

A job is an ordered list of chunks persisted in a key/value store. Each
call to process_next_job() runs one chunk with a fresh API client, so a
driver can resume the job from a new process at any chunk boundary.
"""

import json
import logging
import os
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from .api import ProductboardClient
from .config import CHUNK_SIZE, JOB_CACHE_SLOT, JOB_INPUT_SLOT, JOB_SLOT, MAX_CHUNKS, RESOURCES
from .exceptions import JobError
from .models import KeyCache

if TYPE_CHECKING:
    from .stream import ProgressStream

logger = logging.getLogger(__name__)

COUNT_KEYS = ("created", "updated", "deleted", "skipped", "exported", "errors", "warnings")


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class Chunk:
    """One resumable unit of work."""

    index: int
    type: str  # handler name, e.g. "import-chunk"
    params: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "type": self.type,
            "params": self.params,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Chunk":
        return cls(
            index=data["index"],
            type=data["type"],
            params=dict(data.get("params") or {}),
            status=JobStatus(data.get("status", "pending")),
            result=data.get("result"),
            error=data.get("error"),
        )


@dataclass
class ChunkResult:
    """What a chunk handler reports back.

    continuation holds the params of a follow-up chunk when the handler
    found more work than it was given (e.g. another page cursor). With
    stopped set, the continuation replaces the chunk's own params instead
    so the chunk resumes where it was cancelled.
    """

    counts: dict[str, int] = field(default_factory=dict)
    continuation: dict[str, Any] | None = None
    stopped: bool = False
    info: dict[str, Any] = field(default_factory=dict)
    outcomes: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"counts": dict(self.counts), "stopped": self.stopped, "info": dict(self.info)}


@dataclass
class Job:
    """A batch job and its chunk list."""

    id: str
    operation: str  # "import", "export", "delete"
    resource: str
    chunks: list[Chunk] = field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    params: dict[str, Any] = field(default_factory=dict)
    totals: dict[str, int] = field(default_factory=lambda: {k: 0 for k in COUNT_KEYS})
    info: dict[str, Any] = field(default_factory=dict)
    truncated: bool = False
    estimate: int = 0
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def next_chunk(self) -> Chunk | None:
        """A chunk left running by an interrupted execution first, then the next pending one."""
        for status in (JobStatus.RUNNING, JobStatus.PENDING):
            for chunk in self.chunks:
                if chunk.status is status:
                    return chunk
        return None

    @property
    def has_more(self) -> bool:
        return self.next_chunk() is not None

    def count(self, status: JobStatus) -> int:
        return sum(1 for c in self.chunks if c.status is status)

    def add_counts(self, counts: dict[str, int]) -> None:
        for key, value in counts.items():
            self.totals[key] = self.totals.get(key, 0) + int(value)

    def summary(self) -> dict[str, Any]:
        return {
            "jobId": self.id,
            "operation": self.operation,
            "resource": self.resource,
            "status": self.status.value,
            **self.totals,
            "failedChunks": self.count(JobStatus.FAILED),
            "truncated": self.truncated,
            **self.info,
        }

    def progress(self) -> dict[str, Any]:
        return {
            "jobId": self.id,
            "operation": self.operation,
            "resource": self.resource,
            "status": self.status.value,
            "chunks": len(self.chunks),
            "completedChunks": self.count(JobStatus.COMPLETED),
            "failedChunks": self.count(JobStatus.FAILED),
            "pendingChunks": self.count(JobStatus.PENDING) + self.count(JobStatus.RUNNING),
            "estimate": self.estimate,
            **self.totals,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation,
            "resource": self.resource,
            "chunks": [c.to_dict() for c in self.chunks],
            "status": self.status.value,
            "params": self.params,
            "totals": self.totals,
            "info": self.info,
            "truncated": self.truncated,
            "estimate": self.estimate,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            operation=data["operation"],
            resource=data["resource"],
            chunks=[Chunk.from_dict(c) for c in data.get("chunks") or []],
            status=JobStatus(data.get("status", "pending")),
            params=dict(data.get("params") or {}),
            totals=dict(data.get("totals") or {}),
            info=dict(data.get("info") or {}),
            truncated=bool(data.get("truncated", False)),
            estimate=int(data.get("estimate", 0)),
            created_at=data.get("created_at", ""),
        )


class JobStore(Protocol):
    """Key/value persistence for job state."""

    def get(self, key: str) -> Any: ...

    def put(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryJobStore:
    """In-process store, for the server and tests."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def put(self, key: str, value: Any) -> None:
        # stored as JSON text: get() always returns a fresh copy
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileJobStore:
    """One JSON file per key in a state directory, written atomically."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def put(self, key: str, value: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f)
        os.replace(tmp_path, path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


@dataclass
class ChunkContext:
    """Everything a chunk handler may touch."""

    job: Job
    chunk: Chunk
    client: ProductboardClient
    cache: KeyCache
    inputs: dict[str, Any]
    stream: "ProgressStream | None" = None

    @property
    def percent_range(self) -> tuple[float, float]:
        """Share of overall progress covered by this chunk."""
        total = max(len(self.job.chunks), 1)
        return (self.chunk.index / total * 100, (self.chunk.index + 1) / total * 100)


@dataclass
class JobPlan:
    """How a start request turns into chunks.

    chunks(size) returns (type, params) pairs for a given chunk size.
    """

    operation: str
    resource: str
    estimate: int
    chunks: Callable[[int], list[tuple[str, dict[str, Any]]]]
    params: dict[str, Any] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    force_batch: bool = False


ChunkHandler = Callable[[ChunkContext], Awaitable[ChunkResult]]
Planner = Callable[[dict[str, Any], ProductboardClient], Awaitable[JobPlan]]
ClientFactory = Callable[[], ProductboardClient]


class BatchScheduler:
    """Runs one job at a time, one chunk per process_next_job() call.

    Args:
        store: Persistence for job, cache and input blobs
        client_factory: Returns a new, unopened client; called once per chunk
            so no rate limit state leaks across chunks
        handlers: Chunk type -> handler
        planners: Operation name -> planner
        chunk_size: Work items per chunk in batch mode
        max_chunks: Ceiling on dynamically appended chunks
        on_outcomes: Called with the per-row outcomes of every chunk
    """

    def __init__(
        self,
        store: JobStore,
        client_factory: ClientFactory,
        handlers: dict[str, ChunkHandler],
        planners: dict[str, Planner],
        chunk_size: int = CHUNK_SIZE,
        max_chunks: int = MAX_CHUNKS,
        on_outcomes: Callable[[list[dict[str, Any]]], None] | None = None,
    ):
        self.store = store
        self.client_factory = client_factory
        self.handlers = handlers
        self.planners = planners
        self.chunk_size = chunk_size
        self.max_chunks = max_chunks
        self.on_outcomes = on_outcomes

    def load_job(self) -> Job | None:
        data = self.store.get(JOB_SLOT)
        return Job.from_dict(data) if data else None

    def save_job(self, job: Job) -> None:
        self.store.put(JOB_SLOT, job.to_dict())

    def clear(self) -> None:
        for key in (JOB_SLOT, JOB_CACHE_SLOT, JOB_INPUT_SLOT):
            self.store.delete(key)

    def create_job(
        self,
        chunks: list[tuple[str, dict[str, Any]]],
        operation: str,
        resource: str,
        params: dict[str, Any] | None = None,
        inputs: dict[str, Any] | None = None,
        estimate: int = 0,
    ) -> Job:
        """Persist a new job. Raises JobError if one is already active."""
        if self.store.get(JOB_SLOT):
            raise JobError("A job is already in progress. Finish or cancel it first.")
        if not chunks:
            raise JobError("A job needs at least one chunk")

        job = Job(
            id=uuid.uuid4().hex,
            operation=operation,
            resource=resource,
            chunks=[Chunk(i, chunk_type, dict(p)) for i, (chunk_type, p) in enumerate(chunks)],
            params=dict(params or {}),
            estimate=estimate,
        )
        self.store.put(JOB_INPUT_SLOT, inputs or {})
        self.store.delete(JOB_CACHE_SLOT)
        self.save_job(job)
        logger.info("Created %s job %s for %s with %d chunks", operation, job.id, resource, len(job.chunks))
        return job

    async def start_job(self, payload: dict[str, Any], stream: "ProgressStream | None" = None) -> dict[str, Any]:
        """Plan a job and either start it in batch mode or run it now.

        Above the resource's chunk threshold (or with batch requested) the
        job is split into chunks and left for process_next_job(). Otherwise
        it runs as a single chunk before returning its summary. A cancelled
        stream stops the run after the current chunk and clears the job.
        """
        if self.store.get(JOB_SLOT):
            raise JobError("A job is already in progress. Finish or cancel it first.")

        operation = payload.get("operation")
        planner = self.planners.get(operation)
        if planner is None:
            raise JobError(f"Unknown operation: {operation}. Valid: {list(self.planners.keys())}")

        async with self.client_factory() as client:
            plan = await planner(payload, client)

        config = RESOURCES.get(plan.resource)
        threshold = config.chunk_threshold if config else 0
        batch = plan.force_batch or plan.estimate > threshold

        size = self.chunk_size if batch else max(plan.estimate, 1)
        job = self.create_job(
            plan.chunks(size), plan.operation, plan.resource,
            params={**plan.params, "batch": batch}, inputs=plan.inputs, estimate=plan.estimate,
        )

        if batch:
            return {"batchStarted": True, "jobId": job.id, "estimate": plan.estimate, "chunks": len(job.chunks)}

        while True:
            step = await self.process_next_job(stream)
            if not step["hasMore"]:
                return step["summary"]
            if stream is not None and stream.cancelled:
                return self.stop_job()

    async def process_next_job(self, stream: "ProgressStream | None" = None) -> dict[str, Any]:
        """Run the next chunk of the active job.

        Returns:
            {"hasMore", "summary", "progress", "outcomes"}; summary is set
            exactly once, on the call that finishes the job.
        """
        job = self.load_job()
        if job is None:
            return {"hasMore": False, "summary": None, "progress": None, "outcomes": []}

        chunk = job.next_chunk()
        if chunk is None:
            return self._finish(job, [])

        if chunk.status is JobStatus.RUNNING:
            logger.warning("Resuming chunk %d of job %s left running by an earlier execution", chunk.index, job.id)
        chunk.status = JobStatus.RUNNING
        job.status = JobStatus.RUNNING
        self.save_job(job)

        cache = KeyCache.from_dict(self.store.get(JOB_CACHE_SLOT))
        inputs = self.store.get(JOB_INPUT_SLOT) or {}
        outcomes: list[dict[str, Any]] = []
        logger.info("Job %s: running chunk %d/%d (%s)", job.id, chunk.index + 1, len(job.chunks), chunk.type)

        try:
            handler = self.handlers.get(chunk.type)
            if handler is None:
                raise JobError(f"Unknown chunk type: {chunk.type}")
            async with self.client_factory() as client:
                client.rate_limit.reset()
                result = await handler(ChunkContext(job, chunk, client, cache, inputs, stream))
        except Exception as e:
            # Chunk failures are recorded and never stop the job
            logger.exception("Job %s: chunk %d failed", job.id, chunk.index)
            chunk.status = JobStatus.FAILED
            chunk.error = str(e) or e.__class__.__name__
            job.add_counts({"errors": 1})
            if stream is not None:
                stream.log("error", f"Chunk {chunk.index + 1} failed: {chunk.error}")
        else:
            outcomes = result.outcomes
            if self.on_outcomes is not None and outcomes:
                self.on_outcomes(outcomes)
            job.add_counts(result.counts)
            job.info.update(result.info)
            self._apply_result(job, chunk, result)

        self.store.put(JOB_CACHE_SLOT, cache.to_dict())

        if job.has_more:
            self.save_job(job)
            return {"hasMore": True, "summary": None, "progress": job.progress(), "outcomes": outcomes}
        return self._finish(job, outcomes)

    def _apply_result(self, job: Job, chunk: Chunk, result: ChunkResult) -> None:
        if result.stopped and result.continuation is not None:
            chunk.params = {**chunk.params, **result.continuation}
            chunk.status = JobStatus.PENDING
            logger.info("Job %s: chunk %d stopped early, will resume at %s", job.id, chunk.index, result.continuation)
            return

        chunk.status = JobStatus.COMPLETED
        chunk.result = result.to_dict()
        if result.continuation is None:
            return

        if len(job.chunks) >= self.max_chunks:
            job.truncated = True
            logger.warning(
                "Job %s reached the %d chunk limit; remaining work was dropped", job.id, self.max_chunks
            )
            return
        job.chunks.append(Chunk(len(job.chunks), chunk.type, {**chunk.params, **result.continuation}))

    def _finish(self, job: Job, outcomes: list[dict[str, Any]]) -> dict[str, Any]:
        all_failed = job.chunks and job.count(JobStatus.FAILED) == len(job.chunks)
        job.status = JobStatus.FAILED if all_failed else JobStatus.COMPLETED
        summary = job.summary()
        self.clear()
        logger.info("Job %s %s: %s", job.id, job.status.value, json.dumps(job.totals))
        return {"hasMore": False, "summary": summary, "progress": job.progress(), "outcomes": outcomes}

    def stop_job(self) -> dict[str, Any] | None:
        """End the active job early, keeping its totals. Returns its summary."""
        job = self.load_job()
        if job is None:
            return None
        job.status = JobStatus.STOPPED
        summary = {**job.summary(), "stopped": True}
        self.clear()
        logger.warning("Job %s stopped after %d of %d chunks", job.id, job.count(JobStatus.COMPLETED), len(job.chunks))
        return summary

    def cancel_job(self) -> dict[str, Any]:
        """Drop the active job and its cache. Records already written stay written."""
        job = self.load_job()
        self.clear()
        if job is None:
            return {"cancelled": False, "summary": None}
        logger.info("Job %s cancelled", job.id)
        return {"cancelled": True, "summary": job.progress()}

    def status(self) -> dict[str, Any] | None:
        job = self.load_job()
        return job.progress() if job else None
