"""Typed progress frames delivered over a one-way channel (Server-Sent Events)."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .exceptions import ProductboardError

logger = logging.getLogger(__name__)

LOG_LEVELS = ("info", "success", "warn", "error")
TERMINAL_EVENTS = ("complete", "error")


@dataclass(frozen=True)
class Frame:
    """One event on the stream."""

    event: str  # "progress", "log", "complete", "error"
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def encode(self) -> str:
        """Serialize as a Server-Sent Events message."""
        return f"event: {self.event}\ndata: {json.dumps(self.data, default=str)}\n\n"


class ProgressStream:
    """Queue of frames between one producer (a job) and one consumer (a transport).

    The producer never blocks and never sees the transport. Exactly one
    terminal frame (complete or error) is delivered; frames emitted after it
    are dropped. close() ends iteration for the consumer.

    Cancellation is cooperative: cancel() only sets a flag that the
    producer checks between units of work.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Frame | None] = asyncio.Queue()
        self._cancelled = False
        self._terminated = False
        self._closed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def closed(self) -> bool:
        return self._closed

    def cancel(self) -> None:
        if not self._cancelled:
            logger.info("Progress stream cancelled by consumer")
        self._cancelled = True

    def emit(self, frame: Frame) -> None:
        if self._closed or self._terminated:
            logger.debug("Dropping %s frame after stream end", frame.event)
            return
        if frame.terminal:
            self._terminated = True
        self._queue.put_nowait(frame)

    def progress(self, message: str, percent: float) -> None:
        percent = round(min(100.0, max(0.0, percent)), 1)
        self.emit(Frame("progress", {"message": message, "percent": percent}))

    def log(self, level: str, message: str, detail: Any = None) -> None:
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        data: dict[str, Any] = {
            "level": level,
            "message": message,
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        if detail is not None:
            data["detail"] = detail
        self.emit(Frame("log", data))

    def complete(self, summary: dict[str, Any]) -> None:
        self.emit(Frame("complete", summary))

    def error(self, message: str, detail: Any = None) -> None:
        data: dict[str, Any] = {"message": message}
        if detail is not None:
            data["detail"] = detail
        self.emit(Frame("error", data))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[Frame]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    async def run(self, work: Callable[["ProgressStream"], Awaitable[dict[str, Any] | None]]) -> None:
        """Run work against this stream, then terminate and close it.

        A result becomes the complete frame unless work emitted its own
        terminal frame. An exception becomes an error frame carrying a
        readable cause rather than a traceback. If the task running this
        is cancelled, an error frame is emitted before re-raising.
        """
        try:
            summary = await work(self)
        except asyncio.CancelledError:
            logger.warning("Stream job interrupted")
            self.error("Job interrupted")
            raise
        except ProductboardError as exc:
            logger.error("Stream job failed: %s", exc)
            self.error(exc.detail, exc.details or None)
        except Exception as exc:
            logger.exception("Stream job crashed")
            self.error(str(exc) or exc.__class__.__name__)
        else:
            self.complete(summary or {})
        finally:
            self.close()


async def sse_events(stream: ProgressStream) -> AsyncIterator[str]:
    """Encode frames for a streaming HTTP response.

    If the consumer goes away (the generator is closed early) the stream
    is cancelled so the producer stops at the next row boundary. The row
    in flight completes normally.
    """
    try:
        async for frame in stream:
            yield frame.encode()
    finally:
        if not stream.closed:
            stream.cancel()
