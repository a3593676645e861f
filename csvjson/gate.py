"""
Admission control for conversions.

A ConcurrencyGate bounds how many conversions run at once; callers beyond
the limit wait for a slot instead of being rejected. Each admitted
conversion runs as its own task under a Deadline that covers the whole time
the slot is held, including time spent waiting on a slow reader. Blocking
work happens in a worker thread, and a slot is only given back once that
thread has stopped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from .errors import ConversionError, ConversionTimeout, ProcessingError
from .parser import CsvDocument
from .rules import BATCH_SIZE, CONVERSION_TIMEOUT_SECONDS, MAX_CONCURRENT_CONVERSIONS
from .serializer import StreamingSerializer

logger = logging.getLogger(__name__)


class Deadline:
    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds
        self._cancelled = False

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Tell worker threads to stop at their next check."""
        self._cancelled = True

    def check(self) -> None:
        if self._cancelled:
            logger.debug("Stopping cancelled conversion")
            raise ConversionTimeout(self.seconds)
        if self.expired:
            logger.error("Conversion exceeded its %gs deadline", self.seconds)
            raise ConversionTimeout(self.seconds)


class ConcurrencyGate:
    """Counting gate: at most ``limit`` slots held at any time."""

    def __init__(
        self,
        limit: int = MAX_CONCURRENT_CONVERSIONS,
        timeout: float = CONVERSION_TIMEOUT_SECONDS,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(limit)
        self.active = 0
        self.peak = 0

    @asynccontextmanager
    async def admit(self) -> AsyncIterator[Deadline]:
        async with self._semaphore:
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                yield Deadline(self.timeout)
            finally:
                self.active -= 1


async def _in_worker(deadline: Deadline, func, *args):
    """
    Run blocking ``func`` in a worker thread.

    If the caller is cancelled, the worker is told to stop and awaited before
    the cancellation propagates.
    """
    worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        deadline.cancel()
        await asyncio.wait([worker])
        if not worker.cancelled() and worker.exception() is not None:
            logger.debug("Worker stopped after cancellation: %s", worker.exception())
        raise


async def _produce(
    raw: bytes,
    has_header: bool,
    batch_size: int,
    deadline: Deadline,
    started: float,
    queue: "asyncio.Queue[Optional[bytes]]",
) -> StreamingSerializer:
    document = await _in_worker(deadline, CsvDocument.from_bytes, raw, has_header)
    serializer = StreamingSerializer(
        document, batch_size=batch_size, deadline=deadline, started=started
    )
    chunks = serializer.chunks()
    while True:
        chunk = await _in_worker(deadline, next, chunks, None)
        # None marks the end of output
        await queue.put(chunk)
        if chunk is None:
            return serializer


async def _convert(
    raw: bytes,
    gate: ConcurrencyGate,
    has_header: bool,
    batch_size: int,
    queue: "asyncio.Queue[Optional[bytes]]",
) -> None:
    async with gate.admit() as deadline:
        started = time.monotonic()
        logger.info("Starting CSV processing: %d bytes", len(raw))

        try:
            serializer = await asyncio.wait_for(
                _produce(raw, has_header, batch_size, deadline, started, queue),
                timeout=deadline.remaining(),
            )
        except ConversionError:
            raise
        except asyncio.TimeoutError as exc:
            logger.error("Conversion exceeded its %gs deadline", deadline.seconds)
            raise ConversionTimeout(deadline.seconds) from exc
        except Exception as exc:
            logger.exception("CSV processing failed: %s", exc)
            raise ProcessingError(str(exc)) from exc

        logger.info(
            "CSV processing completed: rows=%d, time=%dms",
            serializer.rows_processed,
            serializer.elapsed_ms(),
        )


async def convert_stream(
    raw: bytes,
    gate: ConcurrencyGate,
    has_header: bool = True,
    batch_size: int = BATCH_SIZE,
) -> AsyncIterator[bytes]:
    """
    Convert ``raw`` into JSON byte chunks inside one gate slot.

    The conversion runs as a separate task that holds the slot and feeds a
    one-chunk queue, so the deadline keeps running while the reader is slow.
    Every failure surfaces as a ConversionError; anything unclassified is
    wrapped in ProcessingError. Closing the generator early cancels the
    conversion.
    """
    queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=1)
    task = asyncio.create_task(_convert(raw, gate, has_header, batch_size, queue))
    getter = None

    try:
        # drain whatever was queued before the conversion finished or failed
        while not (task.done() and queue.empty()):
            getter = asyncio.ensure_future(queue.get())
            await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if not getter.done():
                getter.cancel()
                continue
            chunk = getter.result()
            if chunk is None:
                break
            yield chunk
        # raises the conversion's failure, if any
        await task
    finally:
        if getter is not None and not getter.done():
            getter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait([task])
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Conversion ended with %s", type(task.exception()).__name__)
