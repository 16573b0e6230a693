"""Single-flight scheduling of chunks onto the inference engine."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from common.models import Chunk, TokenUpdate
from common.schemas import CompleteEvent, ErrorEvent, StartEvent, UpdateEvent

logger = logging.getLogger(__name__)

EventSink = Callable[[object], Awaitable[None]]


@dataclass
class _Job:
    chunk: Chunk
    sink: EventSink


class ChunkScheduler:
    """Runs at most one chunk at a time and drains overflow FIFO.

    Numeric chunk ids are de-duplicated per session against a high-water
    mark and the queue; the live sentinel is limited to one instance per
    session, in flight or queued. Marks are kept for the most recently
    active ``max_sessions`` sessions.
    """

    def __init__(self, engine, max_sessions: int = 1024) -> None:
        self._engine = engine
        self._max_sessions = max_sessions
        self._in_flight: Optional[_Job] = None
        self._queue: deque[_Job] = deque()
        self._high_water: OrderedDict[str, int] = OrderedDict()
        self._ready: asyncio.Queue[_Job] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    @property
    def in_flight(self) -> Optional[Chunk]:
        return self._in_flight.chunk if self._in_flight else None

    @property
    def queued(self) -> list[Chunk]:
        return [job.chunk for job in self._queue]

    def high_water_mark(self, session_id: str) -> int:
        return self._high_water.get(session_id, -1)

    def snapshot(self) -> dict:
        return {
            "in_flight": self._in_flight.chunk.id if self._in_flight else None,
            "queued": len(self._queue),
            "high_water": dict(self._high_water),
        }

    def submit(self, chunk: Chunk, sink: EventSink) -> bool:
        """Admit a chunk. Returns False when it is dropped as stale or duplicate."""
        if not self._admissible(chunk):
            return False

        job = _Job(chunk, sink)
        if self._in_flight is None:
            self._begin(job)
        else:
            self._queue.append(job)
            logger.debug("Queued chunk %s (depth=%d)", chunk.id, len(self._queue))
        return True

    def _admissible(self, chunk: Chunk) -> bool:
        held = [job.chunk.key for job in self._queue]
        if self._in_flight is not None:
            held.append(self._in_flight.chunk.key)

        if chunk.is_live:
            if chunk.key in held:
                logger.debug("Live chunk already pending for session %s", chunk.session_id)
                return False
            return True

        if chunk.id <= self.high_water_mark(chunk.session_id) or chunk.key in held:
            logger.debug("Chunk %s already processed or queued, skipping", chunk.id)
            return False
        return True

    def _begin(self, job: _Job) -> None:
        chunk = job.chunk
        self._in_flight = job
        if not chunk.is_live:
            self._raise_mark(chunk.session_id, chunk.id)
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
        self._ready.put_nowait(job)

    def _raise_mark(self, session_id: str, chunk_id: int) -> None:
        self._high_water[session_id] = max(chunk_id, self.high_water_mark(session_id))
        self._high_water.move_to_end(session_id)
        while len(self._high_water) > self._max_sessions:
            evicted, _ = self._high_water.popitem(last=False)
            logger.debug("Forgetting high-water mark of session %s", evicted)

    async def _run(self) -> None:
        while True:
            job = await self._ready.get()
            await self._process(job)
            self._in_flight = None
            if self._queue:
                # picked up on the next loop iteration
                self._begin(self._queue.popleft())

    async def _process(self, job: _Job) -> None:
        chunk = job.chunk
        logger.info("Processing chunk %s (%d samples)", chunk.id, len(chunk.samples))
        await self._emit(job, StartEvent(chunk_id=chunk.id, session_id=chunk.session_id))

        async def on_update(update: TokenUpdate) -> None:
            await self._emit(
                job,
                UpdateEvent(
                    output=update.output,
                    token_count=update.token_count,
                    tokens_per_second=update.tokens_per_second,
                    chunk_id=chunk.id,
                    session_id=chunk.session_id,
                ),
            )

        try:
            text = await self._engine.generate(chunk.samples, chunk.language, on_update)
        except Exception as exc:
            logger.warning("Chunk %s failed: %s", chunk.id, exc)
            await self._emit(
                job,
                ErrorEvent(
                    message=f"Error processing audio segment {chunk.id}: {exc}",
                    chunk_id=chunk.id,
                    session_id=chunk.session_id,
                ),
            )
            return

        logger.info("Completed chunk %s", chunk.id)
        await self._emit(
            job, CompleteEvent(output=[text], chunk_id=chunk.id, session_id=chunk.session_id)
        )

    async def _emit(self, job: _Job, event) -> None:
        try:
            await job.sink(event)
        except Exception:
            logger.exception("Dropping %s event for chunk %s", event.status, job.chunk.id)

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._queue.clear()
        self._in_flight = None
