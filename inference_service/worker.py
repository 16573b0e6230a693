from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import numpy as np

from common.errors import LoadError
from common.models import Chunk
from common.schemas import ErrorEvent, GenerateCommand, LoadCommand, ReadyEvent
from inference_service.engine import InferenceEngine
from inference_service.scheduler import ChunkScheduler

logger = logging.getLogger(__name__)

EventSink = Callable[[object], Awaitable[None]]


class InferenceWorker:
    """Command handler of the inference context: one engine, one scheduler."""

    def __init__(self, engine: InferenceEngine, scheduler: ChunkScheduler | None = None):
        self.engine = engine
        self.scheduler = scheduler or ChunkScheduler(engine)
        self._load_tasks: set[asyncio.Task] = set()

    async def handle(
        self,
        command: LoadCommand | GenerateCommand,
        sink: EventSink,
        audio: Optional[bytes] = None,
    ) -> None:
        if isinstance(command, LoadCommand):
            # loading must not block the command stream
            task = asyncio.create_task(self._load(sink))
            self._load_tasks.add(task)
            task.add_done_callback(self._load_tasks.discard)
        else:
            await self._generate(command, audio or b"", sink)

    async def _load(self, sink: EventSink) -> None:
        async def progress(event) -> None:
            try:
                await sink(event)
            except Exception:
                logger.warning("Could not deliver %s event", event.status, exc_info=True)

        try:
            await self.engine.load(progress)
        except LoadError as exc:
            await sink(ErrorEvent(message=str(exc), load_failed=True))
            return
        await sink(ReadyEvent())

    async def _generate(self, command: GenerateCommand, audio: bytes, sink: EventSink) -> None:
        if not self.engine.ready:
            await sink(
                ErrorEvent(
                    message="Model is not loaded",
                    chunk_id=command.chunk_id,
                    session_id=command.session_id,
                )
            )
            return

        if len(audio) % 4:
            await sink(
                ErrorEvent(
                    message="Audio payload is not float32 PCM",
                    chunk_id=command.chunk_id,
                    session_id=command.session_id,
                )
            )
            return

        samples = np.frombuffer(audio, dtype="<f4").astype(np.float32)
        if len(samples) != command.sample_count:
            logger.warning(
                "Chunk %s: expected %d samples, received %d",
                command.chunk_id, command.sample_count, len(samples),
            )
        chunk = Chunk(
            id=command.chunk_id,
            samples=samples,
            session_id=command.session_id,
            language=command.language,
        )
        logger.info(
            "Worker received chunk %s (%.1fs) for session %s",
            chunk.id, chunk.duration, chunk.session_id,
        )
        self.scheduler.submit(chunk, sink)

    async def close(self) -> None:
        for task in list(self._load_tasks):
            task.cancel()
        await self.scheduler.close()
        self.engine.close()
