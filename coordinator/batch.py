from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from common.config import CoordinatorSettings
from common.errors import DecodeError
from common.models import Chunk, ResultRecord
from common.schemas import CompleteEvent, ErrorEvent, UpdateEvent
from coordinator.audio_utils import decode_audio
from coordinator.broker import ResultBroker

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    text: str
    records: list[ResultRecord] = field(default_factory=list)

    @property
    def errors(self) -> list[ResultRecord]:
        return [r for r in self.records if not r.ok]


class BatchCoordinator:
    """Transcribes a finite buffer as fixed-length chunks dispatched in waves.

    Each wave holds at most ``wave_size`` chunks; the next wave starts only
    once every waiter of the current one has resolved. The transcript is
    assembled in chunk-id order regardless of completion order.
    """

    def __init__(
        self,
        client,
        settings: CoordinatorSettings | None = None,
        language: str | None = None,
        on_progress: Optional[Callable[[int], None]] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[ResultRecord], None]] = None,
    ):
        self.client = client
        self.settings = settings or CoordinatorSettings()
        self.language = language or self.settings.language
        self.on_progress = on_progress
        self.on_transcript = on_transcript
        self.on_error = on_error

        self.session_id = uuid.uuid4().hex
        self.broker = ResultBroker(self.session_id)
        self.progress = 0
        self.total_chunks = 0
        self._records: dict[int, ResultRecord] = {}
        self._stats: dict[int, UpdateEvent] = {}

        client.add_listener(self._on_event)

    @property
    def transcript(self) -> str:
        texts = [self._records[i].final_text for i in sorted(self._records)]
        return " ".join(t for t in texts if t)

    async def transcribe(self, data: bytes, encoding: str | None = None) -> BatchResult:
        """Decode a whole file and transcribe it. Raises DecodeError before dispatching anything."""
        try:
            samples = await asyncio.to_thread(decode_audio, data, encoding)
        except DecodeError as exc:
            logger.warning("Batch session %s aborted: %s", self.session_id, exc)
            raise
        return await self.transcribe_samples(samples)

    async def transcribe_samples(self, samples: np.ndarray) -> BatchResult:
        if self._records or self.broker.pending:
            self._new_session()

        window = self.settings.window_samples
        total = len(samples)
        n = math.ceil(total / window)
        self.total_chunks = n
        logger.info(
            "Batch session %s: %d samples (%.1fs) in %d chunks",
            self.session_id, total, total / self.settings.sample_rate, n,
        )

        dispatched = 0
        for first in range(0, n, self.settings.wave_size):
            wave = range(first, min(first + self.settings.wave_size, n))
            logger.info("Dispatching wave of %d chunks starting at %d", len(wave), first)

            waiters = [self.broker.expect(chunk_id) for chunk_id in wave]
            for chunk_id in wave:
                chunk = Chunk(
                    id=chunk_id,
                    samples=samples[chunk_id * window : min((chunk_id + 1) * window, total)],
                    session_id=self.session_id,
                    language=self.language,
                )
                self._set_progress(dispatched * 100 // n)
                await self.client.generate(chunk)
                dispatched += 1

            await asyncio.gather(*waiters)
            logger.info("Completed wave starting at %d", first)

        self._set_progress(100)
        records = [self._records[i] for i in sorted(self._records)]
        return BatchResult(text=self.transcript, records=records)

    def _set_progress(self, value: int) -> None:
        self.progress = value
        if self.on_progress is not None:
            self.on_progress(value)

    def _on_event(self, event) -> None:
        if getattr(event, "session_id", None) != self.session_id:
            return

        if isinstance(event, UpdateEvent):
            self._stats[event.chunk_id] = event
            return

        if isinstance(event, CompleteEvent):
            record = self._record(event.chunk_id, final_text=event.text)
        elif isinstance(event, ErrorEvent):
            record = self._record(event.chunk_id, error=event.message)
        else:
            return

        if not self.broker.deliver(event.chunk_id, record):
            return
        self._records[event.chunk_id] = record
        if record.ok:
            logger.debug("Chunk %s complete: %d chars", event.chunk_id, len(record.final_text or ""))
            if self.on_transcript is not None:
                self.on_transcript(self.transcript)
        else:
            logger.warning("Chunk %s failed: %s", event.chunk_id, record.error)
            if self.on_error is not None:
                self.on_error(record)

    def _record(self, chunk_id: int, **kwargs) -> ResultRecord:
        stats = self._stats.pop(chunk_id, None)
        return ResultRecord(
            chunk_id=chunk_id,
            token_count=stats.token_count if stats else 0,
            tokens_per_second=stats.tokens_per_second if stats else None,
            **kwargs,
        )

    def _new_session(self) -> None:
        self.broker.teardown()
        self.session_id = uuid.uuid4().hex
        self.broker = ResultBroker(self.session_id)
        self._records.clear()
        self._stats.clear()
        self.progress = 0

    def close(self) -> None:
        self.broker.teardown()
        self.client.remove_listener(self._on_event)
