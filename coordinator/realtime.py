from __future__ import annotations

import asyncio
import logging
import uuid
from functools import partial
from typing import Callable, Optional

from common.config import CoordinatorSettings
from common.errors import DecodeError
from common.models import Chunk, ResultRecord
from common.schemas import LIVE_CHUNK_ID, CompleteEvent, ErrorEvent, StartEvent, UpdateEvent
from coordinator.audio_utils import decode_audio
from coordinator.broker import ResultBroker

logger = logging.getLogger(__name__)

BLANK_MARKER = "[BLANK_AUDIO]"


def merge_transcript(current: str, incoming: str) -> str:
    """Append ``incoming`` unless it is blank or already the transcript's suffix."""
    output = incoming.strip()
    trimmed = current.strip()
    if not output or output == BLANK_MARKER:
        return current
    if not trimmed:
        return output
    if trimmed.endswith(output):
        return trimmed
    return f"{trimmed} {output}"


class RealtimeCoordinator:
    """Rolling live transcription over one sentinel chunk.

    Captured bytes accumulate between ticks. Whenever no live submission is
    outstanding, a tick decodes everything captured so far, keeps the most
    recent window and submits it under the ``"live"`` id.
    """

    def __init__(
        self,
        client,
        settings: CoordinatorSettings | None = None,
        language: str | None = None,
        encoding: str | None = None,
        on_transcript: Optional[Callable[[str], None]] = None,
    ):
        self.client = client
        self.settings = settings or CoordinatorSettings()
        self.language = language or self.settings.language
        self.encoding = encoding or self.settings.capture_encoding
        self.on_transcript = on_transcript

        self.session_id = uuid.uuid4().hex
        self.broker = ResultBroker(self.session_id)
        self.transcript = ""
        self.recording = False
        self.processing = False
        self.tokens_per_second: Optional[float] = None

        self._captured = bytearray()
        self._outstanding: asyncio.Future | None = None
        self._tick_task: asyncio.Task | None = None

        client.add_listener(self._on_event)

    @property
    def outstanding(self) -> bool:
        return self._outstanding is not None and not self._outstanding.done()

    def feed(self, data: bytes) -> None:
        """Append freshly captured audio."""
        if self.recording and data:
            self._captured.extend(data)

    async def tick(self) -> bool:
        """Submit the accumulated audio if the live chunk is idle. Returns True on submit."""
        if not self.recording or self.outstanding or not self._captured:
            return False

        try:
            samples = await asyncio.to_thread(decode_audio, bytes(self._captured), self.encoding)
        except DecodeError as exc:
            logger.warning("Skipping capture tick: %s", exc)
            return False
        if not self.recording or self.outstanding:
            return False
        chunk = Chunk(
            id=LIVE_CHUNK_ID,
            samples=samples[-self.settings.window_samples:],
            session_id=self.session_id,
            language=self.language,
        )

        broker = self.broker
        outstanding = broker.expect(LIVE_CHUNK_ID)
        outstanding.add_done_callback(partial(self._on_result, self.session_id))
        self._outstanding = outstanding
        try:
            await self.client.generate(chunk)
        except Exception as exc:
            logger.warning("Could not submit live chunk: %s", exc)
            broker.discard(LIVE_CHUNK_ID)
            outstanding.cancel()
            if self._outstanding is outstanding:
                self._outstanding = None
            return False
        return True

    async def set_language(self, language: str) -> None:
        """Switch language; a running capture restarts with a cleared transcript."""
        if language == self.language:
            return
        self.language = language
        if self.recording:
            await self.reset()

    def start(self) -> None:
        if self.recording:
            return
        self.recording = True
        self._captured.clear()
        self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info("Realtime session %s started", self.session_id)

    async def stop(self) -> None:
        if not self.recording:
            return
        self.recording = False
        if self._tick_task is not None:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None
        logger.info("Realtime session %s stopped", self.session_id)

    async def reset(self) -> None:
        """Stop capture, clear the transcript and restart under a fresh session."""
        await self.stop()
        self.broker.teardown()
        self.session_id = uuid.uuid4().hex
        self.broker = ResultBroker(self.session_id)
        self._outstanding = None
        self.processing = False
        self._set_transcript("")
        self.start()

    async def close(self) -> None:
        await self.stop()
        self.broker.teardown()
        self.client.remove_listener(self._on_event)

    async def _tick_loop(self) -> None:
        while self.recording:
            await self.tick()
            await asyncio.sleep(self.settings.tick_interval_s)

    def _on_event(self, event) -> None:
        if getattr(event, "session_id", None) != self.session_id:
            return
        if getattr(event, "chunk_id", None) != LIVE_CHUNK_ID:
            return

        if isinstance(event, StartEvent):
            self.processing = True
        elif isinstance(event, UpdateEvent):
            self.tokens_per_second = event.tokens_per_second
        elif isinstance(event, CompleteEvent):
            self.processing = False
            self.broker.deliver(LIVE_CHUNK_ID, ResultRecord(LIVE_CHUNK_ID, final_text=event.text))
        elif isinstance(event, ErrorEvent):
            self.processing = False
            self.broker.deliver(LIVE_CHUNK_ID, ResultRecord(LIVE_CHUNK_ID, error=event.message))

    def _on_result(self, session_id: str, future: asyncio.Future) -> None:
        if future.cancelled() or session_id != self.session_id:
            return
        record: ResultRecord = future.result()
        if not record.ok:
            logger.warning("Live chunk failed: %s", record.error)
            return
        self._set_transcript(merge_transcript(self.transcript, record.final_text or ""))

    def _set_transcript(self, text: str) -> None:
        if text == self.transcript:
            return
        self.transcript = text
        if self.on_transcript is not None:
            self.on_transcript(text)
