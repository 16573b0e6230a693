from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

import websockets

from common.errors import LoadError
from common.models import Chunk
from common.schemas import (
    DoneEvent,
    ErrorEvent,
    EventStatus,
    GenerateCommand,
    InitiateEvent,
    LoadCommand,
    LoadingEvent,
    ProgressEvent,
    ReadyEvent,
    UpdateEvent,
)

logger = logging.getLogger(__name__)

Listener = Callable[[object], None]


class InferenceClient:
    """Coordinator-side endpoint of the inference protocol.

    Sends load/generate commands over a channel and fans incoming events
    out to registered listeners. Tracks engine status and per-asset load
    progress for display.
    """

    def __init__(self, channel) -> None:
        self._channel = channel
        self._listeners: list[Listener] = []
        self._task: asyncio.Task | None = None
        self._load_future: asyncio.Future | None = None
        self.status: Optional[str] = None
        self.loading_message = ""
        self.progress_items: dict[str, dict] = {}
        self.tokens_per_second: Optional[float] = None

    async def start(self) -> None:
        await self._channel.connect()
        self._task = asyncio.create_task(self._receive_loop())

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._channel.close()

    async def __aenter__(self) -> "InferenceClient":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def ready(self) -> bool:
        return self.status == EventStatus.ready

    async def load(self) -> None:
        """Ask the inference context to load the model and wait for the outcome."""
        if self.ready:
            return
        if self._load_future is None or self._load_future.done():
            self._load_future = asyncio.get_running_loop().create_future()
            self.status = EventStatus.loading
            await self._channel.send(LoadCommand())
        await self._load_future

    async def generate(self, chunk: Chunk) -> None:
        command = GenerateCommand(
            chunk_id=chunk.id,
            session_id=chunk.session_id,
            language=chunk.language,
            sample_count=len(chunk.samples),
        )
        await self._channel.send(command, chunk.samples.astype("<f4").tobytes())

    async def _receive_loop(self) -> None:
        try:
            while True:
                event = await self._channel.receive()
                self._dispatch(event)
        except websockets.ConnectionClosed:
            logger.info("Inference connection closed")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Inference receive loop failed")
        finally:
            if self._load_future is not None and not self._load_future.done():
                self._load_future.set_exception(LoadError("Inference connection lost"))

    def _dispatch(self, event) -> None:
        if isinstance(event, LoadingEvent):
            self.status = EventStatus.loading
            self.loading_message = event.message
        elif isinstance(event, InitiateEvent):
            self.progress_items[event.file] = {"file": event.file, "loaded": 0, "total": 0}
        elif isinstance(event, ProgressEvent):
            self.progress_items[event.file] = {
                "file": event.file, "loaded": event.loaded, "total": event.total,
            }
        elif isinstance(event, DoneEvent):
            self.progress_items.pop(event.file, None)
        elif isinstance(event, ReadyEvent):
            self.status = EventStatus.ready
            if self._load_future is not None and not self._load_future.done():
                self._load_future.set_result(None)
        elif isinstance(event, ErrorEvent) and event.load_failed:
            self.status = EventStatus.error
            logger.error("Model load failed: %s", event.message)
            if self._load_future is not None and not self._load_future.done():
                self._load_future.set_exception(LoadError(event.message))
        elif isinstance(event, ErrorEvent) and event.chunk_id is None:
            logger.warning("Inference service rejected a command: %s", event.message)
        elif isinstance(event, UpdateEvent):
            self.tokens_per_second = event.tokens_per_second

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s event", event.status)
