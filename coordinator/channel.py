"""Message transports between the coordinator and inference contexts.

Both transports preserve FIFO order per direction. Messages cross the
boundary serialised, so no mutable state is shared between the contexts.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import websockets

from common.schemas import WireModel, parse_command, parse_event
from inference_service.worker import InferenceWorker

logger = logging.getLogger(__name__)


class LocalChannel:
    """Hosts an InferenceWorker in the current event loop."""

    def __init__(self, worker: InferenceWorker) -> None:
        self._worker = worker
        self._inbox: asyncio.Queue[str] = asyncio.Queue()

    async def connect(self) -> None:
        pass

    async def send(self, command: WireModel, audio: Optional[bytes] = None) -> None:
        await self._worker.handle(parse_command(command.to_json()), self._post, audio)

    async def _post(self, event: WireModel) -> None:
        await self._inbox.put(event.to_json())

    async def receive(self):
        return parse_event(await self._inbox.get())

    async def close(self) -> None:
        pass


class WebSocketChannel:
    """Talks to a remote inference service over its /ws endpoint."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._ws = None
        self._send_lock = asyncio.Lock()

    async def connect(self) -> None:
        self._ws = await websockets.connect(
            self.url,
            ping_interval=30,
            ping_timeout=300,
            close_timeout=10,
        )
        logger.info("Connected to inference service at %s", self.url)

    async def send(self, command: WireModel, audio: Optional[bytes] = None) -> None:
        if self._ws is None:
            raise ConnectionError("Channel is not connected")
        # header and samples must stay adjacent on the wire
        async with self._send_lock:
            await self._ws.send(command.to_json())
            if audio is not None:
                await self._ws.send(audio)

    async def receive(self):
        if self._ws is None:
            raise ConnectionError("Channel is not connected")
        return parse_event(await self._ws.recv())

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
