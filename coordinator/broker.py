from __future__ import annotations

import asyncio
import logging
from typing import Callable, Union

from common.errors import DuplicateWaiterError
from common.models import ResultRecord

logger = logging.getLogger(__name__)

ChunkKey = Union[int, str]


class ResultBroker:
    """Per-session registry of one-shot completion waiters, keyed by chunk id."""

    def __init__(self, session_id: str = "") -> None:
        self.session_id = session_id
        self._waiters: dict[ChunkKey, Callable[[ResultRecord], None]] = {}
        self.discarded = 0

    def register_waiter(self, chunk_id: ChunkKey, continuation: Callable[[ResultRecord], None]) -> None:
        if chunk_id in self._waiters:
            raise DuplicateWaiterError(f"Waiter for chunk {chunk_id} already registered")
        self._waiters[chunk_id] = continuation

    def expect(self, chunk_id: ChunkKey) -> asyncio.Future:
        """Register a waiter and return a future resolved with its ResultRecord."""
        future = asyncio.get_running_loop().create_future()

        def resolve(result: ResultRecord) -> None:
            if not future.done():
                future.set_result(result)

        self.register_waiter(chunk_id, resolve)
        return future

    def deliver(self, chunk_id: ChunkKey, result: ResultRecord) -> bool:
        continuation = self._waiters.pop(chunk_id, None)
        if continuation is None:
            self.discarded += 1
            logger.warning(
                "Discarding result for chunk %s in session %s: no waiter",
                chunk_id, self.session_id,
            )
            return False
        continuation(result)
        return True

    def discard(self, chunk_id: ChunkKey) -> bool:
        """Drop the waiter for a chunk that was never dispatched."""
        return self._waiters.pop(chunk_id, None) is not None

    def teardown(self) -> None:
        if self._waiters:
            logger.info(
                "Session %s teardown: dropping %d pending waiters",
                self.session_id, len(self._waiters),
            )
        self._waiters.clear()

    def has_waiter(self, chunk_id: ChunkKey) -> bool:
        return chunk_id in self._waiters

    @property
    def pending(self) -> int:
        return len(self._waiters)

    def __len__(self) -> int:
        return len(self._waiters)
