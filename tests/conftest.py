import asyncio

import numpy as np
import pytest

from common.errors import GenerateError, LoadError
from common.models import Chunk, TokenUpdate
from common.schemas import (
    LIVE_CHUNK_ID,
    CompleteEvent,
    DoneEvent,
    ErrorEvent,
    InitiateEvent,
    ProgressEvent,
    StartEvent,
    UpdateEvent,
)


def chunk_tag(samples) -> int:
    """Fake audio carries its chunk id as the sample value; -1 marks live audio."""
    return int(round(float(samples[0]))) if len(samples) else -1


def make_chunk(chunk_id, session_id="s1", length=10, language="en") -> Chunk:
    value = -1 if chunk_id == LIVE_CHUNK_ID else chunk_id
    return Chunk(
        id=chunk_id,
        samples=np.full(length, value, dtype=np.float32),
        session_id=session_id,
        language=language,
    )


def tagged_audio(num_chunks: int, window: int, tail: int = 0) -> np.ndarray:
    """Audio where every window-sized span is filled with its chunk index."""
    parts = [np.full(window, i, dtype=np.float32) for i in range(num_chunks)]
    if tail:
        parts.append(np.full(tail, num_chunks, dtype=np.float32))
    return np.concatenate(parts)


class FakeEngine:
    """Stands in for InferenceEngine; latency and failures are keyed by chunk tag."""

    def __init__(self, delay_for=None, fail_tags=(), ready=True, fail_load=False):
        self.delay_for = delay_for or (lambda tag: 0.001)
        self.fail_tags = set(fail_tags)
        self._ready = ready
        self.fail_load = fail_load
        self.load_calls = 0
        self.calls: list[int] = []
        self.active = 0
        self.max_active = 0

    @property
    def ready(self):
        return self._ready

    @property
    def state(self):
        return "ready" if self._ready else "idle"

    async def load(self, on_event=None):
        self.load_calls += 1
        if self._ready:
            return
        if on_event is not None:
            await on_event(InitiateEvent(file="model.bin"))
            await on_event(ProgressEvent(file="model.bin", loaded=10, total=10))
            await on_event(DoneEvent(file="model.bin"))
        if self.fail_load:
            raise LoadError("Error loading model: no network")
        self._ready = True

    async def generate(self, samples, language, on_update=None):
        tag = chunk_tag(samples)
        self.calls.append(tag)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay_for(tag))
            if tag in self.fail_tags:
                raise GenerateError(f"engine fault on {tag}")
            text = "live words" if tag == -1 else f"word{tag}"
            if on_update is not None:
                await on_update(TokenUpdate(text, 2, None))
            return text
        finally:
            self.active -= 1

    def close(self):
        self._ready = False


class FakeClient:
    """Answers generate() directly with events, bypassing the scheduler."""

    def __init__(self, delay_for=None, fail_ids=(), respond=True, text_for=None):
        self.delay_for = delay_for or (lambda chunk_id: 0.0)
        self.fail_ids = set(fail_ids)
        self.respond = respond
        self.text_for = text_for or (lambda chunk_id: f"word{chunk_id}")
        self.listeners = []
        self.sent = []
        self.completed = []

    def add_listener(self, listener):
        self.listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def emit(self, event):
        for listener in list(self.listeners):
            listener(event)

    async def generate(self, chunk):
        self.sent.append((chunk, list(self.completed)))
        if not self.respond:
            return
        loop = asyncio.get_running_loop()
        loop.call_soon(self.emit, StartEvent(chunk_id=chunk.id, session_id=chunk.session_id))
        loop.call_later(self.delay_for(chunk.id), self.finish, chunk)

    def finish(self, chunk, text=None):
        sid = chunk.session_id
        if chunk.id in self.fail_ids:
            self.emit(ErrorEvent(message="boom", chunk_id=chunk.id, session_id=sid))
        else:
            text = self.text_for(chunk.id) if text is None else text
            self.emit(
                UpdateEvent(output=text, token_count=3, tokens_per_second=12.5, chunk_id=chunk.id, session_id=sid)
            )
            self.emit(CompleteEvent(output=[text], chunk_id=chunk.id, session_id=sid))
        self.completed.append(chunk.id)


class EventSink:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def statuses(self):
        return [(e.status, e.chunk_id) for e in self.events]


async def drain(scheduler, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while scheduler.in_flight is not None or scheduler.queued:
        if loop.time() > deadline:
            raise AssertionError("scheduler did not drain")
        await asyncio.sleep(0.001)
    # let the final terminal event land
    await asyncio.sleep(0)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def sink():
    return EventSink()
