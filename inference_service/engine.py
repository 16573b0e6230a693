from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Awaitable, Callable, Optional

import numpy as np
from faster_whisper import WhisperModel, download_model

from common.config import InferenceSettings
from common.errors import EngineNotReadyError, GenerateError, LoadError
from common.models import SAMPLE_RATE, TokenUpdate
from common.schemas import DoneEvent, InitiateEvent, LoadingEvent, ProgressEvent

logger = logging.getLogger(__name__)

EventSink = Callable[[object], Awaitable[None]]
UpdateSink = Callable[[TokenUpdate], Awaitable[None]]


def _directory_size(path: str) -> int:
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            total += os.path.getsize(os.path.join(root, name))
    return total


class InferenceEngine:
    """Exclusive handle on one faster-whisper model.

    Constructed once per process and injected into the worker. Only one
    ``generate`` call may be active at a time; the scheduler is the only
    caller and serialises access.
    """

    def __init__(self, settings: InferenceSettings | None = None):
        self.settings = settings or InferenceSettings()
        self._model: WhisperModel | None = None
        self._load_task: asyncio.Task | None = None
        self._load_failed = False
        self._active = False

    @property
    def ready(self) -> bool:
        return self._model is not None

    @property
    def state(self) -> str:
        if self._model is not None:
            return "ready"
        if self._load_task is not None:
            return "loading"
        return "error" if self._load_failed else "idle"

    async def load(self, on_event: Optional[EventSink] = None) -> None:
        """Fetch and warm up the model. Repeated calls share one outcome."""
        if self._model is not None:
            return
        if self._load_task is None:
            self._load_failed = False
            self._load_task = asyncio.create_task(self._load(on_event))
        task = self._load_task
        try:
            await asyncio.shield(task)
        except LoadError:
            self._load_failed = True
            if self._load_task is task:
                self._load_task = None
            raise

    async def _load(self, on_event: Optional[EventSink]) -> None:
        async def emit(event) -> None:
            if on_event is not None:
                await on_event(event)

        repo = self.settings.model_size
        try:
            await emit(LoadingEvent(message="Loading model..."))

            await emit(InitiateEvent(file=repo))
            path = await asyncio.to_thread(
                download_model, repo, cache_dir=self.settings.download_root
            )
            size = await asyncio.to_thread(_directory_size, path)
            await emit(ProgressEvent(file=repo, loaded=size, total=size))
            await emit(DoneEvent(file=repo))

            weights = os.path.join(path, "model.bin")
            await emit(InitiateEvent(file=weights))
            model = await asyncio.to_thread(
                WhisperModel,
                path,
                device=self.settings.device,
                compute_type=self.settings.compute_type,
            )
            await emit(DoneEvent(file=weights))

            await emit(LoadingEvent(message="Warming up model..."))
            silence = np.zeros(SAMPLE_RATE, dtype=np.float32)
            segments, _ = await asyncio.to_thread(
                model.transcribe, silence, max_new_tokens=1, beam_size=1
            )
            await asyncio.to_thread(list, segments)
        except Exception as exc:
            logger.exception("Model load failed: %s", repo)
            raise LoadError(f"Error loading model: {exc}") from exc
        finally:
            self._load_task = None

        self._model = model
        logger.info("Model ready: %s (%s)", repo, self.settings.device)

    async def generate(
        self,
        samples: np.ndarray,
        language: str,
        on_update: Optional[UpdateSink] = None,
    ) -> str:
        """Transcribe one chunk, streaming a TokenUpdate per decoded segment."""
        if self._model is None:
            raise EngineNotReadyError("Model is not loaded")
        if self._active:
            raise RuntimeError("generate() is already running")

        self._active = True
        try:
            segments, _ = await asyncio.to_thread(
                self._model.transcribe,
                samples,
                language=language,
                beam_size=self.settings.beam_size,
                max_new_tokens=self.settings.max_new_tokens,
            )
            parts: list[str] = []
            num_tokens = 0
            started: float | None = None
            while True:
                segment = await asyncio.to_thread(next, segments, None)
                if segment is None:
                    break
                if started is None:
                    started = time.perf_counter()
                    tps = None
                else:
                    elapsed = time.perf_counter() - started
                    tps = (num_tokens + len(segment.tokens)) / elapsed if elapsed > 0 else None
                num_tokens += len(segment.tokens)
                text = segment.text.strip()
                if text:
                    parts.append(text)
                if on_update is not None:
                    await on_update(TokenUpdate(" ".join(parts), num_tokens, tps))
            return " ".join(parts)
        except Exception as exc:
            raise GenerateError(f"Error processing audio segment: {exc}") from exc
        finally:
            self._active = False

    def close(self) -> None:
        self._model = None
        logger.info("Model released")
