"""Internal models shared across the inference and coordinator contexts."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np

from common.schemas import LIVE_CHUNK_ID

SAMPLE_RATE = 16000
MAX_AUDIO_SECONDS = 30
MAX_SAMPLES = SAMPLE_RATE * MAX_AUDIO_SECONDS


@dataclass
class Chunk:
    id: Union[int, str]
    samples: np.ndarray
    session_id: str
    language: str = "en"
    submitted_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.samples = np.asarray(self.samples, dtype=np.float32)
        if len(self.samples) > MAX_SAMPLES:
            # keep the most recent window
            self.samples = self.samples[-MAX_SAMPLES:]

    @property
    def is_live(self) -> bool:
        return self.id == LIVE_CHUNK_ID

    @property
    def key(self) -> tuple[str, Union[int, str]]:
        return self.session_id, self.id

    @property
    def duration(self) -> float:
        return len(self.samples) / SAMPLE_RATE


@dataclass
class TokenUpdate:
    output: str
    token_count: int
    tokens_per_second: Optional[float] = None


@dataclass
class ResultRecord:
    chunk_id: Union[int, str]
    final_text: Optional[str] = None
    error: Optional[str] = None
    token_count: int = 0
    tokens_per_second: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.error is None
