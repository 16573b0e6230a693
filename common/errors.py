"""Error taxonomy shared by the inference service and the coordinators."""

from __future__ import annotations


class TranscriptionError(Exception):
    """Base class for transcription failures."""


class LoadError(TranscriptionError):
    """Raised when the model assets cannot be fetched or warmed up."""


class GenerateError(TranscriptionError):
    """Raised when inference for a single chunk fails."""

    def __init__(self, message: str, chunk_id=None):
        self.chunk_id = chunk_id
        super().__init__(message)


class EngineNotReadyError(GenerateError):
    """Raised when a chunk is submitted before the engine finished loading."""


class DecodeError(TranscriptionError):
    """Raised when source audio cannot be decoded to 16 kHz mono samples."""


class DuplicateWaiterError(RuntimeError):
    """Raised when a completion waiter is registered twice for one chunk."""
