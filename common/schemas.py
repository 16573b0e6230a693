from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

LIVE_CHUNK_ID = "live"

ChunkId = Union[int, Literal["live"]]


class WireModel(BaseModel):
    """Base for protocol messages: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# --- Commands: coordinator -> inference ---

class CommandType(str, Enum):
    load = "load"
    generate = "generate"


class LoadCommand(WireModel):
    command: Literal["load"] = "load"


class GenerateCommand(WireModel):
    command: Literal["generate"] = "generate"
    chunk_id: ChunkId
    session_id: str
    language: str = "en"
    sample_count: int
    # float32 samples follow as a binary frame, not in JSON


Command = Annotated[Union[LoadCommand, GenerateCommand], Field(discriminator="command")]


# --- Events: inference -> coordinator ---

class EventStatus(str, Enum):
    loading = "loading"
    initiate = "initiate"
    progress = "progress"
    done = "done"
    ready = "ready"
    error = "error"
    start = "start"
    update = "update"
    complete = "complete"


class LoadingEvent(WireModel):
    status: Literal["loading"] = "loading"
    message: str = ""


class InitiateEvent(WireModel):
    status: Literal["initiate"] = "initiate"
    file: str


class ProgressEvent(WireModel):
    status: Literal["progress"] = "progress"
    file: str
    loaded: int
    total: int


class DoneEvent(WireModel):
    status: Literal["done"] = "done"
    file: str


class ReadyEvent(WireModel):
    status: Literal["ready"] = "ready"


class ErrorEvent(WireModel):
    status: Literal["error"] = "error"
    message: str
    # set only when the model failed to load
    load_failed: bool = False
    # absent for load and protocol errors
    chunk_id: Optional[ChunkId] = None
    session_id: Optional[str] = None


class StartEvent(WireModel):
    status: Literal["start"] = "start"
    chunk_id: ChunkId
    session_id: str


class UpdateEvent(WireModel):
    status: Literal["update"] = "update"
    output: str
    token_count: int
    tokens_per_second: Optional[float] = None
    chunk_id: ChunkId
    session_id: str


class CompleteEvent(WireModel):
    status: Literal["complete"] = "complete"
    output: list[str]
    chunk_id: ChunkId
    session_id: str

    @property
    def text(self) -> str:
        return self.output[0].strip() if self.output else ""


InferenceEvent = Annotated[
    Union[
        LoadingEvent,
        InitiateEvent,
        ProgressEvent,
        DoneEvent,
        ReadyEvent,
        ErrorEvent,
        StartEvent,
        UpdateEvent,
        CompleteEvent,
    ],
    Field(discriminator="status"),
]

_command_adapter: TypeAdapter[Command] = TypeAdapter(Command)
_event_adapter: TypeAdapter[InferenceEvent] = TypeAdapter(InferenceEvent)


def parse_command(raw: str | bytes) -> LoadCommand | GenerateCommand:
    return _command_adapter.validate_json(raw)


def parse_event(raw: str | bytes):
    return _event_adapter.validate_json(raw)


# --- HTTP ---

class HealthResponse(WireModel):
    status: str = "ok"
    engine: str
    in_flight: Optional[ChunkId] = None
    queued: int = 0
