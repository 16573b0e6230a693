from __future__ import annotations

import subprocess
from typing import Optional

import numpy as np

from common.errors import DecodeError
from common.models import SAMPLE_RATE

_RAW_ENCODINGS = {"pcm_s16le", "pcm_f32le"}
_CONTAINER_ENCODINGS = {"wav", "ogg", "mp3", "webm"}


def decode_audio(
    data: bytes,
    encoding: Optional[str] = None,
    input_sample_rate: int = SAMPLE_RATE,
    input_channels: int = 1,
) -> np.ndarray:
    """Decode audio bytes to 16kHz mono float32 samples.

    Raw PCM already at the target rate is converted in-process.
    Anything else (containers, other rates) goes through ffmpeg;
    ``encoding=None`` lets ffmpeg probe the container.
    """
    if not data:
        raise DecodeError("No audio data")

    if input_sample_rate == SAMPLE_RATE and input_channels == 1:
        if encoding == "pcm_s16le":
            return pcm16_to_float(data)
        if encoding == "pcm_f32le":
            if len(data) % 4:
                raise DecodeError("Truncated float32 PCM payload")
            return np.frombuffer(data, dtype="<f4").astype(np.float32)

    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "error"]
    if encoding in _RAW_ENCODINGS:
        cmd += [
            "-f", _ffmpeg_format(encoding),
            "-ar", str(input_sample_rate),
            "-ac", str(input_channels),
        ]
    elif encoding in _CONTAINER_ENCODINGS:
        cmd += ["-f", _ffmpeg_format(encoding)]
    cmd += [
        "-i", "pipe:0",
        "-f", "f32le",
        "-ar", str(SAMPLE_RATE),
        "-ac", "1",
        "pipe:1",
    ]
    try:
        result = subprocess.run(cmd, input=data, capture_output=True, check=True)
    except FileNotFoundError as exc:
        raise DecodeError("ffmpeg is not installed") from exc
    except subprocess.CalledProcessError as exc:
        detail = exc.stderr.decode(errors="replace").strip() if exc.stderr else ""
        raise DecodeError(f"Could not decode audio: {detail or exc}") from exc

    samples = np.frombuffer(result.stdout, dtype="<f4").astype(np.float32)
    if len(samples) == 0:
        raise DecodeError("Decoded audio is empty")
    return samples


def pcm16_to_float(pcm_bytes: bytes) -> np.ndarray:
    if len(pcm_bytes) % 2:
        raise DecodeError("Truncated 16-bit PCM payload")
    return np.frombuffer(pcm_bytes, dtype=np.int16).astype(np.float32) / 32768.0


def _ffmpeg_format(encoding: str) -> str:
    mapping = {
        "pcm_s16le": "s16le",
        "pcm_f32le": "f32le",
        "wav": "wav",
        "ogg": "ogg",
        "mp3": "mp3",
        "webm": "webm",
    }
    return mapping.get(encoding, "s16le")
