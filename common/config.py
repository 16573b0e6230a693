from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class InferenceSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8001
    model_size: str = "base"
    device: str = "auto"
    compute_type: str = "default"
    beam_size: int = 5
    max_new_tokens: int = 128
    download_root: Optional[str] = None

    model_config = {"env_prefix": "INFERENCE_"}


class CoordinatorSettings(BaseSettings):
    inference_ws_url: str = "ws://localhost:8001/ws"
    language: str = "en"
    sample_rate: int = 16000
    # Chunk keeps at most MAX_AUDIO_SECONDS of samples
    window_seconds: float = Field(30.0, gt=0, le=30)
    wave_size: int = 3
    tick_interval_s: float = 0.25
    capture_encoding: str = "pcm_s16le"

    model_config = {"env_prefix": "COORDINATOR_"}

    @property
    def window_samples(self) -> int:
        return int(self.window_seconds * self.sample_rate)
