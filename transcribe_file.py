import asyncio
import logging
import sys

from common.config import CoordinatorSettings
from coordinator.batch import BatchCoordinator
from coordinator.channel import WebSocketChannel
from coordinator.client import InferenceClient


async def transcribe(path: str, language: str | None = None):
    settings = CoordinatorSettings()
    with open(path, "rb") as f:
        data = f.read()

    async with InferenceClient(WebSocketChannel(settings.inference_ws_url)) as client:
        await client.load()
        print("Model ready")

        batch = BatchCoordinator(
            client,
            settings=settings,
            language=language,
            on_progress=lambda p: print(f"Processing: {p}%"),
        )
        try:
            result = await batch.transcribe(data)
        finally:
            batch.close()

    for record in result.errors:
        print(f"Chunk {record.chunk_id} failed: {record.error}", file=sys.stderr)
    print()
    print(result.text)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(f"usage: {sys.argv[0]} AUDIO_FILE [LANGUAGE]", file=sys.stderr)
        sys.exit(2)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    language = sys.argv[2] if len(sys.argv) > 2 else None
    asyncio.run(transcribe(sys.argv[1], language))
