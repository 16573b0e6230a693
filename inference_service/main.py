from __future__ import annotations

import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from common.config import InferenceSettings
from common.schemas import ErrorEvent, GenerateCommand, HealthResponse, parse_command
from inference_service.engine import InferenceEngine
from inference_service.worker import InferenceWorker

logger = logging.getLogger(__name__)

settings = InferenceSettings()
app = FastAPI(title="Inference Service")
worker = InferenceWorker(InferenceEngine(settings))


@app.on_event("shutdown")
async def shutdown():
    await worker.close()


@app.get("/health", response_model=HealthResponse, response_model_by_alias=True)
async def health():
    snapshot = worker.scheduler.snapshot()
    return HealthResponse(
        engine=worker.engine.state,
        in_flight=snapshot["in_flight"],
        queued=snapshot["queued"],
    )


@app.websocket("/ws")
async def inference_endpoint(ws: WebSocket):
    await ws.accept()
    connected = True

    async def send(event) -> None:
        if not connected:
            logger.debug("Client gone, dropping %s event", event.status)
            return
        await ws.send_text(event.to_json())

    try:
        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                break
            if "text" not in message or message["text"] is None:
                await send(ErrorEvent(message="Expected a JSON command"))
                continue

            try:
                command = parse_command(message["text"])
            except ValidationError as exc:
                await send(ErrorEvent(message=f"Invalid command: {exc.errors()[0]['msg']}"))
                continue

            audio = None
            if isinstance(command, GenerateCommand):
                # samples follow the header as one binary frame
                frame = await ws.receive()
                if frame.get("type") == "websocket.disconnect":
                    break
                audio = frame.get("bytes")
                if audio is None:
                    await send(
                        ErrorEvent(
                            message="Expected audio frame after generate command",
                            chunk_id=command.chunk_id,
                            session_id=command.session_id,
                        )
                    )
                    continue

            await worker.handle(command, send, audio)

    except WebSocketDisconnect:
        logger.info("Inference client disconnected")
    except Exception:
        logger.exception("Inference stream error")
    finally:
        connected = False
        logger.info("Inference connection closed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
