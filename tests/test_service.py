import json

import numpy as np
import pytest
from fastapi.testclient import TestClient

from common.schemas import GenerateCommand, LoadCommand
from inference_service import main as service
from inference_service.worker import InferenceWorker

from conftest import FakeEngine


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(service, "worker", InferenceWorker(FakeEngine(ready=False)))
    with TestClient(service.app) as test_client:
        yield test_client


def receive_until(ws, status):
    seen = []
    while True:
        data = json.loads(ws.receive_text())
        seen.append(data)
        if data["status"] in (status, "error"):
            return seen


class TestHealth:
    def test_health_reports_engine_state(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "engine": "idle", "inFlight": None, "queued": 0}


class TestInferenceSocket:
    def test_load_then_generate(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(LoadCommand().to_json())
            loaded = receive_until(ws, "ready")
            assert [m["status"] for m in loaded] == ["initiate", "progress", "done", "ready"]

            samples = np.full(16000, 2, dtype="<f4")
            cmd = GenerateCommand(chunk_id=2, session_id="s1", language="en", sample_count=len(samples))
            ws.send_text(cmd.to_json())
            ws.send_bytes(samples.tobytes())

            events = receive_until(ws, "complete")
            assert [m["status"] for m in events] == ["start", "update", "complete"]
            assert events[-1]["output"] == ["word2"]
            assert events[-1]["chunkId"] == 2
            assert events[-1]["sessionId"] == "s1"

    def test_generate_before_load_is_rejected(self, client):
        with client.websocket_connect("/ws") as ws:
            cmd = GenerateCommand(chunk_id=0, session_id="s1", sample_count=4)
            ws.send_text(cmd.to_json())
            ws.send_bytes(np.zeros(4, dtype="<f4").tobytes())
            error = json.loads(ws.receive_text())
            assert error["status"] == "error"
            assert error["chunkId"] == 0
            assert error["message"] == "Model is not loaded"

    def test_invalid_command_reports_error(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"command": "cancel"}))
            error = json.loads(ws.receive_text())
            assert error["status"] == "error"
            assert error["message"].startswith("Invalid command")

    def test_missing_audio_frame(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(GenerateCommand(chunk_id=1, session_id="s1", sample_count=4).to_json())
            ws.send_text(LoadCommand().to_json())
            error = json.loads(ws.receive_text())
            assert error["status"] == "error"
            assert error["chunkId"] == 1

    def test_malformed_audio_frame(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(LoadCommand().to_json())
            receive_until(ws, "ready")
            ws.send_text(GenerateCommand(chunk_id=0, session_id="s1", sample_count=1).to_json())
            ws.send_bytes(b"\x00\x01\x02")
            error = json.loads(ws.receive_text())
            assert error["status"] == "error"
            assert error["message"] == "Audio payload is not float32 PCM"
