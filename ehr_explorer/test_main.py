import asyncio
import json
import time

import pytest
from fastapi.testclient import TestClient

from ehr_explorer.config import AppConfig, Config, DatabaseConfig, IngestConfig, NotifyConfig, RetryConfig
from ehr_explorer.main import create_app, event_stream
from ehr_explorer.notifier import DataChangeBroadcaster
from ehr_explorer.sample_data import condition_resource, make_bundle, medication_resource, patient_resource

def _config(tmp_path, watch_on_startup: bool = False) -> Config:
    return Config(
        app=AppConfig(),
        database=DatabaseConfig(path=str(tmp_path / "api.db"), busy_timeout_ms=0),
        retry=RetryConfig(max_attempts=3, delay_seconds=0),
        ingest=IngestConfig(
            data_dir=str(tmp_path / "synthea"),
            poll_interval=0.05,
            stability_threshold=0,
            watch_on_startup=watch_on_startup
        ),
        notify=NotifyConfig()
    )

def _jane_doe_bytes() -> bytes:
    bundle = make_bundle([
        patient_resource("p1", "Jane", "Doe"),
        condition_resource("urn:uuid:p1", "Asthma", "2020-01-01"),
        medication_resource("urn:uuid:p1", "Albuterol", "active"),
    ])
    return json.dumps(bundle).encode("utf-8")

def _wait_for_jobs(client: TestClient, processed: int, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        status = client.get("/ingest/status").json()
        if status["state"] == "idle" and status["stats"]["processed"] >= processed:
            return status
        if time.monotonic() > deadline:
            raise AssertionError(f"ingestion did not finish: {status}")
        time.sleep(0.05)

class TestUploadEndpoint:
    """Test bundle upload and ingestion through the HTTP surface"""

    @pytest.fixture(autouse=True)
    def _client(self, tmp_path):
        self.config = _config(tmp_path)
        with TestClient(create_app(self.config)) as client:
            self.client = client
            yield

    def test_upload_valid_bundle(self):
        response = self.client.post(
            "/upload-patient",
            files={"file": ("jane.json", _jane_doe_bytes(), "application/json")}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["fileName"] == "jane.json"
        assert data["queued"] is True

        status = _wait_for_jobs(self.client, 1)
        assert status["stats"]["succeeded"] == 1
        assert status["tables"] == {"patients": 1, "conditions": 1, "medications": 1, "encounters": 0}

    def test_upload_saves_file_into_data_dir(self, tmp_path):
        self.client.post("/upload-patient", files={"file": ("jane.json", _jane_doe_bytes(), "application/json")})
        _wait_for_jobs(self.client, 1)
        assert (tmp_path / "synthea" / "jane.json").read_bytes() == _jane_doe_bytes()

    def test_upload_invalid_json(self):
        response = self.client.post(
            "/upload-patient",
            files={"file": ("broken.json", b"{not json", "application/json")}
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "INVALID_BUNDLE"

    def test_upload_bundle_without_patient(self):
        content = json.dumps(make_bundle([condition_resource()])).encode("utf-8")
        response = self.client.post("/upload-patient", files={"file": ("orphan.json", content, "application/json")})
        assert response.status_code == 400
        assert response.json()["detail"]["details"]["reason"] == "bundle has no Patient entry"

    def test_upload_wrong_file_type(self):
        response = self.client.post("/upload-patient", files={"file": ("notes.txt", b"hello", "text/plain")})
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "INVALID_FILE_TYPE"

    def test_upload_without_file(self):
        response = self.client.post("/upload-patient")
        assert response.status_code == 422

class TestServiceEndpoints:
    """Test health, notification and reset endpoints"""

    @pytest.fixture(autouse=True)
    def _client(self, tmp_path):
        self.tmp_path = tmp_path
        with TestClient(create_app(_config(tmp_path))) as client:
            self.client = client
            yield

    def test_root(self):
        data = self.client.get("/").json()
        assert data["data_dir"] == str(self.tmp_path / "synthea")

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "patients": 0, "ingest_state": "idle"}

    def test_notify_data_change(self):
        response = self.client.post("/notify-data-change")
        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_status_when_idle(self):
        status = self.client.get("/ingest/status").json()
        assert status["state"] == "idle"
        assert status["backlog"] == []
        assert status["last_job"] is None

    def test_reset_reprocesses_data_dir(self):
        self.client.post("/upload-patient", files={"file": ("jane.json", _jane_doe_bytes(), "application/json")})
        _wait_for_jobs(self.client, 1)

        response = self.client.post("/ingest/reset")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["deleted"]["patients"] == 1
        assert data["queued"] == 1
        status = _wait_for_jobs(self.client, 2)
        assert status["tables"]["patients"] == 1
        assert status["tables"]["conditions"] == 1

    def test_status_reports_reset_flag(self):
        assert self.client.get("/ingest/status").json()["resetting"] is False

class TestAppDebugFlag:
    """Test that DEBUG reaches the application"""

    def test_debug_defaults_off(self, tmp_path):
        assert create_app(_config(tmp_path)).debug is False

    def test_debug_enabled(self, tmp_path):
        config = _config(tmp_path)
        config.app = AppConfig(debug=True)
        assert create_app(config).debug is True

class TestWatcherOnStartup:
    """Test that files dropped into the data directory are picked up"""

    def test_existing_file_is_ingested(self, tmp_path):
        data_dir = tmp_path / "synthea"
        data_dir.mkdir()
        (data_dir / "jane.json").write_bytes(_jane_doe_bytes())

        with TestClient(create_app(_config(tmp_path, watch_on_startup=True))) as client:
            status = _wait_for_jobs(client, 1)

        assert status["tables"]["patients"] == 1

class TestEventStream:
    """Test the Server-Sent Events body"""

    def test_ping_then_events(self):
        async def scenario():
            broadcaster = DataChangeBroadcaster()
            queue = broadcaster.subscribe()
            stream = event_stream(broadcaster, queue)
            first = await stream.__anext__()
            await broadcaster.notify({"timestamp": "t1"})
            second = await stream.__anext__()
            await stream.aclose()
            return broadcaster, first, second

        broadcaster, first, second = asyncio.run(scenario())
        assert first == ": ping\n\n"
        assert second == 'data: {"timestamp": "t1"}\n\n'
        assert broadcaster.subscriber_count == 0
