from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from ingest.api.dependencies import get_job_context
from ingest.api.main import app
from ingest.core.config import Settings, get_settings
from ingest.jobs.executor import JobContext
from ingest.services.snapshots import MemorySnapshotWriter
from ingest.services.store import InMemoryStore
from ingest.sources.registry import SourceRegistry
from tests.fakes import FakeSource, fast_runtime

API_KEY = "test-key"
HEADERS = {"X-API-Key": API_KEY}


def _client(context: JobContext, settings: Settings) -> TestClient:
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_job_context] = lambda: context
    return TestClient(app)


@pytest.fixture
def job_context() -> JobContext:
    return JobContext(
        store=InMemoryStore([fast_runtime(), fast_runtime("paused_source", state="paused")]),
        registry=SourceRegistry([FakeSource(), FakeSource("paused_source"), FakeSource("broken", health_status="failed")]),
        snapshot_writer=MemorySnapshotWriter(),
        settings=Settings(api_key=API_KEY),
    )


@pytest.fixture
def api_client(job_context: JobContext) -> TestClient:
    with _client(job_context, job_context.settings) as client:
        yield client
    app.dependency_overrides.clear()


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-Id"]


def test_request_id_is_echoed() -> None:
    response = TestClient(app).get("/healthz", headers={"X-Request-Id": "req-42"})
    assert response.headers["X-Request-Id"] == "req-42"


def test_jobs_require_api_key(api_client: TestClient) -> None:
    assert api_client.get("/jobs/sources").status_code == 401
    assert api_client.get("/jobs/sources", headers={"X-API-Key": "wrong"}).status_code == 401


def test_jobs_unavailable_without_configured_key(job_context: JobContext) -> None:
    with _client(job_context, Settings(api_key=None)) as client:
        response = client.get("/jobs/sources", headers=HEADERS)
    app.dependency_overrides.clear()
    assert response.status_code == 503


def test_list_sources(api_client: TestClient) -> None:
    response = api_client.get("/jobs/sources", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["kind"] == "list_sources"
    assert [source["source_key"] for source in body["result"]["sources"]] == ["fake_source", "paused_source", "broken"]


def test_run_source_over_http(api_client: TestClient, job_context: JobContext) -> None:
    response = api_client.post("/jobs/run_source", json={"inputs": {"source_key": "fake_source"}}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["handled"] is True
    assert body["result"]["status"] == "success"
    assert body["result"]["run_id"] in job_context.store.runs


def test_job_errors_map_to_http_status(api_client: TestClient) -> None:
    def post(kind: str, inputs: dict | None = None) -> int:
        payload = {"inputs": inputs} if inputs is not None else None
        return api_client.post(f"/jobs/{kind}", json=payload, headers=HEADERS).status_code

    assert post("run_source", {"source_key": "missing"}) == 404
    assert post("run_source", {}) == 422
    assert post("run_source", {"source_key": "paused_source"}) == 409
    assert post("run_source", {"source_key": "broken"}) == 502
    assert post("replay_run", {"run_id": "nope"}) == 404
    assert post("send_newsletter") == 422
