import json
import time

import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.ingest.codec import chunk_count, encode_chunk_payload, split
from app.ingest.record_stats import aggregate
from app.main import create_app
from conftest import make_records

OUT_OF_ORDER = [5, 1, 7, 0, 2, 6, 3, 4]


def _settings(**overrides) -> Settings:
    return Settings(**{"rate_limit_requests": 10_000, **overrides})


@pytest.fixture
def client():
    return TestClient(create_app(_settings(), run_sweeper=False))


def _log(item, title: str, request: dict, response: dict):
    """
    Store logs on the test item so conftest can attach to pytest-html report.
    """
    logs = getattr(item, "_api_logs", [])
    logs.append({"title": title, "request": request, "response": response})
    item._api_logs = logs


def _short(body: dict) -> dict:
    """Copy of a request body with chunk payloads elided for the report."""
    return {k: (f"<{len(v)} chars>" if k in ("chunk", "payloadChunk") else v) for k, v in body.items()}


def _post(client: TestClient, item, url: str, body: dict):
    resp = client.post(url, json=body)
    _log(item, f"POST {url}", {"method": "POST", "url": url, "json": _short(body)},
         {"status_code": resp.status_code, "json": resp.json()})
    return resp


def _wait_terminal(client: TestClient, item, job_id: str, timeout: float = 30.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        resp = client.get("/job/status", params={"jobId": job_id})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        if data["status"] in ("completed", "error"):
            _log(item, "GET /job/status", {"jobId": job_id}, {"status_code": 200, "json": {k: v for k, v in data.items() if k != "result"}})
            return data
        assert time.monotonic() < deadline, f"job {job_id} still {data['status']}"
        time.sleep(0.05)


def _start_job(client, item, total_chunks, geo_document) -> str:
    resp = _post(client, item, "/job/start", {"totalChunks": total_chunks, "geoDocument": geo_document})
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["status"] == "pending"
    assert data["jobId"].startswith("job_")
    return data["jobId"]


def _send_job_chunk(client, item, job_id, chunk):
    return _post(client, item, "/job/chunk", {
        "jobId": job_id,
        "chunkIndex": chunk.index,
        "payloadChunk": encode_chunk_payload(chunk.payload),
    })


def test_chunked_job_twelve_mb_out_of_order(request, geo_document):
    records = make_records(160_000, districts=("P1", "P2", "P3"))
    payload = json.dumps(records).encode("utf-8")
    assert len(payload) > 12 * 1024 * 1024

    received = {}

    def capturing(docs, geo):
        received["records"] = docs
        return aggregate(docs, geo)

    client = TestClient(create_app(_settings(), aggregator=capturing, run_sweeper=False))
    chunk_size = -(-len(payload) // 8)
    chunks = split(payload, chunk_size)
    assert len(chunks) == chunk_count(len(payload), chunk_size) == 8

    job_id = _start_job(client, request.node, 8, geo_document)

    progress = []
    for i in OUT_OF_ORDER:
        resp = _send_job_chunk(client, request.node, job_id, chunks[i])
        assert resp.status_code == 200, resp.text
        progress.append(resp.json()["progress"])
    assert progress == [6.25 * k for k in range(1, 9)]
    assert progress[-1] == 50

    resp = _post(client, request.node, "/job/finalize", {"jobId": job_id})
    assert resp.status_code == 202, resp.text
    assert resp.json()["status"] == "processing"

    data = _wait_terminal(client, request.node, job_id)
    assert data["status"] == "completed"
    assert data["progress"] == 100
    assert data["result"]["totalRecords"] == len(records)
    assert data["result"]["processingMethod"] == "background"
    assert json.dumps(received["records"]).encode("utf-8") == payload


def test_finalize_with_missing_chunk_is_rejected(client, request, geo_document):
    payload = json.dumps(make_records(200)).encode("utf-8")
    chunks = split(payload, -(-len(payload) // 8))
    job_id = _start_job(client, request.node, len(chunks), geo_document)

    for c in chunks[:-1]:
        assert _send_job_chunk(client, request.node, job_id, c).status_code == 200

    resp = _post(client, request.node, "/job/finalize", {"jobId": job_id})
    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "incomplete_upload"
    assert resp.json()["detail"] == "Not all chunks received"

    status = client.get("/job/status", params={"jobId": job_id}).json()
    assert status["status"] == "pending"
    assert status["chunksReceived"] == len(chunks) - 1

    # the missing chunk can still arrive
    assert _send_job_chunk(client, request.node, job_id, chunks[-1]).status_code == 200
    assert _post(client, request.node, "/job/finalize", {"jobId": job_id}).status_code == 202
    assert _wait_terminal(client, request.node, job_id)["status"] == "completed"


def test_duplicate_job_chunk_is_idempotent(client, request, geo_document):
    chunks = split(json.dumps(make_records(20)).encode("utf-8"), 200)
    job_id = _start_job(client, request.node, len(chunks), geo_document)

    first = _send_job_chunk(client, request.node, job_id, chunks[0]).json()
    again = _send_job_chunk(client, request.node, job_id, chunks[0]).json()
    assert first["chunksReceived"] == again["chunksReceived"] == 1
    assert first["progress"] == again["progress"]


def test_chunk_after_finalize_conflicts(client, request, geo_document):
    chunks = split(json.dumps(make_records(5)).encode("utf-8"), 10_000)
    job_id = _start_job(client, request.node, 1, geo_document)
    _send_job_chunk(client, request.node, job_id, chunks[0])
    assert _post(client, request.node, "/job/finalize", {"jobId": job_id}).status_code == 202
    _wait_terminal(client, request.node, job_id)

    resp = _send_job_chunk(client, request.node, job_id, chunks[0])
    assert resp.status_code == 409
    assert _post(client, request.node, "/job/finalize", {"jobId": job_id}).status_code == 409


def test_chunk_index_out_of_range(client, request, geo_document):
    job_id = _start_job(client, request.node, 2, geo_document)
    resp = _post(client, request.node, "/job/chunk", {
        "jobId": job_id, "chunkIndex": 2, "payloadChunk": encode_chunk_payload(b"[]"),
    })
    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "invalid_input"


def test_failed_processing_reports_error(request, geo_document):
    def broken(docs, geo):
        raise RuntimeError("aggregation backend down")

    client = TestClient(create_app(_settings(), aggregator=broken, run_sweeper=False))
    chunks = split(json.dumps(make_records(5)).encode("utf-8"), 10_000)
    job_id = _start_job(client, request.node, 1, geo_document)
    _send_job_chunk(client, request.node, job_id, chunks[0])
    _post(client, request.node, "/job/finalize", {"jobId": job_id})

    data = _wait_terminal(client, request.node, job_id)
    assert data["status"] == "error"
    assert "aggregation backend down" in data["error"]
    assert "result" not in data


def test_job_evicted_after_terminal_poll(request, clock, geo_document):
    client = TestClient(create_app(_settings(job_eviction_delay_seconds=60), clock=clock, run_sweeper=False))
    resp = _post(client, request.node, "/process/background", {"document": make_records(4), "geoDocument": geo_document})
    job_id = resp.json()["jobId"]

    assert _wait_terminal(client, request.node, job_id)["status"] == "completed"
    clock.advance(61)
    assert client.get("/job/status", params={"jobId": job_id}).status_code == 404


def test_standalone_upload_then_finalize(client, request, geo_document):
    records = make_records(300)
    payload = json.dumps(records).encode("utf-8")
    chunks = split(payload, 4096)
    upload_id = chunks[0].upload_id
    metadata = {"name": "voters.json", "contentType": "application/json", "totalSize": len(payload)}

    last = None
    for c in reversed(chunks):
        body = {
            "uploadId": upload_id,
            "chunkIndex": c.index,
            "totalChunks": c.total_chunks,
            "chunk": encode_chunk_payload(c.payload),
        }
        if c.index == 0:
            body["metadata"] = metadata
        last = _post(client, request.node, "/upload/chunk", body)
        assert last.status_code == 200, last.text
    assert last.json()["complete"] is True
    assert client.get("/upload/status", params={"uploadId": upload_id}).json()["receivedCount"] == len(chunks)

    resp = _post(client, request.node, "/upload/finalize", {"uploadId": upload_id, "geoDocument": geo_document})
    assert resp.status_code == 202, resp.text
    data = _wait_terminal(client, request.node, resp.json()["jobId"])
    assert data["result"]["totalRecords"] == 300

    again = _post(client, request.node, "/upload/finalize", {"uploadId": upload_id, "geoDocument": geo_document})
    assert again.status_code == 404

    late = _post(client, request.node, "/upload/chunk", {
        "uploadId": upload_id,
        "chunkIndex": 0,
        "totalChunks": len(chunks),
        "chunk": encode_chunk_payload(chunks[0].payload),
    })
    assert late.status_code == 409
    assert client.get("/health").json()["pendingUploads"] == 0


def test_text_encoded_chunks(client, request):
    text = '[{"Precinct": "P1"}]'
    for i, part in enumerate([text[:10], text[10:]]):
        resp = _post(client, request.node, "/upload/chunk", {
            "uploadId": "upload_text", "chunkIndex": i, "totalChunks": 2, "chunk": part, "encoding": "text",
        })
        assert resp.status_code == 200
    assert resp.json()["complete"] is True


def test_sync_processing(client, request, geo_document):
    resp = _post(client, request.node, "/process/sync", {
        "document": make_records(12),
        "geoDocument": geo_document,
        "enrichmentRequest": {"state": "PA", "county": "Dauphin"},
    })
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["totalRecords"] == 12
    assert data["processingMethod"] == "sync"
    assert data["enrichment"]["location"] == {"state": "PA", "county": "Dauphin"}


def test_sync_collaborator_failure_is_500(request, geo_document):
    def broken(docs, geo):
        raise ValueError("no such district")

    client = TestClient(create_app(_settings(), aggregator=broken, run_sweeper=False))
    resp = _post(client, request.node, "/process/sync", {"document": make_records(1), "geoDocument": geo_document})
    assert resp.status_code == 500
    assert resp.json()["errorCode"] == "processing_failed"
    assert "no such district" in resp.json()["detail"]


def test_server_error_log_carries_request_id(geo_document, caplog):
    def broken(docs, geo):
        raise ValueError("no such district")

    client = TestClient(create_app(_settings(), aggregator=broken, run_sweeper=False))
    with caplog.at_level("WARNING", logger="app.guardrails.errors"):
        resp = client.post(
            "/process/sync",
            json={"document": make_records(1), "geoDocument": geo_document},
            headers={"x-request-id": "req-sync-500"},
        )
    assert resp.status_code == 500
    assert resp.headers["x-request-id"] == "req-sync-500"
    assert any("req-sync-500" in r.getMessage() and "processing_failed" in r.getMessage() for r in caplog.records)


@pytest.mark.parametrize(
    "body",
    [
        {"document": [], "geoDocument": {"type": "FeatureCollection", "features": []}},
        {"document": None, "geoDocument": {"type": "FeatureCollection", "features": []}},
        {"document": {"not": "a list"}, "geoDocument": {"type": "FeatureCollection", "features": []}},
        {"document": [{"Precinct": "P1"}], "geoDocument": {"type": "FeatureCollection"}},
    ],
)
def test_invalid_documents_rejected_before_processing(client, request, body):
    resp = _post(client, request.node, "/process/background", body)
    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "invalid_input"
    assert client.get("/health").json()["jobs"] == 0


def test_null_document_is_invalid_on_sync_path(client, request):
    resp = _post(client, request.node, "/process/sync", {
        "document": None, "geoDocument": {"type": "FeatureCollection", "features": []},
    })
    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "invalid_input"
    assert "document" in resp.json()["details"]


def test_validate_endpoint(client, request, geo_document):
    ok = _post(client, request.node, "/validate", {"document": make_records(3), "geoDocument": geo_document})
    assert ok.status_code == 200
    assert ok.json()["valid"] is True
    assert ok.json()["document"]["count"] == 3

    bad = _post(client, request.node, "/validate", {"geoDocument": {"features": "nope"}})
    assert bad.json()["valid"] is False
    assert bad.json()["geoDocument"]["errors"]


def test_unknown_ids_are_404(client):
    assert client.get("/job/status", params={"jobId": "job_missing"}).status_code == 404
    assert client.get("/upload/status", params={"uploadId": "upload_missing"}).status_code == 404
    resp = client.post("/job/finalize", json={"jobId": "job_missing"})
    assert resp.status_code == 404
    assert resp.json()["errorCode"] == "not_found"


def test_zero_total_chunks_rejected(client):
    resp = client.post("/job/start", json={"totalChunks": 0, "geoDocument": {"features": []}})
    assert resp.status_code == 422


def test_oversized_chunk_request_is_413(geo_document):
    client = TestClient(create_app(_settings(max_chunk_request_kb=1), run_sweeper=False))
    resp = client.post("/upload/chunk", json={
        "uploadId": "upload_big", "chunkIndex": 0, "totalChunks": 1, "chunk": encode_chunk_payload(b"x" * 4096),
    })
    assert resp.status_code == 413


def test_rate_limit_is_429():
    client = TestClient(create_app(_settings(rate_limit_requests=2), run_sweeper=False))
    codes = [client.get("/limits").status_code for _ in range(3)]
    assert codes == [200, 200, 429]


def test_limits_and_health(client):
    limits = client.get("/limits").json()
    assert limits["syncMaxBytes"] == 5 * 1024 * 1024
    assert limits["backgroundMaxBytes"] == 50 * 1024 * 1024
    assert limits["chunkSizeBytes"] > 0

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.headers.get("x-request-id")
