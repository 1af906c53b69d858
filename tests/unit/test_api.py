import time

import pytest
from fastapi.testclient import TestClient

from ocr_app import create_app
from RateLimiter import FixedWindowRateLimiter, RateLimitPolicy

TERMINAL = {"completed", "failed", "cancelled"}


def _policies(upload_max: int = 100, ocr_max: int = 100, global_max: int = 1000) -> dict:
    return {
        "upload": RateLimitPolicy("upload", 60_000, upload_max),
        "ocr": RateLimitPolicy("ocr", 60_000, ocr_max),
        "global": RateLimitPolicy("global", 900_000, global_max),
    }


@pytest.fixture()
def make_client(session_manager, job_engine):
    clients = []

    def _make(policies=None) -> TestClient:
        app = create_app(
            session_manager=session_manager,
            job_engine=job_engine,
            rate_limiter=FixedWindowRateLimiter(),
            policies=policies or _policies(),
            min_disk_free_gb=0,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture()
def client(make_client) -> TestClient:
    return make_client()


def _create_session(client: TestClient, file_size: int = 3000, chunk_size: int = 1000) -> dict:
    response = client.post(
        "/upload",
        json={"filename": "r.jpg", "file_size": file_size, "chunk_size": chunk_size},
    )
    assert response.status_code == 200, response.text
    return response.json()


def _send_chunk(client: TestClient, upload_id: str, index: int, total: int, data: bytes):
    return client.post(
        "/chunk",
        data={"upload_id": upload_id, "chunk_index": str(index), "total_chunks": str(total)},
        files={"chunk": ("blob", data, "application/octet-stream")},
    )


def _upload_all(client: TestClient, size: int = 3000, chunk_size: int = 1000) -> str:
    session = _create_session(client, size, chunk_size)
    total = session["max_chunks"]
    for index in range(total):
        response = _send_chunk(client, session["upload_id"], index, total, b"z" * chunk_size)
        assert response.status_code == 200, response.text
    return session["upload_id"]


def _poll(client: TestClient, job_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/status/{job_id}").json()
        if body["status"] in TERMINAL:
            return body
        time.sleep(0.02)
    raise AssertionError(f"Job {job_id} did not finish")


class TestUploadFlow:
    def test_end_to_end(self, client) -> None:
        session = _create_session(client)
        assert session["chunk_size"] == 1000
        assert session["max_chunks"] == 3

        results = [
            _send_chunk(client, session["upload_id"], i, 3, b"z" * 1000).json() for i in (2, 0, 1)
        ]
        assert [r["received_chunks"] for r in results] == [1, 2, 3]
        assert results[-1]["complete"] is True

        process = client.post("/process", json={"upload_id": session["upload_id"]})
        assert process.status_code == 200
        job_id = process.json()["job_id"]

        job = _poll(client, job_id)
        assert job["status"] == "completed"
        assert job["result"]["extracted_text"] == "TEST"
        assert job["progress"] == 1.0

    def test_invalid_session_request(self, client) -> None:
        response = client.post("/upload", json={"filename": "r.jpg", "file_size": 0})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_INPUT"

    def test_missing_fields_are_invalid_input(self, client) -> None:
        response = client.post("/upload", json={"filename": "r.jpg"})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_INPUT"

    def test_chunk_for_unknown_session(self, client) -> None:
        response = _send_chunk(client, "missing", 0, 1, b"data")

        assert response.status_code == 404
        assert response.json()["code"] == "SESSION_NOT_FOUND"

    def test_chunk_out_of_range(self, client) -> None:
        session = _create_session(client)

        response = _send_chunk(client, session["upload_id"], 3, 3, b"data")

        assert response.status_code == 400
        assert response.json()["code"] == "CHUNK_OUT_OF_RANGE"

    def test_chunk_after_completion(self, client) -> None:
        upload_id = _upload_all(client, 1000, 1000)

        response = _send_chunk(client, upload_id, 0, 1, b"again")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SESSION_STATE"

    def test_oversized_chunk(self, client) -> None:
        session = _create_session(client)

        response = _send_chunk(client, session["upload_id"], 0, 3, b"z" * 5000)

        assert response.status_code == 413


class TestJobs:
    def test_process_incomplete_upload(self, client) -> None:
        session = _create_session(client)
        _send_chunk(client, session["upload_id"], 0, 3, b"z" * 1000)

        response = client.post("/process", json={"upload_id": session["upload_id"]})

        assert response.status_code == 404
        assert response.json()["code"] == "SESSION_NOT_READY"

    def test_process_unknown_upload(self, client) -> None:
        response = client.post("/process", json={"upload_id": "missing"})

        assert response.status_code == 404
        assert response.json()["code"] == "SESSION_NOT_FOUND"

    def test_unknown_job_status(self, client) -> None:
        response = client.get("/status/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "JOB_NOT_FOUND"

    def test_cancel_completed_job_conflicts(self, client) -> None:
        upload_id = _upload_all(client)
        job_id = client.post("/process", json={"upload_id": upload_id}).json()["job_id"]
        _poll(client, job_id)

        response = client.delete(f"/job/{job_id}")

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_STATE"
        assert client.get(f"/status/{job_id}").json()["status"] == "completed"

    def test_cancel_unknown_job(self, client) -> None:
        assert client.delete("/job/missing").status_code == 404

    def test_list_jobs(self, client) -> None:
        upload_id = _upload_all(client)
        job_id = client.post("/process", json={"upload_id": upload_id}).json()["job_id"]
        _poll(client, job_id)

        body = client.get("/jobs", params={"status": "completed"}).json()

        assert body["returned"] == 1
        assert body["jobs"][0]["job_id"] == job_id

    def test_list_jobs_rejects_unknown_status(self, client) -> None:
        assert client.get("/jobs", params={"status": "bogus"}).status_code == 400


class TestClassify:
    def test_classifies_text(self, client) -> None:
        response = client.post("/classify", json={"extracted_text": "SHELL\nTOTAL $45.67"})

        assert response.status_code == 200
        assert response.json()["classification"]["vendor_name"] == "Shell"

    def test_short_text_returns_fallback(self, client) -> None:
        response = client.post("/classify", json={"extracted_text": "hi"})

        assert response.status_code == 400
        assert response.json()["classification"]["confidence"] == 0.1


class TestCorrelationAndLimits:
    def test_client_correlation_id_is_echoed(self, client) -> None:
        response = client.get("/health", headers={"X-Correlation-ID": "rn-device-1234"})

        assert response.headers["X-Correlation-ID"] == "rn-device-1234"
        assert response.headers["X-Request-ID"] == "rn-device-1234"
        assert response.json()["correlation_id"] == "rn-device-1234"

    def test_invalid_correlation_id_is_replaced(self, client) -> None:
        response = client.get("/health", headers={"X-Correlation-ID": "bad<id>"})

        assert response.headers["X-Correlation-ID"].startswith("api-")

    def test_upload_policy_denies_with_retry_after(self, make_client) -> None:
        client = make_client(_policies(upload_max=2))

        statuses = [
            client.post("/upload", json={"filename": "r.jpg", "file_size": 100}).status_code
            for _ in range(3)
        ]

        assert statuses == [200, 200, 429]
        denied = client.post("/upload", json={"filename": "r.jpg", "file_size": 100})
        assert denied.json()["code"] == "RATE_LIMITED"
        assert int(denied.headers["Retry-After"]) >= 1
        assert denied.headers["RateLimit-Remaining"] == "0"

    def test_ocr_policy_limits_requests_without_correlation_header(self, make_client) -> None:
        client = make_client(_policies(ocr_max=2))

        statuses = [
            client.post("/process", json={"upload_id": "missing"}).status_code
            for _ in range(4)
        ]

        assert statuses == [404, 404, 429, 429]

    def test_ocr_policy_ignores_rotating_correlation_ids(self, make_client) -> None:
        client = make_client(_policies(ocr_max=2))

        statuses = [
            client.post(
                "/process",
                json={"upload_id": "missing"},
                headers={"X-Correlation-ID": f"client-{i:04d}-abcdef"},
            ).status_code
            for i in range(3)
        ]

        assert statuses == [404, 404, 429]

    def test_denied_response_carries_cors_headers(self, make_client) -> None:
        client = make_client(_policies(upload_max=1))
        origin = {"Origin": "http://localhost:8081"}
        client.post("/upload", json={"filename": "r.jpg", "file_size": 100}, headers=origin)

        denied = client.post("/upload", json={"filename": "r.jpg", "file_size": 100}, headers=origin)

        assert denied.status_code == 429
        assert "access-control-allow-origin" in denied.headers
        assert "Retry-After" in denied.headers["access-control-expose-headers"]

    def test_rate_limit_headers_on_success(self, client) -> None:
        response = client.post("/upload", json={"filename": "r.jpg", "file_size": 100})

        assert response.headers["RateLimit-Limit"] == "100"
        assert response.headers["RateLimit-Remaining"] == "99"

    def test_health_is_not_limited(self, make_client) -> None:
        client = make_client(_policies(global_max=1))

        assert all(client.get("/health").status_code == 200 for _ in range(3))

    def test_health_reports_stats(self, client) -> None:
        body = client.get("/health").json()

        assert body["status"] in ("healthy", "degraded")
        assert body["stats"]["jobs"]["total"] == 0
        assert body["stats"]["uploads"]["active_sessions"] == 0
