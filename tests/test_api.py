"""HTTP-level tests for the speed test endpoints and request envelope."""

from unittest.mock import patch

from fastapi.testclient import TestClient

from speedtest_backend.config import Settings
from speedtest_backend.main import create_app
from speedtest_backend.utils import MIN_DOWNLOAD_SIZE

MIB = 1024 * 1024
ORIGIN = "http://localhost:5173"


class TestHealthAndPing:
    """Tests for the liveness and latency endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert isinstance(data["timestamp"], int)

    def test_ping_returns_server_time(self, client):
        response = client.get("/api/ping")

        assert response.status_code == 200
        data = response.json()
        assert isinstance(data["timestamp"], int)
        assert data["timestamp"] == data["serverTime"]

    def test_ping_timestamps_non_decreasing(self, client):
        timestamps = [client.get("/api/ping").json()["timestamp"] for _ in range(10)]

        assert timestamps == sorted(timestamps)


class TestDownloadEndpoint:
    """Tests for GET /api/download."""

    def test_below_minimum_streams_minimum(self, app, client):
        response = client.get("/api/download", params={"size": 10})

        assert response.status_code == 200
        assert response.headers["content-length"] == str(MIN_DOWNLOAD_SIZE)
        assert response.headers["content-type"] == "application/octet-stream"
        assert response.headers["content-disposition"] == 'attachment; filename="speedtest.dat"'
        assert "no-store" in response.headers["cache-control"]
        assert len(response.content) == MIN_DOWNLOAD_SIZE
        assert app.state.limiter.active == 0

    def test_invalid_size_rejected(self, client):
        response = client.get("/api/download", params={"size": "lots"})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid size parameter"}


class TestUploadEndpoint:
    """Tests for POST /api/upload."""

    def test_one_mib_upload(self, client):
        response = client.post("/api/upload", content=b"\x00" * MIB)

        assert response.status_code == 200
        data = response.json()
        assert data["received"] == 1048576
        assert data["expected"] == 1048576
        assert isinstance(data["duration"], float)
        assert data["duration"] >= 0
        assert isinstance(data["timestamp"], int)

    def test_upload_body_is_not_parsed(self, client):
        response = client.post(
            "/api/upload",
            content=b'{"not": "parsed"}',
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["received"] == 17

    def test_missing_content_length(self, client):
        with patch("speedtest_backend.main.count_upload") as mock_count:
            response = client.post("/api/upload", content=iter([b"abc"]))

        assert response.status_code == 400
        assert response.json() == {"error": "Content-Length header required"}
        mock_count.assert_not_called()

    def test_invalid_content_length(self, client):
        for value in ("abc", "0", "-10"):
            response = client.post("/api/upload", content=b"abc", headers={"Content-Length": value})

            assert response.status_code == 400
            assert response.json() == {"error": "Invalid Content-Length"}

    def test_received_independent_of_declared(self, client):
        response = client.post("/api/upload", content=b"abc", headers={"Content-Length": "10"})

        assert response.status_code == 200
        assert response.json()["received"] == 3
        assert response.json()["expected"] == 10

    def test_session_released_after_upload(self, app, client):
        client.post("/api/upload", content=b"abc")

        assert app.state.limiter.active == 0


class TestEnvelope:
    """Tests for cache suppression, CORS, body limits and error translation."""

    def test_no_cache_headers_on_json_responses(self, client):
        response = client.get("/health")

        assert response.headers["cache-control"] == "no-store, no-cache, must-revalidate, private"
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["expires"] == "0"

    def test_no_cache_headers_on_errors(self, client):
        response = client.get("/missing")

        assert "no-store" in response.headers["cache-control"]

    def test_cors_allows_configured_origin(self, client):
        response = client.get("/api/ping", headers={"Origin": ORIGIN})

        assert response.headers["access-control-allow-origin"] == ORIGIN
        assert response.headers["access-control-allow-credentials"] == "true"

    def test_cors_ignores_other_origins(self, client):
        response = client.get("/api/ping", headers={"Origin": "http://evil.example"})

        assert "access-control-allow-origin" not in response.headers

    def test_cors_preflight(self, client):
        response = client.options(
            "/api/upload",
            headers={"Origin": ORIGIN, "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == ORIGIN

    def test_unknown_route(self, client):
        response = client.get("/api/nothing-here")

        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}

    def test_wrong_method(self, client):
        response = client.delete("/api/ping")

        assert response.status_code == 405
        assert "error" in response.json()

    def test_unhandled_error_is_generic(self):
        app = create_app(Settings())

        async def boom():
            raise RuntimeError("secret internal detail")

        app.add_api_route("/boom", boom)

        with TestClient(app, raise_server_exceptions=False) as test_client:
            response = test_client.get("/boom", headers={"Origin": ORIGIN})
            other_origin = test_client.get("/boom", headers={"Origin": "http://evil.example"})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert "secret" not in response.text
        assert "no-store" in response.headers["cache-control"]
        assert response.headers["access-control-allow-origin"] == ORIGIN
        assert response.headers["access-control-allow-credentials"] == "true"
        assert response.headers["vary"] == "Origin"
        assert "access-control-allow-origin" not in other_origin.headers

    def test_declared_body_over_limit(self):
        app = create_app(Settings(json_body_limit=10))

        with TestClient(app) as test_client:
            response = test_client.post("/health", content=b"x" * 100)

        assert response.status_code == 413
        assert response.json() == {"error": "Payload too large"}

    def test_upload_exempt_from_body_limit(self):
        app = create_app(Settings(json_body_limit=10))

        with TestClient(app) as test_client:
            response = test_client.post("/api/upload", content=b"x" * 100)

        assert response.status_code == 200
        assert response.json()["received"] == 100


class TestAdmissionLimit:
    """Tests for the optional concurrent session cap."""

    def test_sessions_above_limit_rejected(self):
        app = create_app(Settings(max_concurrent_sessions=1))
        app.state.limiter.active = 1

        with TestClient(app) as test_client:
            download = test_client.get("/api/download")
            upload = test_client.post("/api/upload", content=b"abc")

        assert download.status_code == 503
        assert download.json() == {"error": "Server busy"}
        assert upload.status_code == 503

    def test_ping_not_subject_to_limit(self):
        app = create_app(Settings(max_concurrent_sessions=1))
        app.state.limiter.active = 1

        with TestClient(app) as test_client:
            response = test_client.get("/api/ping")

        assert response.status_code == 200
