"""
Unit Tests - Rollup API
"""
import pytest
from fastapi.testclient import TestClient

from engagement_rollups.aggregation.session_aggregator import OpenSession
from engagement_rollups.engine import RollupEngine
from engagement_rollups.serving.api.main import create_api_app
from engagement_rollups.serving.query import QueryFacade


@pytest.fixture
def engine(engine_settings, clock):
    return RollupEngine(engine_settings, clock=clock)


@pytest.fixture
def client(engine):
    app = create_api_app()
    app.state.engine = engine
    app.state.query = QueryFacade(engine)
    return TestClient(app)


class TestRollupAPI:
    """Tests for the HTTP surface"""

    def test_liveness(self, client):
        """Test the liveness endpoint"""
        response = client.get("/api/v1/health/live")

        assert response.status_code == 200
        assert response.json() == {"status": "alive"}
        assert "X-Request-ID" in response.headers

    def test_request_id_echoed(self, client):
        """Test a caller-supplied request id is returned with the response"""
        response = client.get("/api/v1/health/live", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert response.headers["X-Response-Time"].endswith("ms")

    def test_readiness_when_engine_stopped(self, client):
        """Test readiness fails while the engine is not running"""
        response = client.get("/api/v1/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "engine_stopped"

    def test_health_reports_stopped_engine(self, client):
        """Test health marks a stopped engine unhealthy"""
        body = client.get("/api/v1/health").json()

        assert body["status"] == "unhealthy"
        assert body["checks"]["engine"]["status"] == "stopped"

    def test_lag(self, client):
        """Test the lag report is exposed"""
        body = client.get("/api/v1/lag").json()

        assert body["persistent"] is False
        assert len(body["shards"]) == 4

    def test_ingest_batch(self, client, engine):
        """Test batch ingest reports per-record outcomes"""
        records = [
            {"session_id": "S1", "user_id": "U1", "start_time": "2024-01-01T12:00:00Z"},
            {"session_id": "S1", "event_type": "click", "timestamp": "2024-01-01T12:00:01Z", "dedup_key": "k1"},
            {"session_id": "S1", "event_type": "click", "timestamp": "2024-01-01T12:00:01Z", "dedup_key": "k1"},
            {"session_id": "S1", "event_type": "click", "timestamp": "garbage"},
        ]

        response = client.post("/api/v1/ingest", json={"records": records})

        assert response.status_code == 200
        body = response.json()
        assert (body["accepted"], body["duplicate"], body["rejected"]) == (2, 1, 1)
        assert body["results"][3]["reason"] == "malformed"
        assert engine.intake.session_entry("S1") is not None

    def test_dimension_changes(self, client, engine):
        """Test stale dimension versions are discarded"""
        changes = [
            {"user_id": "U1", "region": "EU", "account_type": "paid", "version": 2},
            {"user_id": "U1", "region": "US", "account_type": "paid", "version": 1},
        ]

        body = client.post("/api/v1/dimensions", json=changes).json()

        assert body == {"applied": 1, "discarded": 1}
        assert engine.dimensions.lookup("U1").region == "EU"

    def test_get_session(self, client, engine, make_open):
        """Test reading an open session rollup"""
        engine.session_shard_for("S1").handle(OpenSession(make_open("S1", "U1")))

        response = client.get("/api/v1/sessions/S1")

        assert response.status_code == 200
        assert response.json()["status"] == "open"

    def test_get_unknown_session(self, client):
        """Test unknown sessions map to 404"""
        response = client.get("/api/v1/sessions/S404")

        assert response.status_code == 404

    def test_list_users(self, client, engine, make_rollup):
        """Test listing, filtering and paging user rollups"""
        for user_id, region in (("U1", "US"), ("U2", "EU"), ("U3", "US")):
            engine.user_shard_for(user_id).apply(make_rollup(f"S-{user_id}", user_id=user_id, region=region))

        first = client.get("/api/v1/users", params={"region": "US", "page_size": 1}).json()

        assert [u["user_id"] for u in first["items"]] == ["U1"]
        assert first["items"][0]["avg_session_duration"] == 60.0
        assert first["next_token"] is not None

        second = client.get(
            "/api/v1/users",
            params={"region": "US", "page_size": 1, "continuation_token": first["next_token"]},
        ).json()

        assert [u["user_id"] for u in second["items"]] == ["U3"]

    def test_list_users_invalid_token(self, client):
        """Test malformed continuation tokens map to 400"""
        response = client.get("/api/v1/users", params={"continuation_token": "not-a-token"})

        assert response.status_code == 400

    def test_list_users_page_size_bounds(self, client):
        """Test page_size outside 1..1000 is rejected"""
        assert client.get("/api/v1/users", params={"page_size": 0}).status_code == 422
        assert client.get("/api/v1/users", params={"page_size": 1001}).status_code == 422

    def test_missing_engine_is_503(self):
        """Test requests before start-up completes are refused"""
        client = TestClient(create_api_app())

        assert client.get("/api/v1/lag").status_code == 503
