import pytest
from unittest.mock import patch, MagicMock
from fastapi.testclient import TestClient
from bioauth.main import app
from bioauth.api.auth import require_admin
from bioauth.settings import settings

client = TestClient(app)

@pytest.fixture
def skip_auth():
    app.dependency_overrides[require_admin] = lambda: None
    yield
    app.dependency_overrides = {}

def _redis(counters, latencies):
    mr = MagicMock()
    mr.get.side_effect = lambda k: counters.get(k)
    mr.lrange.side_effect = lambda k, start, end: latencies.get(k, [])
    return mr

@patch("bioauth.observability.metrics.get_redis")
def test_metrics_snapshot(mock_get_redis, skip_auth):
    mock_get_redis.return_value = _redis(
        {
            "metrics:operations:created": "12",
            "metrics:operations:completed": "8",
            "metrics:operations:failed": "1",
            "metrics:operations:expired": "1",
            "metrics:poll:not_yet_queryable": "30",
        },
        {"metrics:completion:latencies": ["1000", "2000", "3000"]},
    )

    resp = client.get("/admin/metrics")
    assert resp.status_code == 200
    data = resp.json()

    # 8 / (8 + 1 + 1 + 0) * 100
    assert data["completion_success_rate"] == 80.0
    assert data["operations_created"] == 12
    assert data["operations_manual_review"] == 0
    assert data["poll_not_yet_queryable"] == 30
    # p50 of [1000, 2000, 3000] ms -> 2.0 s
    assert data["p50_completion_latency"] == 2.0
    assert data["p95_completion_latency"] == 3.0

@patch("bioauth.observability.metrics.get_redis")
def test_empty_metrics_have_stable_shape(mock_get_redis, skip_auth):
    mock_get_redis.return_value = _redis({}, {})
    data = client.get("/admin/metrics").json()
    assert data["completion_success_rate"] == 0.0
    assert data["p95_completion_latency"] == 0.0
    assert data["events_ignored"] == 0

def test_rbac_enforcement():
    with patch.object(settings, "ADMIN_RBAC_ENABLED", True), \
         patch.object(settings, "ADMIN_API_KEY", "secret"):

        # Ensure no override
        app.dependency_overrides = {}

        # No header -> 403
        resp = client.get("/admin/metrics")
        assert resp.status_code == 403

        # Wrong header -> 403
        resp = client.get("/admin/metrics", headers={"x-admin-key": "wrong"})
        assert resp.status_code == 403

        # Correct header -> 200
        with patch("bioauth.observability.metrics.get_redis", return_value=_redis({}, {})):
            resp = client.get("/admin/metrics", headers={"x-admin-key": "secret"})
            assert resp.status_code == 200

def test_rbac_disabled_allows_all():
    app.dependency_overrides = {}
    with patch.object(settings, "ADMIN_RBAC_ENABLED", False), \
         patch("bioauth.observability.metrics.get_redis", return_value=_redis({}, {})):
        assert client.get("/admin/metrics").status_code == 200
