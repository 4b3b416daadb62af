from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from tierflow.apps.api_server import create_app
from tierflow.apps.runtime_support import build_runtime
from tierflow.core.config.schema import AppConfig


@pytest.fixture
def api(tmp_path, monkeypatch):
    monkeypatch.setenv("TIERFLOW_ADMIN_TOKEN", "test-token")
    cfg = AppConfig.model_validate(
        {
            "database": {"url": f"sqlite:///{tmp_path / 'api.db'}"},
            "upgrade": {"transform_backoff_seconds": 0.0},
        }
    )
    runtime = build_runtime(cfg=cfg)
    with TestClient(create_app(runtime=runtime)) as client:
        yield client, runtime


def _seed(runtime, user_id: str, tier: str = "starter") -> None:
    with runtime.db_session_factory() as db:
        from tierflow.db.models import Account, UserDataItem

        db.add(Account(user_id=user_id, tier=tier))
        for i in range(3):
            db.add(UserDataItem(user_id=user_id, category="saved_reports", identifier=f"r{i}", payload_json='{"n": %d}' % i))
        db.commit()


HEADERS = {"x-admin-token": "test-token"}


def test_health_and_catalog(api):
    client, _ = api
    assert client.get("/health").json()["status"] == "ok"

    tiers = client.get("/tiers").json()["items"]
    assert [t["tier"] for t in tiers] == ["free", "starter", "professional", "enterprise", "ultimate"]

    diff = client.get("/tiers/diff", params={"current": "starter", "target": "professional"}).json()
    assert "executive_dashboard" in diff["added_features"]
    assert diff["limit_changes"]["max_users"] == [5, 25]

    bad = client.get("/tiers/diff", params={"current": "starter", "target": "gold"})
    assert bad.status_code == 422
    assert bad.json()["kind"] == "validation"


def test_mutations_require_admin_token(api):
    client, runtime = api
    _seed(runtime, "u1")
    resp = client.post("/upgrades", json={"user_id": "u1", "target_tier": "professional"})
    assert resp.status_code == 401


def test_upgrade_lifecycle_over_http(api):
    client, runtime = api
    _seed(runtime, "u1")

    resp = client.post(
        "/upgrades",
        json={"user_id": "u1", "target_tier": "professional", "billing_interval": "yearly", "wait": True},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["session"]["state"] == "completed"
    session_id = body["session"]["session_id"]

    detail = client.get(f"/upgrades/{session_id}").json()
    assert detail["session"]["progress_percent"] == 100

    events = client.get(f"/upgrades/{session_id}/events").json()["items"]
    assert [e["state"] for e in events][-1] == "completed"

    preservation = client.get("/users/u1/preservation").json()
    assert preservation["data_integrity"] == 100
    assert preservation["total_items"] == 3

    history = client.get("/users/u1/upgrades").json()["items"]
    assert history[0]["session_id"] == session_id

    again = client.post("/upgrades", json={"user_id": "u1", "target_tier": "professional"}, headers=HEADERS)
    assert again.status_code == 422

    retry = client.post(f"/upgrades/{session_id}/retry", headers=HEADERS)
    assert retry.status_code == 409
    assert retry.json()["error"] == "RetryRejectedError"

    cancel = client.post(f"/upgrades/{session_id}/cancel", headers=HEADERS)
    assert cancel.status_code == 409


def test_unknown_session_is_404(api):
    client, _ = api
    resp = client.get("/upgrades/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"] == "SessionNotFoundError"
    assert client.post("/upgrades/does-not-exist/rollback", headers=HEADERS).status_code == 404
