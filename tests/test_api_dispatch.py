from datetime import timedelta

from app.models.db.enums import CampaignStatus, TaskStatus
from app.utils.time import utc_now


def test_dispatch_endpoints_require_token(client, monkeypatch):
    import app.config as config

    monkeypatch.setattr(config, "ADMIN_API_TOKEN", None)
    assert client.post("/api/v1/dispatch/run").status_code == 503

    monkeypatch.setattr(config, "ADMIN_API_TOKEN", "expected-token")
    assert client.post("/api/v1/dispatch/run").status_code == 401
    r = client.get("/api/v1/dispatch/status", headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 403


def test_manual_tick_sends_due_tasks_and_reconciles(client, admin_headers, campaign_factory, task_factory, fetch_task):
    campaign = campaign_factory(status=CampaignStatus.SCHEDULED)
    due = task_factory(campaign, due_at=utc_now() - timedelta(minutes=1))
    future = task_factory(campaign, due_at=utc_now() + timedelta(days=1))

    r = client.post("/api/v1/dispatch/run", headers=admin_headers)

    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert (data["claimed"], data["sent"], data["failed"]) == (1, 1, 0)
    assert data["campaigns_reconciled"] == 1
    assert fetch_task(due.id).status == TaskStatus.SENT
    assert fetch_task(future.id).status == TaskStatus.PENDING

    campaign_view = client.get(f"/api/v1/campaigns/{campaign.id}").json()
    assert campaign_view["status"] == CampaignStatus.IN_PROGRESS.value
    assert campaign_view["sent_count"] == 1


def test_dispatch_status_reports_last_tick(client, admin_headers):
    client.post("/api/v1/dispatch/run", headers=admin_headers)

    r = client.get("/api/v1/dispatch/status", headers=admin_headers)

    assert r.status_code == 200
    snap = r.json()["data"]
    assert snap["running"] is False
    assert snap["ticks_run"] == 1
    assert snap["last_tick"]["claimed"] == 0


def test_recover_stale_requeues_old_processing_tasks(client, admin_headers, campaign_factory, task_factory, fetch_task):
    campaign = campaign_factory()
    stale = task_factory(campaign, status=TaskStatus.PROCESSING, claimed_at=utc_now() - timedelta(hours=3))
    recent = task_factory(campaign, status=TaskStatus.PROCESSING, claimed_at=utc_now() - timedelta(minutes=1))

    r = client.post("/api/v1/dispatch/recover-stale", json={"older_than_minutes": 60}, headers=admin_headers)

    assert r.status_code == 200, r.text
    assert r.json()["data"]["requeued"] == 1
    assert fetch_task(stale.id).status == TaskStatus.PENDING
    assert fetch_task(recent.id).status == TaskStatus.PROCESSING


def test_recover_stale_uses_default_threshold(client, admin_headers, campaign_factory, task_factory):
    campaign = campaign_factory()
    task_factory(campaign, status=TaskStatus.PROCESSING, claimed_at=utc_now() - timedelta(days=1))

    r = client.post("/api/v1/dispatch/recover-stale", headers=admin_headers)

    assert r.status_code == 200
    assert r.json()["data"]["older_than_minutes"] == 30
    assert r.json()["data"]["requeued"] == 1


def test_recover_stale_rejects_non_positive_threshold(client, admin_headers):
    r = client.post("/api/v1/dispatch/recover-stale", json={"older_than_minutes": 0}, headers=admin_headers)
    assert r.status_code == 422


def test_health_endpoints(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"

    r = client.get("/health/detailed")
    assert r.status_code == 200
    body = r.json()
    assert body["checks"]["database"] == "healthy"
    assert body["checks"]["scheduler"]["running"] is False

    r = client.get("/")
    assert r.json()["api_base"] == "/api/v1"
