from app.errors import TaskStoreError
from app.main import app
from app.models.db.enums import CampaignStatus, TaskStatus


def _create_campaign(client, name="Spring follow-ups", **extra):
    r = client.post("/api/v1/campaigns/", json={"name": name, **extra})
    assert r.status_code == 201, r.text
    return r.json()


def _task_payload(email="Someone@Example.com", due_at="2025-06-02T09:00:00Z", **extra):
    return {"email": email, "message": "Hello!\nSee you Monday.", "due_at": due_at, **extra}


def test_create_and_get_campaign(client):
    created = _create_campaign(client, sender_name="Ada")
    assert created["status"] == CampaignStatus.DRAFT.value
    assert created["total_count"] == 0

    r = client.get(f"/api/v1/campaigns/{created['id']}")
    assert r.status_code == 200
    assert r.json()["sender_name"] == "Ada"


def test_create_campaign_validation(client):
    r = client.post("/api/v1/campaigns/", json={"name": ""})
    assert r.status_code == 422
    assert r.json()["success"] is False


def test_list_campaigns_filters_by_status(client, campaign_factory):
    campaign_factory("a", status=CampaignStatus.SCHEDULED)
    campaign_factory("b", status=CampaignStatus.PAUSED)
    campaign_factory("c", status=CampaignStatus.SCHEDULED, is_deleted=True)

    r = client.get("/api/v1/campaigns/", params={"status": "scheduled"})
    assert r.status_code == 200
    assert [c["name"] for c in r.json()] == ["a"]


def test_adding_tasks_nudges_draft_to_scheduled(client):
    campaign = _create_campaign(client)

    r = client.post(
        f"/api/v1/campaigns/{campaign['id']}/tasks",
        json={"tasks": [_task_payload(), _task_payload(email="b@example.com", subject="Hi")]},
    )

    assert r.status_code == 201, r.text
    body = r.json()
    assert len(body["data"]["task_ids"]) == 2
    assert body["data"]["campaign"]["status"] == CampaignStatus.SCHEDULED.value
    refreshed = client.get(f"/api/v1/campaigns/{campaign['id']}").json()
    assert refreshed["status"] == CampaignStatus.SCHEDULED.value
    assert refreshed["total_count"] == 2

    tasks = client.get(f"/api/v1/campaigns/{campaign['id']}/tasks").json()
    assert {t["email"] for t in tasks} == {"someone@example.com", "b@example.com"}
    assert all(t["status"] == TaskStatus.PENDING.value for t in tasks)


def test_adding_tasks_with_offset_due_at_is_stored_in_utc(client, fetch_task):
    campaign = _create_campaign(client)
    r = client.post(
        f"/api/v1/campaigns/{campaign['id']}/tasks",
        json={"tasks": [_task_payload(due_at="2025-06-02T11:00:00+02:00")]},
    )
    task = fetch_task(r.json()["data"]["task_ids"][0])
    assert (task.due_at.hour, task.due_at.minute) == (9, 0)


def test_adding_tasks_rejects_bad_email_and_completed_campaign(client, campaign_factory):
    campaign = _create_campaign(client)
    r = client.post(f"/api/v1/campaigns/{campaign['id']}/tasks", json={"tasks": [_task_payload(email="nope")]})
    assert r.status_code == 422

    done = campaign_factory("done", status=CampaignStatus.COMPLETED)
    r = client.post(f"/api/v1/campaigns/{done.id}/tasks", json={"tasks": [_task_payload()]})
    assert r.status_code == 409


def test_list_tasks_status_filter(client, campaign_factory, task_factory):
    campaign = campaign_factory()
    task_factory(campaign, status=TaskStatus.SENT)
    failed = task_factory(campaign, status=TaskStatus.FAILED)
    task_factory(campaign)

    r = client.get(f"/api/v1/campaigns/{campaign.id}/tasks", params={"status": "failed"})
    assert r.status_code == 200
    assert [t["id"] for t in r.json()] == [failed.id]


def test_update_pending_task(client, campaign_factory, task_factory, fetch_task):
    campaign = campaign_factory()
    task = task_factory(campaign)

    r = client.put(
        f"/api/v1/campaigns/{campaign.id}/tasks/{task.id}",
        json={"email": "NEW@example.com", "message": "Changed"},
    )

    assert r.status_code == 200, r.text
    stored = fetch_task(task.id)
    assert stored.email == "new@example.com"
    assert stored.message == "Changed"


def test_update_non_pending_task_conflicts(client, campaign_factory, task_factory):
    campaign = campaign_factory()
    sent = task_factory(campaign, status=TaskStatus.SENT)
    processing = task_factory(campaign, status=TaskStatus.PROCESSING)

    for task in (sent, processing):
        r = client.put(f"/api/v1/campaigns/{campaign.id}/tasks/{task.id}", json={"message": "late edit"})
        assert r.status_code == 409


def test_delete_task_recalculates_counts(client, campaign_factory, task_factory):
    campaign = campaign_factory(status=CampaignStatus.IN_PROGRESS)
    task_factory(campaign, status=TaskStatus.SENT)
    pending = task_factory(campaign)

    r = client.delete(f"/api/v1/campaigns/{campaign.id}/tasks/{pending.id}")

    assert r.status_code == 200
    assert r.json()["data"]["campaign"]["status"] == CampaignStatus.COMPLETED.value
    refreshed = client.get(f"/api/v1/campaigns/{campaign.id}").json()
    assert (refreshed["total_count"], refreshed["sent_count"]) == (1, 1)

    r = client.delete(f"/api/v1/campaigns/{campaign.id}/tasks/{pending.id}")
    assert r.status_code == 404


def test_delete_processing_task_conflicts(client, campaign_factory, task_factory):
    campaign = campaign_factory()
    task = task_factory(campaign, status=TaskStatus.PROCESSING)
    r = client.delete(f"/api/v1/campaigns/{campaign.id}/tasks/{task.id}")
    assert r.status_code == 409


def test_delete_campaign_soft_deletes_tasks(client, campaign_factory, task_factory, task_store):
    campaign = campaign_factory()
    task_factory(campaign)
    task_factory(campaign)

    r = client.delete(f"/api/v1/campaigns/{campaign.id}")

    assert r.status_code == 200
    assert r.json()["data"]["tasks_deleted"] == 2
    assert client.get(f"/api/v1/campaigns/{campaign.id}").status_code == 404
    assert task_store.count_all(campaign.id) == 0
    assert task_store.claim_next_due() is None


def test_pause_and_resume(client, campaign_factory, task_factory):
    campaign = campaign_factory(status=CampaignStatus.SCHEDULED)
    task_factory(campaign, status=TaskStatus.SENT)
    task_factory(campaign)

    r = client.post(f"/api/v1/campaigns/{campaign.id}/pause")
    assert r.status_code == 200
    assert r.json()["status"] == CampaignStatus.PAUSED.value
    # pausing twice is harmless
    assert client.post(f"/api/v1/campaigns/{campaign.id}/pause").status_code == 200

    r = client.post(f"/api/v1/campaigns/{campaign.id}/resume")
    assert r.status_code == 200
    # resume derives the real status straight away
    assert r.json()["status"] == CampaignStatus.IN_PROGRESS.value

    assert client.post(f"/api/v1/campaigns/{campaign.id}/resume").status_code == 409


def test_completed_campaign_cannot_be_paused(client, campaign_factory):
    campaign = campaign_factory(status=CampaignStatus.COMPLETED)
    assert client.post(f"/api/v1/campaigns/{campaign.id}/pause").status_code == 409


def test_recalculate_heals_corrupted_counts(client, campaign_factory, task_factory):
    campaign = campaign_factory(status=CampaignStatus.COMPLETED, sent_count=42, total_count=42)
    task_factory(campaign, status=TaskStatus.SENT)
    task_factory(campaign, status=TaskStatus.FAILED)

    r = client.post(f"/api/v1/campaigns/{campaign.id}/recalculate")

    assert r.status_code == 200
    data = r.json()["data"]
    assert (data["total"], data["sent"], data["failed"]) == (2, 1, 1)
    assert data["status"] == CampaignStatus.COMPLETED.value


def test_unknown_campaign_is_404(client):
    assert client.get("/api/v1/campaigns/987654").status_code == 404
    assert client.post("/api/v1/campaigns/987654/recalculate").status_code == 404


def test_task_store_failure_maps_to_503(client, campaign_factory):
    campaign = campaign_factory()

    class _DownReconciler:
        def reconcile_campaign(self, campaign_id, *, force=False):
            raise TaskStoreError("count_all", RuntimeError("database is locked"))

    app.state.status_reconciler = _DownReconciler()
    r = client.post(f"/api/v1/campaigns/{campaign.id}/recalculate")

    assert r.status_code == 503
    assert r.json()["operation"] == "count_all"
