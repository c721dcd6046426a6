import pytest
from starlette.websockets import WebSocketDisconnect

from assessflow.main import queue_backend, settings
from assessflow.store import store
from conftest import issue_token, sample_assessment

INTERNAL = {"x-internal-debug": "true"}


def _submit(client, *, key: str = "idem_api_1", user_id: str = "user_a", payload: dict | None = None):
    return client.post(
        "/api/v1/assessments",
        json=payload if payload is not None else sample_assessment(),
        headers={"Idempotency-Key": key, "x-user-id": user_id},
    )


def _drain(client, max_messages: int = 10):
    resp = client.post(f"/api/v1/internal/worker/drain-once?max_messages={max_messages}", headers=INTERNAL)
    assert resp.status_code == 200
    return resp.json()["data"]


def test_submit_then_drain_completes_job_and_exposes_result(client):
    resp = _submit(client)
    assert resp.status_code == 202
    body = resp.json()
    assert body["success"] is True
    assert body["message"] == "accepted"
    job_id = body["data"]["job_id"]
    assert body["data"]["status"] == "queued"
    assert body["data"]["duplicate"] is False

    drained = _drain(client)
    assert drained["succeeded"] == 1
    assert drained["queue_name"] == settings.queue_name
    assert drained["queue_pending"] == 0

    job = client.get(f"/api/v1/jobs/{job_id}", headers={"x-user-id": "user_a"})
    assert job.status_code == 200
    job_data = job.json()["data"]
    assert job_data["status"] == "completed"
    assert job_data["attempt_count"] == 1
    assert "payload" not in job_data

    result = client.get(f"/api/v1/results/{job_data['result_id']}", headers={"x-user-id": "user_a"})
    assert result.status_code == 200
    assert result.json()["data"]["status"] == "completed"
    assert result.json()["data"]["payload"]["archetype"]
    usage = result.json()["data"]["payload"]["usage"]
    assert usage["provider"] == "mock"
    assert usage["total_tokens"] == usage["prompt_tokens"] + usage["completion_tokens"] > 0

    summary = client.get("/api/v1/internal/ai/usage", headers=INTERNAL).json()["data"]
    assert summary["calls"] == 1
    assert summary["failures"] == 0
    assert summary["total_tokens"] == usage["total_tokens"]
    assert summary["rate_limit"] is None


def test_duplicate_submission_returns_same_job(client):
    first = _submit(client, key="idem_dup")
    second = _submit(client, key="idem_dup")
    assert second.status_code == 202
    assert second.json()["message"] == "duplicate submission"
    assert second.json()["data"]["job_id"] == first.json()["data"]["job_id"]
    assert queue_backend.pending_count(queue_name=settings.queue_name) == 1


def test_missing_idempotency_key_returns_400(client):
    resp = client.post("/api/v1/assessments", json=sample_assessment(), headers={"x-user-id": "user_a"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "IDEMPOTENCY_MISSING"


def test_invalid_assessment_returns_validation_error(client):
    payload = sample_assessment()
    payload["ocean"]["neuroticism"] = -5
    resp = _submit(client, payload=payload)
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "VALIDATION"
    assert "ocean.neuroticism" in error["message"]
    assert store.job_stats()["total"] == 0


def test_jobs_are_invisible_to_other_users(client):
    job_id = _submit(client, user_id="user_a").json()["data"]["job_id"]
    resp = client.get(f"/api/v1/jobs/{job_id}", headers={"x-user-id": "user_b"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "JOB_NOT_FOUND"

    listed = client.get("/api/v1/jobs", headers={"x-user-id": "user_b"})
    assert listed.json()["data"]["total"] == 0


def test_list_jobs_and_stats(client):
    for idx in range(3):
        _submit(client, key=f"idem_list_{idx}")
    page = client.get("/api/v1/jobs?limit=2&offset=0", headers={"x-user-id": "user_a"})
    assert page.status_code == 200
    assert page.json()["data"]["total"] == 3
    assert len(page.json()["data"]["items"]) == 2

    stats = client.get("/api/v1/jobs/stats", headers={"x-user-id": "user_a"}).json()["data"]
    assert stats["queued"] == 3
    assert stats["total"] == 3

    bad = client.get("/api/v1/jobs?status=bogus", headers={"x-user-id": "user_a"})
    assert bad.status_code == 400


def test_cancel_queued_job_and_worker_skips_it(client):
    job_id = _submit(client).json()["data"]["job_id"]
    resp = client.post(f"/api/v1/jobs/{job_id}/cancel", headers={"x-user-id": "user_a"})
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "cancelled"

    drained = _drain(client)
    assert drained["dropped"] == 1

    again = client.post(f"/api/v1/jobs/{job_id}/cancel", headers={"x-user-id": "user_a"})
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "JOB_NOT_CANCELLABLE"


def test_delete_job_cascades_to_result(client):
    job_id = _submit(client).json()["data"]["job_id"]
    _drain(client)
    result_id = store.get_job(job_id)["result_id"]

    resp = client.delete(f"/api/v1/jobs/{job_id}", headers={"x-user-id": "user_a"})
    assert resp.status_code == 200
    assert resp.json()["data"]["result_ids"] == [result_id]
    assert client.get(f"/api/v1/results/{result_id}", headers={"x-user-id": "user_a"}).status_code == 404


def test_delete_result_cascades_to_job(client):
    job_id = _submit(client).json()["data"]["job_id"]
    _drain(client)
    result_id = store.get_job(job_id)["result_id"]

    resp = client.delete(f"/api/v1/results/{result_id}", headers={"x-user-id": "user_a"})
    assert resp.status_code == 200
    assert resp.json()["data"]["job_id"] == job_id
    assert client.get(f"/api/v1/jobs/{job_id}", headers={"x-user-id": "user_a"}).status_code == 404


def test_internal_endpoints_require_debug_header(client):
    for method, url in [
        ("POST", "/api/v1/internal/worker/drain-once"),
        ("GET", "/api/v1/internal/dlq"),
        ("GET", "/api/v1/internal/ai/usage"),
        ("POST", "/api/v1/internal/dlq/purge"),
        ("POST", "/api/v1/internal/reconcile/cleanup-orphaned-jobs"),
        ("POST", "/api/v1/internal/reconcile/sync-status/job_x"),
        ("DELETE", "/api/v1/internal/jobs/job_x"),
    ]:
        resp = client.request(method, url)
        assert resp.status_code == 403, url
        assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert store.list_audit_logs(action="security_blocked")


def test_internal_reconcile_endpoints(client):
    job_id = _submit(client).json()["data"]["job_id"]
    _drain(client)

    sync = client.post(f"/api/v1/internal/reconcile/sync-status/{job_id}", headers=INTERNAL)
    assert sync.status_code == 200
    assert sync.json()["data"] == {"job_id": job_id, "actions": []}

    cleanup = client.post(
        "/api/v1/internal/reconcile/cleanup-orphaned-jobs",
        headers=INTERNAL,
        json={"staleness_ms": 60000},
    )
    assert cleanup.status_code == 200
    assert cleanup.json()["data"]["failed"] == []

    purge = client.post("/api/v1/internal/reconcile/purge-expired-jobs", headers=INTERNAL)
    assert purge.status_code == 200
    assert purge.json()["data"]["deleted"] == 0


def test_internal_result_create_and_sync_links_job(client):
    job_id = _submit(client).json()["data"]["job_id"]
    created = client.post(
        "/api/v1/internal/results",
        headers=INTERNAL,
        json={"user_id": "user_a", "status": "completed", "payload": {"archetype": "x"}, "job_id": job_id},
    )
    assert created.status_code == 201
    result_id = created.json()["data"]["result_id"]

    sync = client.post(f"/api/v1/internal/reconcile/sync-status/{job_id}", headers=INTERNAL)
    assert sync.json()["data"]["actions"] == [f"linked_result_{result_id}", "job_status_queued_to_completed"]

    drained = _drain(client)
    assert drained["dropped"] == 1


def test_internal_dlq_inspect_purge_and_requeue(client):
    job_id = _submit(client).json()["data"]["job_id"]
    msg = queue_backend.dequeue(queue_name=settings.queue_name)
    queue_backend.dead_letter(message_id=msg.message_id, reason="max_retries_exceeded")

    listed = client.get("/api/v1/internal/dlq", headers=INTERNAL)
    assert listed.status_code == 200
    assert listed.json()["data"]["total"] == 1
    assert listed.json()["data"]["items"][0]["payload"]["job_id"] == job_id

    requeued = client.post(f"/api/v1/internal/dlq/{msg.message_id}/requeue", headers=INTERNAL)
    assert requeued.status_code == 200
    assert requeued.json()["data"]["status"] == "queued"

    missing = client.post("/api/v1/internal/dlq/msg_missing/requeue", headers=INTERNAL)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "DLQ_ITEM_NOT_FOUND"

    msg = queue_backend.dequeue(queue_name=settings.queue_name)
    queue_backend.dead_letter(message_id=msg.message_id, reason="max_retries_exceeded")
    purged = client.post(
        "/api/v1/internal/dlq/purge",
        headers=INTERNAL,
        json={"message_ids": [msg.message_id], "reason": "operator purge"},
    )
    assert purged.status_code == 200
    assert purged.json()["data"]["purged"] == 1
    assert store.list_audit_logs(action="dlq_message_purged")[0]["payload"]["reason"] == "operator purge"


def test_websocket_requires_valid_token(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws/notifications?token=not-a-token"):
            pass
    assert exc_info.value.code == 4401


def test_websocket_authenticates_and_answers_ping(client):
    token = issue_token(user_id="user_ws")
    with client.websocket_connect(f"/ws/notifications?token={token}") as ws:
        assert ws.receive_json() == {"type": "authenticated", "user_id": "user_ws"}
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_websocket_receives_job_events(client):
    token = issue_token(user_id="user_ws")
    with client.websocket_connect(f"/ws/notifications?token={token}") as ws:
        assert ws.receive_json()["type"] == "authenticated"
        job_id = _submit(client, user_id="user_ws").json()["data"]["job_id"]
        _drain(client)
        started = ws.receive_json()
        complete = ws.receive_json()
    assert started["event_type"] == "analysis-started"
    assert complete["event_type"] == "analysis-complete"
    assert complete["job_id"] == job_id
    assert complete["result_id"] == store.get_job(job_id)["result_id"]
