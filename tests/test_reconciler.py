from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from assessflow.errors import ApiError
from assessflow.queue_backend import InMemoryQueueBackend
from assessflow.reconciler import ORPHANED_MESSAGE, ConsistencyReconciler
from assessflow.settings import OrchestratorSettings
from assessflow.store import InMemoryStore
from assessflow.submitter import JobSubmitter
from conftest import sample_assessment


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    def notify(self, user_id: str, event_type: str, payload: dict) -> int:
        self.events.append((user_id, event_type, payload))
        return 0


def _reconciler(**settings_overrides):
    s = InMemoryStore()
    q = InMemoryQueueBackend()
    settings = OrchestratorSettings(queue_name="analysis", **settings_overrides)
    submitter = JobSubmitter(store=s, queue_backend=q, queue_name="analysis")
    notifier = RecordingNotifier()
    reconciler = ConsistencyReconciler(
        store=s,
        queue_backend=q,
        notifier=notifier,
        submitter=submitter,
        settings=settings,
    )
    return reconciler, s, q, notifier


def _unpublished_job(s: InMemoryStore, key: str = "k1", user_id: str = "user_a") -> dict:
    job, _ = s.create_job(user_id=user_id, idempotency_key=key, payload=sample_assessment())
    return job


def _completed_job(s: InMemoryStore, key: str = "k1") -> tuple[dict, dict]:
    job = _unpublished_job(s, key)
    s.transition_job(job_id=job["job_id"], expected_status="queued", new_status="processing")
    result = s.create_result(user_id="user_a", status="completed", payload={"archetype": "x"}, job_id=job["job_id"])
    job = s.transition_job(
        job_id=job["job_id"],
        expected_status="processing",
        new_status="completed",
        changes={"result_id": result["result_id"]},
    )
    return job, result


def _later() -> datetime:
    return datetime.now(UTC) + timedelta(seconds=5)


def test_sync_status_is_a_noop_on_consistent_job():
    reconciler, s, _, _ = _reconciler()
    job, _ = _completed_job(s)
    assert reconciler.sync_status(job["job_id"])["actions"] == []
    assert s.list_audit_logs(action="reconcile_sync_status") == []


def test_sync_status_follows_the_result_and_is_idempotent():
    reconciler, s, _, _ = _reconciler()
    job, result = _completed_job(s)
    s.set_result_status(result_id=result["result_id"], expected_status="completed", new_status="failed")

    first = reconciler.sync_status(job["job_id"])
    assert first["actions"] == ["job_status_completed_to_failed"]
    saved = s.get_job(job["job_id"])
    assert saved["status"] == "failed"
    assert saved["error_code"] == "CONFLICT"

    assert reconciler.sync_status(job["job_id"])["actions"] == []
    assert len(s.list_audit_logs(action="reconcile_sync_status")) == 1


def test_sync_status_settles_requeued_job_from_persisted_result():
    reconciler, s, _, _ = _reconciler()
    job = _unpublished_job(s)
    result = s.create_result(user_id="user_a", status="completed", payload={}, job_id=job["job_id"])

    out = reconciler.sync_status(job["job_id"])
    assert out["actions"] == [f"linked_result_{result['result_id']}", "job_status_queued_to_completed"]
    saved = s.get_job(job["job_id"])
    assert saved["status"] == "completed"
    assert saved["result_id"] == result["result_id"]


def test_sync_status_fails_completed_job_with_dangling_result():
    reconciler, s, _, _ = _reconciler()
    job, result = _completed_job(s)
    s.delete_result(result["result_id"])

    out = reconciler.sync_status(job["job_id"])
    assert out["actions"] == ["cleared_dangling_result_id", "job_status_completed_to_failed"]
    saved = s.get_job(job["job_id"])
    assert saved["status"] == "failed"
    assert saved["error_code"] == "ORPHANED"
    assert saved["result_id"] is None


def test_sync_status_marks_result_of_cancelled_job_failed():
    reconciler, s, _, _ = _reconciler()
    job = _unpublished_job(s)
    s.cancel_job(job_id=job["job_id"], user_id="user_a")
    result = s.create_result(user_id="user_a", status="completed", payload={}, job_id=job["job_id"])

    out = reconciler.sync_status(job["job_id"])
    assert "result_status_completed_to_failed" in out["actions"]
    assert s.get_job(job["job_id"])["status"] == "cancelled"
    assert s.get_result(result["result_id"])["status"] == "failed"
    assert reconciler.sync_status(job["job_id"])["actions"] == []


def test_orphan_result_settled_by_concurrent_sync_is_kept():
    reconciler, s, _, _ = _reconciler()
    job = _unpublished_job(s)
    real_create_result = s.create_result

    def create_then_sync(**kwargs):
        result = real_create_result(**kwargs)
        reconciler.sync_status(kwargs["job_id"])
        return result

    s.create_result = create_then_sync
    out = reconciler.cleanup_orphaned_jobs(staleness_ms=0, now=_later())
    assert out["conflicts"] == [job["job_id"]]

    saved = s.get_job(job["job_id"])
    assert saved["status"] == "failed"
    assert saved["error_code"] == "ORPHANED"
    result = s.get_result(saved["result_id"])
    assert result is not None
    assert result["status"] == "failed"


def test_sync_status_reports_link_only_when_the_write_lands():
    reconciler, s, _, _ = _reconciler()
    job = _unpublished_job(s)
    s.cancel_job(job_id=job["job_id"], user_id="user_a")
    result = s.create_result(user_id="user_a", status="completed", payload={}, job_id=job["job_id"])
    s.update_job = lambda **_kwargs: None

    out = reconciler.sync_status(job["job_id"])
    assert out["actions"] == ["result_status_completed_to_failed"]
    assert s.get_job(job["job_id"])["result_id"] is None
    assert s.get_result(result["result_id"])["status"] == "failed"


def test_sync_status_unknown_job_is_not_found():
    reconciler, _, _, _ = _reconciler()
    with pytest.raises(ApiError) as exc_info:
        reconciler.sync_status("job_missing")
    assert exc_info.value.code == "JOB_NOT_FOUND"


def test_cleanup_fails_stale_jobs_without_queue_message():
    reconciler, s, _, notifier = _reconciler()
    queued = _unpublished_job(s, "k1")
    running = _unpublished_job(s, "k2")
    s.transition_job(job_id=running["job_id"], expected_status="queued", new_status="processing")

    out = reconciler.cleanup_orphaned_jobs(staleness_ms=0, now=_later())
    assert sorted(out["failed"]) == sorted([queued["job_id"], running["job_id"]])
    for job_id in (queued["job_id"], running["job_id"]):
        job = s.get_job(job_id)
        assert job["status"] == "failed"
        assert job["error_code"] == "ORPHANED"
        assert job["error_message"] == ORPHANED_MESSAGE
        assert s.get_result(job["result_id"])["status"] == "failed"
    assert {e[1] for e in notifier.events} == {"analysis-failed"}

    again = reconciler.cleanup_orphaned_jobs(staleness_ms=0, now=_later())
    assert again["scanned"] == 0


def test_cleanup_skips_jobs_with_a_message_in_flight():
    reconciler, s, q, _ = _reconciler()
    job, _ = s.create_job(user_id="user_a", idempotency_key="k1", payload=sample_assessment())
    reconciler.submitter.publish(job)

    out = reconciler.cleanup_orphaned_jobs(staleness_ms=0, now=_later())
    assert out["skipped_inflight"] == [job["job_id"]]
    assert s.get_job(job["job_id"])["status"] == "queued"

    q.dequeue(queue_name="analysis")
    out = reconciler.cleanup_orphaned_jobs(staleness_ms=0, now=_later())
    assert out["skipped_inflight"] == [job["job_id"]]


def test_cleanup_ignores_recent_jobs():
    reconciler, s, _, _ = _reconciler()
    _unpublished_job(s)
    out = reconciler.cleanup_orphaned_jobs(staleness_ms=60_000)
    assert out["scanned"] == 0


def test_republish_policy_republishes_once_then_fails():
    reconciler, s, q, _ = _reconciler(orphan_queued_policy="republish")
    job = _unpublished_job(s)

    first = reconciler.cleanup_orphaned_jobs(staleness_ms=0, now=_later())
    assert first["republished"] == [job["job_id"]]
    assert s.get_job(job["job_id"])["republish_count"] == 1
    assert q.pending_count(queue_name="analysis") == 1

    q.ack(message_id=q.dequeue(queue_name="analysis").message_id)
    second = reconciler.cleanup_orphaned_jobs(staleness_ms=0, now=_later())
    assert second["failed"] == [job["job_id"]]


def test_cascade_delete_by_job_or_result_removes_both():
    reconciler, s, _, _ = _reconciler()
    job, result = _completed_job(s, "k1")
    out = reconciler.cascade_delete(job_id=job["job_id"], user_id="user_a")
    assert out == {"deleted": True, "job_id": job["job_id"], "result_ids": [result["result_id"]]}
    assert s.get_job(job["job_id"]) is None
    assert s.get_result(result["result_id"]) is None

    job, result = _completed_job(s, "k2")
    out = reconciler.cascade_delete(result_id=result["result_id"])
    assert out["job_id"] == job["job_id"]
    assert s.get_job(job["job_id"]) is None
    assert s.get_result(result["result_id"]) is None
    assert len(s.list_audit_logs(action="job_cascade_deleted")) == 2


def test_cascade_delete_removes_back_referenced_results():
    reconciler, s, _, _ = _reconciler()
    job = _unpublished_job(s)
    s.cancel_job(job_id=job["job_id"], user_id="user_a")
    stray = s.create_result(user_id="user_a", status="failed", payload={}, job_id=job["job_id"])
    out = reconciler.cascade_delete(job_id=job["job_id"])
    assert out["result_ids"] == [stray["result_id"]]
    assert s.get_result(stray["result_id"]) is None


def test_cascade_delete_refuses_processing_jobs():
    reconciler, s, _, _ = _reconciler()
    job = _unpublished_job(s)
    s.transition_job(job_id=job["job_id"], expected_status="queued", new_status="processing")
    with pytest.raises(ApiError) as exc_info:
        reconciler.cascade_delete(job_id=job["job_id"])
    assert exc_info.value.code == "JOB_DELETE_PROCESSING"
    assert exc_info.value.http_status == 409
    assert s.get_job(job["job_id"]) is not None


def test_cascade_delete_is_user_scoped():
    reconciler, s, _, _ = _reconciler()
    job, _ = _completed_job(s)
    with pytest.raises(ApiError) as exc_info:
        reconciler.cascade_delete(job_id=job["job_id"], user_id="user_b")
    assert exc_info.value.http_status == 404
    assert reconciler.cascade_delete(job_id="job_missing") == {"deleted": False, "job_id": "job_missing", "result_ids": []}


def test_cascade_delete_needs_exactly_one_id():
    reconciler, _, _, _ = _reconciler()
    with pytest.raises(ValueError):
        reconciler.cascade_delete()
    with pytest.raises(ValueError):
        reconciler.cascade_delete(job_id="job_1", result_id="res_1")


def test_standalone_result_delete():
    reconciler, s, _, _ = _reconciler()
    result = s.create_result(user_id="user_a", status="completed", payload={})
    out = reconciler.cascade_delete(result_id=result["result_id"], user_id="user_a")
    assert out == {"deleted": True, "job_id": None, "result_ids": [result["result_id"]]}


def test_purge_expired_jobs_only_touches_terminal_jobs():
    reconciler, s, _, _ = _reconciler()
    done, result = _completed_job(s, "k1")
    active = _unpublished_job(s, "k2")

    out = reconciler.purge_expired_jobs(days_old=1, now=datetime.now(UTC) + timedelta(days=2))
    assert out["job_ids"] == [done["job_id"]]
    assert s.get_result(result["result_id"]) is None
    assert s.get_job(active["job_id"]) is not None

    assert reconciler.purge_expired_jobs(days_old=1)["deleted"] == 0


def _dead_letter(q: InMemoryQueueBackend, job_id: str) -> str:
    q.enqueue(queue_name="analysis", payload={"job_id": job_id})
    msg = q.dequeue(queue_name="analysis")
    q.dead_letter(message_id=msg.message_id, reason="max_retries_exceeded")
    return msg.message_id


def test_dlq_inspect_raises_alert_at_threshold():
    reconciler, _, q, _ = _reconciler(dlq_alert_threshold=2)
    _dead_letter(q, "job_1")
    first = reconciler.dlq_inspect()
    assert first["total"] == 1
    assert first["alert"] is False
    assert first["items"][0]["death"]["reason"] == "max_retries_exceeded"

    _dead_letter(q, "job_2")
    assert reconciler.dlq_inspect()["alert"] is True
    assert reconciler.run_scheduled_pass()["dlq"] == {"total": 2, "alert": True}


def test_dlq_purge_writes_audit_before_removal():
    reconciler, s, q, _ = _reconciler()
    message_id = _dead_letter(q, "job_1")
    out = reconciler.dlq_purge(message_ids=[message_id, "msg_missing"], reason="poison message")
    assert out == {"purged": 1, "message_ids": [message_id], "missing": ["msg_missing"]}
    assert q.dead_letter_count(queue_name="analysis") == 0

    audit = s.list_audit_logs(action="dlq_message_purged")
    assert audit[0]["subject_id"] == message_id
    assert audit[0]["payload"]["reason"] == "poison message"
    assert audit[0]["payload"]["payload"] == {"job_id": "job_1"}
    assert audit[0]["payload"]["death"]["count"] == 1


def test_dlq_purge_all():
    reconciler, _, q, _ = _reconciler()
    _dead_letter(q, "job_1")
    _dead_letter(q, "job_2")
    assert reconciler.dlq_purge()["purged"] == 2


def test_dlq_requeue_only_for_queued_jobs():
    reconciler, s, q, _ = _reconciler()
    job = _unpublished_job(s)
    message_id = _dead_letter(q, job["job_id"])
    out = reconciler.dlq_requeue(message_id=message_id)
    assert out == {"message_id": message_id, "job_id": job["job_id"], "status": "queued"}
    assert q.pending_count(queue_name="analysis") == 1
    assert s.list_audit_logs(action="dlq_message_requeued")[0]["subject_id"] == message_id

    done, _ = _completed_job(s, "k2")
    blocked = _dead_letter(q, done["job_id"])
    with pytest.raises(ApiError) as exc_info:
        reconciler.dlq_requeue(message_id=blocked)
    assert exc_info.value.code == "DLQ_REQUEUE_CONFLICT"
    assert q.dead_letter_count(queue_name="analysis") == 1

    with pytest.raises(ApiError) as exc_info:
        reconciler.dlq_requeue(message_id="msg_missing")
    assert exc_info.value.code == "DLQ_ITEM_NOT_FOUND"
