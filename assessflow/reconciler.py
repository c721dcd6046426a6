from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from assessflow.errors import ApiError, ErrorCode, normalize_error_code
from assessflow.notifications import EVENT_FAILED, build_failed_event
from assessflow.settings import OrchestratorSettings
from assessflow.store import ACTIVE_JOB_STATUSES, TERMINAL_JOB_STATUSES

logger = logging.getLogger(__name__)

ORPHANED_MESSAGE = "orphaned: no worker activity"
_PURGE_BATCH = 1000


def _not_found(kind: str) -> ApiError:
    return ApiError(
        code=f"{kind.upper()}_NOT_FOUND",
        message=f"{kind} not found",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


class ConsistencyReconciler:
    """Repairs drift between jobs, results and the queue.

    Every write is a compare-and-set on the observed status, so passes can run
    concurrently with workers and with each other; re-running a pass over a
    consistent store is a no-op.
    """

    def __init__(
        self,
        *,
        store: Any,
        queue_backend: Any,
        notifier: Any,
        submitter: Any,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.notifier = notifier
        self.submitter = submitter
        self.settings = settings or OrchestratorSettings()

    @property
    def queue_name(self) -> str:
        return self.settings.queue_name

    # ------------------------------------------------------------------
    # Job <-> Result status
    # ------------------------------------------------------------------

    @staticmethod
    def _failure_fields(result: dict[str, Any]) -> dict[str, Any]:
        payload = result.get("payload") if isinstance(result.get("payload"), dict) else {}
        code = normalize_error_code(payload.get("error_code")) or ErrorCode.CONFLICT
        message = str(payload.get("error_message") or "status reconciled from result")
        return {"error_code": code.value, "error_message": message[:1000]}

    def _settle_from_result(self, job: dict[str, Any], result: dict[str, Any], actions: list[str]) -> None:
        job_status = job["status"]
        result_status = result["status"]
        link = job.get("result_id") != result["result_id"]

        if job_status == "cancelled":
            if link:
                linked = self.store.update_job(
                    job_id=job["job_id"],
                    expected_status="cancelled",
                    changes={"result_id": result["result_id"]},
                )
                if linked is not None:
                    actions.append(f"linked_result_{result['result_id']}")
            if result_status != "failed":
                saved = self.store.set_result_status(
                    result_id=result["result_id"],
                    expected_status=result_status,
                    new_status="failed",
                )
                if saved is not None:
                    actions.append(f"result_status_{result_status}_to_failed")
            return

        changes: dict[str, Any] = {"result_id": result["result_id"]}
        if result_status == "completed":
            changes.update({"error_code": None, "error_message": None})
        else:
            changes.update(self._failure_fields(result))

        if job_status == result_status:
            if link and self.store.update_job(job_id=job["job_id"], expected_status=job_status, changes=changes):
                actions.append(f"linked_result_{result['result_id']}")
            return

        self.store.transition_job(
            job_id=job["job_id"],
            expected_status=job_status,
            new_status=result_status,
            changes=changes,
            reconcile=True,
        )
        if link:
            actions.append(f"linked_result_{result['result_id']}")
        actions.append(f"job_status_{job_status}_to_{result_status}")

    def sync_status(self, job_id: str) -> dict[str, Any]:
        job = self.store.require_job(job_id=job_id)
        actions: list[str] = []

        result_id = job.get("result_id")
        if result_id and self.store.get_result(result_id) is None:
            if job["status"] == "completed":
                job = self.store.transition_job(
                    job_id=job_id,
                    expected_status="completed",
                    new_status="failed",
                    changes={
                        "result_id": None,
                        "error_code": ErrorCode.ORPHANED.value,
                        "error_message": "orphaned: result record missing",
                    },
                )
                actions.extend(["cleared_dangling_result_id", "job_status_completed_to_failed"])
            else:
                job = self.store.update_job(
                    job_id=job_id,
                    expected_status=job["status"],
                    changes={"result_id": None},
                ) or self.store.require_job(job_id=job_id)
                actions.append("cleared_dangling_result_id")

        if job.get("result_id"):
            result = self.store.get_result(job["result_id"])
        else:
            result = self.store.find_result_for_job(job_id)
        if result is not None:
            self._settle_from_result(job, result, actions)

        if actions:
            self.store.append_audit_log(action="reconcile_sync_status", subject_id=job_id, payload={"actions": actions})
            logger.info("reconcile_sync_status job_id=%s actions=%s", job_id, ",".join(actions))
        return {"job_id": job_id, "actions": actions}

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    def _fail_orphan(self, job: dict[str, Any]) -> dict[str, Any] | None:
        result = self.store.create_result(
            user_id=job["user_id"],
            status="failed",
            payload={"error_code": ErrorCode.ORPHANED.value, "error_message": ORPHANED_MESSAGE},
            job_id=job["job_id"],
        )
        try:
            saved = self.store.transition_job(
                job_id=job["job_id"],
                expected_status=job["status"],
                new_status="failed",
                changes={
                    "error_code": ErrorCode.ORPHANED.value,
                    "error_message": ORPHANED_MESSAGE,
                    "result_id": result["result_id"],
                },
            )
        except ApiError as exc:
            logger.info("orphan_cleanup_conflict job_id=%s code=%s", job["job_id"], exc.code)
            self.store.discard_unlinked_result(job_id=job["job_id"], result_id=result["result_id"])
            return None
        try:
            self.notifier.notify(saved["user_id"], EVENT_FAILED, build_failed_event(saved))
        except Exception as exc:
            logger.warning("notification_failed job_id=%s error=%s", saved["job_id"], exc)
        return saved

    def cleanup_orphaned_jobs(
        self,
        *,
        staleness_ms: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        threshold_ms = int(staleness_ms if staleness_ms is not None else self.settings.stale_job_threshold_ms)
        current = now or datetime.now(UTC)
        cutoff = current - timedelta(milliseconds=max(0, threshold_ms))
        candidates = self.store.list_jobs_updated_before(statuses=ACTIVE_JOB_STATUSES, updated_before=cutoff)
        inflight = self.queue_backend.inflight_job_ids(queue_name=self.queue_name)

        summary: dict[str, Any] = {
            "scanned": len(candidates),
            "threshold_ms": threshold_ms,
            "failed": [],
            "republished": [],
            "skipped_inflight": [],
            "conflicts": [],
        }
        for job in candidates:
            job_id = job["job_id"]
            if job_id in inflight:
                summary["skipped_inflight"].append(job_id)
                continue
            if (
                job["status"] == "queued"
                and self.settings.orphan_queued_policy == "republish"
                and int(job.get("republish_count", 0)) == 0
            ):
                saved = self.store.record_republish(job=job)
                if saved is None:
                    summary["conflicts"].append(job_id)
                    continue
                self.submitter.publish(saved)
                summary["republished"].append(job_id)
                logger.warning("orphan_job_republished job_id=%s", job_id)
                continue
            if self._fail_orphan(job) is None:
                summary["conflicts"].append(job_id)
                continue
            summary["failed"].append(job_id)
            logger.warning("orphan_job_failed job_id=%s status=%s updated_at=%s", job_id, job["status"], job["updated_at"])
        return summary

    # ------------------------------------------------------------------
    # Cascading deletes
    # ------------------------------------------------------------------

    def _delete_job(self, job: dict[str, Any]) -> dict[str, Any]:
        job_id = job["job_id"]
        if job["status"] == "processing":
            raise ApiError(
                code="JOB_DELETE_PROCESSING",
                message="job is being processed and cannot be deleted",
                error_class="business_rule",
                retryable=True,
                http_status=409,
            )
        if not self.store.delete_job(job_id=job_id, expected_status=job["status"]):
            raise ApiError(
                code="JOB_STATE_CONFLICT",
                message=f"job {job_id} changed while deleting; retry",
                error_class="business_rule",
                retryable=True,
                http_status=409,
            )
        deleted_results: list[str] = []
        if job.get("result_id") and self.store.delete_result(job["result_id"]):
            deleted_results.append(job["result_id"])
        while True:
            stray = self.store.find_result_for_job(job_id)
            if stray is None or not self.store.delete_result(stray["result_id"]):
                break
            deleted_results.append(stray["result_id"])
        self.store.append_audit_log(
            action="job_cascade_deleted",
            subject_id=job_id,
            payload={"status": job["status"], "result_ids": deleted_results},
        )
        logger.info("job_cascade_deleted job_id=%s results=%s", job_id, len(deleted_results))
        return {"deleted": True, "job_id": job_id, "result_ids": deleted_results}

    def _owner_of(self, result: dict[str, Any]) -> dict[str, Any] | None:
        owner = self.store.find_job_for_result(result["result_id"])
        if owner is not None:
            return owner
        back_ref = result.get("job_id")
        if back_ref:
            job = self.store.get_job(back_ref)
            if job is not None and not job.get("result_id"):
                return job
        return None

    def cascade_delete(
        self,
        *,
        job_id: str | None = None,
        result_id: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        if (job_id is None) == (result_id is None):
            raise ValueError("exactly one of job_id or result_id is required")

        if job_id is not None:
            job = self.store.get_job(job_id) if user_id is None else self.store.get_job_for_user(job_id=job_id, user_id=user_id)
            if job is None:
                if user_id is not None:
                    raise _not_found("job")
                return {"deleted": False, "job_id": job_id, "result_ids": []}
            return self._delete_job(job)

        result = (
            self.store.get_result(result_id)
            if user_id is None
            else self.store.get_result_for_user(result_id=result_id, user_id=user_id)
        )
        if result is None:
            if user_id is not None:
                raise _not_found("result")
            return {"deleted": False, "job_id": None, "result_ids": []}
        owner = self._owner_of(result)
        if owner is not None:
            summary = self._delete_job(owner)
            if result_id not in summary["result_ids"] and self.store.delete_result(result_id):
                summary["result_ids"].append(result_id)
            return summary
        deleted = self.store.delete_result(result_id)
        if deleted:
            self.store.append_audit_log(action="result_deleted", subject_id=result_id, payload={"job_id": None})
        return {"deleted": deleted, "job_id": None, "result_ids": [result_id] if deleted else []}

    def purge_expired_jobs(self, *, days_old: int | None = None, now: datetime | None = None) -> dict[str, Any]:
        days = max(1, int(days_old if days_old is not None else self.settings.job_retention_days))
        cutoff = (now or datetime.now(UTC)) - timedelta(days=days)
        candidates = self.store.list_jobs_updated_before(statuses=TERMINAL_JOB_STATUSES, updated_before=cutoff)
        deleted: list[str] = []
        for job in candidates:
            try:
                self._delete_job(job)
            except ApiError as exc:
                logger.info("purge_expired_skip job_id=%s code=%s", job["job_id"], exc.code)
                continue
            deleted.append(job["job_id"])
        logger.info("purge_expired_jobs days_old=%s deleted=%s", days, len(deleted))
        return {"days_old": days, "deleted": len(deleted), "job_ids": deleted}

    # ------------------------------------------------------------------
    # Dead-letter queue
    # ------------------------------------------------------------------

    def dlq_inspect(self, *, limit: int = 100) -> dict[str, Any]:
        items = self.queue_backend.list_dead_letters(queue_name=self.queue_name, limit=limit)
        total = self.queue_backend.dead_letter_count(queue_name=self.queue_name)
        alert = total >= self.settings.dlq_alert_threshold
        if alert:
            logger.warning(
                "dlq_alert_threshold_reached queue=%s total=%s threshold=%s",
                self.queue_name,
                total,
                self.settings.dlq_alert_threshold,
            )
        return {"items": [m.as_dict() for m in items], "total": total, "alert": alert}

    def dlq_purge(self, *, message_ids: list[str] | None = None, reason: str = "") -> dict[str, Any]:
        total = self.queue_backend.dead_letter_count(queue_name=self.queue_name)
        present = {
            m.message_id: m
            for m in self.queue_backend.list_dead_letters(queue_name=self.queue_name, limit=max(total, _PURGE_BATCH))
        }
        targets = list(present) if message_ids is None else list(dict.fromkeys(message_ids))
        purged: list[str] = []
        missing: list[str] = []
        for message_id in targets:
            msg = present.get(message_id)
            if msg is None:
                missing.append(message_id)
                continue
            self.store.append_audit_log(
                action="dlq_message_purged",
                subject_id=message_id,
                payload={
                    "queue_name": msg.queue_name,
                    "payload": msg.payload,
                    "attempt": msg.attempt,
                    "death": msg.death,
                    "reason": reason,
                },
            )
            logger.warning(
                "dlq_message_purged message_id=%s job_id=%s death=%s",
                message_id,
                msg.payload.get("job_id"),
                msg.death,
            )
            if self.queue_backend.remove_dead_letter(queue_name=self.queue_name, message_id=message_id) is not None:
                purged.append(message_id)
        return {"purged": len(purged), "message_ids": purged, "missing": missing}

    def dlq_requeue(self, *, message_id: str) -> dict[str, Any]:
        present = {
            m.message_id: m
            for m in self.queue_backend.list_dead_letters(
                queue_name=self.queue_name,
                limit=max(self.queue_backend.dead_letter_count(queue_name=self.queue_name), 1),
            )
        }
        msg = present.get(message_id)
        if msg is None:
            raise ApiError(
                code="DLQ_ITEM_NOT_FOUND",
                message="dlq item not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        job_id = str(msg.payload.get("job_id") or "")
        job = self.store.get_job(job_id) if job_id else None
        if job is not None and job["status"] != "queued":
            raise ApiError(
                code="DLQ_REQUEUE_CONFLICT",
                message=f"job {job_id} is {job['status']}; only queued jobs can be redelivered",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        requeued = self.queue_backend.requeue_dead_letter(queue_name=self.queue_name, message_id=message_id)
        if requeued is None:
            raise _not_found("dlq_item")
        self.store.append_audit_log(
            action="dlq_message_requeued",
            subject_id=message_id,
            payload={"job_id": job_id, "death": msg.death},
        )
        logger.info("dlq_message_requeued message_id=%s job_id=%s", message_id, job_id)
        return {"message_id": message_id, "job_id": job_id or None, "status": "queued"}

    def run_scheduled_pass(self) -> dict[str, Any]:
        orphans = self.cleanup_orphaned_jobs()
        dlq = self.dlq_inspect(limit=0)
        return {
            "orphans": orphans,
            "dlq": {"total": dlq["total"], "alert": dlq["alert"]},
        }
