from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from assessflow.routes._deps import require_internal_debug, trace_id_from_request
from assessflow.schemas import (
    AdminResultCreateRequest,
    CleanupOrphanedJobsRequest,
    DlqPurgeRequest,
    PurgeExpiredJobsRequest,
    success_envelope,
)
from assessflow.store import store

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@router.post("/reconcile/sync-status/{job_id}")
def internal_sync_status(
    job_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = request.app.state.reconciler.sync_status(job_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/reconcile/cleanup-orphaned-jobs")
def internal_cleanup_orphaned_jobs(
    request: Request,
    payload: CleanupOrphanedJobsRequest | None = None,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    payload = payload or CleanupOrphanedJobsRequest()
    data = request.app.state.reconciler.cleanup_orphaned_jobs(staleness_ms=payload.staleness_ms)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/reconcile/purge-expired-jobs")
def internal_purge_expired_jobs(
    request: Request,
    payload: PurgeExpiredJobsRequest | None = None,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    payload = payload or PurgeExpiredJobsRequest()
    data = request.app.state.reconciler.purge_expired_jobs(days_old=payload.days_old)
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@router.delete("/jobs/{job_id}")
def internal_delete_job(
    job_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = request.app.state.reconciler.cascade_delete(job_id=job_id)
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/results/{result_id}")
def internal_delete_result(
    result_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = request.app.state.reconciler.cascade_delete(result_id=result_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/results")
def internal_create_result(
    payload: AdminResultCreateRequest,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    result = store.create_result(
        user_id=payload.user_id,
        status=payload.status,
        payload=payload.payload,
        job_id=payload.job_id,
    )
    store.append_audit_log(
        action="result_created_by_admin",
        subject_id=result["result_id"],
        payload={"user_id": payload.user_id, "job_id": payload.job_id},
    )
    return JSONResponse(status_code=201, content=success_envelope(result, trace_id_from_request(request)))


# ---------------------------------------------------------------------------
# Dead-letter queue
# ---------------------------------------------------------------------------


@router.get("/dlq")
def internal_dlq_inspect(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = request.app.state.reconciler.dlq_inspect(limit=limit)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/dlq/purge")
def internal_dlq_purge(
    request: Request,
    payload: DlqPurgeRequest | None = None,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    payload = payload or DlqPurgeRequest()
    data = request.app.state.reconciler.dlq_purge(message_ids=payload.message_ids, reason=payload.reason)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/dlq/{message_id}/requeue")
def internal_dlq_requeue(
    message_id: str,
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    data = request.app.state.reconciler.dlq_requeue(message_id=message_id)
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


@router.post("/worker/drain-once")
def internal_worker_drain_once(
    request: Request,
    max_messages: int = Query(default=1, ge=1, le=100),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    worker = request.app.state.worker
    stats = worker.run_once(max_messages=max_messages)
    stats["queue_name"] = worker.queue_name
    stats["queue_pending"] = request.app.state.queue_backend.pending_count(queue_name=worker.queue_name)
    return success_envelope(stats, trace_id_from_request(request))


@router.get("/ai/usage")
def internal_ai_usage(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    require_internal_debug(x_internal_debug)
    ai_client = request.app.state.ai_client
    data = ai_client.usage_tracker.summary()
    data["provider"] = ai_client.provider.name
    data["rate_limit"] = str(ai_client.rate_limiter.item) if ai_client.rate_limiter is not None else None
    return success_envelope(data, trace_id_from_request(request))
