from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Header, Query, Request
from fastapi.responses import JSONResponse

from assessflow.routes._deps import trace_id_from_request, user_id_from_request
from assessflow.schemas import success_envelope
from assessflow.store import store

router = APIRouter(prefix="/api/v1", tags=["jobs"])

_PUBLIC_JOB_FIELDS = (
    "job_id",
    "status",
    "result_id",
    "error_code",
    "error_message",
    "assessment_name",
    "attempt_count",
    "created_at",
    "updated_at",
    "started_at",
    "completed_at",
)


def _public_job(job: dict[str, Any]) -> dict[str, Any]:
    return {key: job.get(key) for key in _PUBLIC_JOB_FIELDS}


@router.post("/assessments")
def submit_assessment(
    request: Request,
    payload: Any = Body(...),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    data = request.app.state.submitter.submit(
        user_id=user_id_from_request(request),
        idempotency_key=idempotency_key,
        payload=payload,
    )
    return JSONResponse(
        status_code=202,
        content=success_envelope(
            data,
            trace_id_from_request(request),
            message="duplicate submission" if data["duplicate"] else "accepted",
        ),
    )


@router.get("/jobs")
def list_jobs(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    page = store.list_jobs(user_id=user_id_from_request(request), status=status, limit=limit, offset=offset)
    page["items"] = [_public_job(job) for job in page["items"]]
    return success_envelope(page, trace_id_from_request(request))


@router.get("/jobs/stats")
def job_stats(request: Request):
    return success_envelope(store.job_stats(user_id=user_id_from_request(request)), trace_id_from_request(request))


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request):
    job = store.require_job(job_id=job_id, user_id=user_id_from_request(request))
    return success_envelope(_public_job(job), trace_id_from_request(request))


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, request: Request):
    job = store.cancel_job(job_id=job_id, user_id=user_id_from_request(request))
    return success_envelope(_public_job(job), trace_id_from_request(request), message="cancelled")


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str, request: Request):
    data = request.app.state.reconciler.cascade_delete(job_id=job_id, user_id=user_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request), message="deleted")


@router.get("/results/{result_id}")
def get_result(result_id: str, request: Request):
    result = store.require_result(result_id=result_id, user_id=user_id_from_request(request))
    return success_envelope(result, trace_id_from_request(request))


@router.delete("/results/{result_id}")
def delete_result(result_id: str, request: Request):
    data = request.app.state.reconciler.cascade_delete(result_id=result_id, user_id=user_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request), message="deleted")
