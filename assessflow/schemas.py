from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class CleanupOrphanedJobsRequest(BaseModel):
    staleness_ms: int | None = Field(default=None, ge=0)


class PurgeExpiredJobsRequest(BaseModel):
    days_old: int | None = Field(default=None, ge=1, le=3650)


class DlqPurgeRequest(BaseModel):
    message_ids: list[str] | None = None
    reason: str = ""


class AdminResultCreateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    status: Literal["completed", "failed"]
    payload: dict[str, Any] = Field(default_factory=dict)
    job_id: str | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
