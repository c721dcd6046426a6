from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from assessflow.errors import ApiError
from assessflow.schemas import error_envelope
from assessflow.security import DEFAULT_USER_ID, redact_sensitive
from assessflow.store import store


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def user_id_from_request(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return user_id
    return DEFAULT_USER_ID


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def append_security_audit_log(*, request: Request, code: str, detail: str) -> None:
    security_cfg = request.app.state.security_cfg
    headers_obj = dict(request.headers.items())
    headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
    store.append_audit_log(
        action="security_blocked",
        subject_id=user_id_from_request(request),
        payload={
            "error_code": code,
            "detail": detail,
            "path": request.url.path,
            "trace_id": trace_id_from_request(request),
            "headers": headers_payload,
        },
    )
