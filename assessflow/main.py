from __future__ import annotations

import logging
import os
import threading
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from assessflow.ai_client import create_ai_client_from_env
from assessflow.errors import ApiError
from assessflow.notifications import (
    DEFAULT_CHANNEL,
    LocalNotifier,
    NotificationHub,
    RedisNotificationRelay,
    create_notifier_from_env,
)
from assessflow.queue_backend import InMemoryQueueBackend, create_queue_from_env
from assessflow.reconciler import ConsistencyReconciler
from assessflow.routes import admin, jobs, realtime
from assessflow.routes._deps import (
    append_security_audit_log,
    error_response,
    request_id_from_request,
    trace_id_from_request,
)
from assessflow.schemas import success_envelope
from assessflow.security import DEFAULT_USER_ID, JwtSecurityConfig, parse_and_validate_bearer_token
from assessflow.settings import OrchestratorSettings, true_stack_required
from assessflow.store import store
from assessflow.submitter import JobSubmitter
from assessflow.worker_runtime import WorkerRuntime

logger = logging.getLogger(__name__)

_SECURITY_CODES = {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN"}


def _create_queue_backend_for_runtime(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | Any:
    env = os.environ if environ is None else environ
    try:
        return create_queue_from_env(env)
    except RuntimeError:
        if true_stack_required(env):
            raise
        logger.warning("queue backend unavailable; using in-memory queue")
        return InMemoryQueueBackend()


def _create_notifier_for_runtime(
    hub: NotificationHub,
    environ: Mapping[str, str] | None = None,
) -> Any:
    env = os.environ if environ is None else environ
    try:
        return create_notifier_from_env(hub, env)
    except RuntimeError:
        if true_stack_required(env):
            raise
        logger.warning("notifier backend unavailable; using in-process notifier")
        return LocalNotifier(hub)


settings = OrchestratorSettings.from_env()
queue_backend = _create_queue_backend_for_runtime()
hub = NotificationHub()
notifier = _create_notifier_for_runtime(hub)
ai_client = create_ai_client_from_env()
submitter = JobSubmitter(store=store, queue_backend=queue_backend, queue_name=settings.queue_name)
worker = WorkerRuntime(
    store=store,
    queue_backend=queue_backend,
    ai_client=ai_client,
    notifier=notifier,
    settings=settings,
)
reconciler = ConsistencyReconciler(
    store=store,
    queue_backend=queue_backend,
    notifier=notifier,
    submitter=submitter,
    settings=settings,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    stop_event = threading.Event()
    worker_thread: threading.Thread | None = None
    relay: RedisNotificationRelay | None = None

    if settings.embedded_worker:
        worker_thread = threading.Thread(
            target=worker.run_forever,
            kwargs={"stop_event": stop_event},
            name="embedded-worker",
            daemon=True,
        )
        worker_thread.start()
        logger.info("embedded_worker_started queue=%s", settings.queue_name)

    if not isinstance(notifier, LocalNotifier):
        relay = RedisNotificationRelay(
            dsn=os.environ.get("REDIS_DSN", ""),
            hub=hub,
            channel=os.environ.get("ASSESSFLOW_NOTIFY_CHANNEL", DEFAULT_CHANNEL),
        )
        relay.start()

    try:
        yield
    finally:
        stop_event.set()
        if worker_thread is not None:
            worker_thread.join(timeout=5)
        if relay is not None:
            relay.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="Assessflow API", version="0.1.0", lifespan=lifespan)
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    app.state.settings = settings
    app.state.queue_backend = queue_backend
    app.state.hub = hub
    app.state.notifier = notifier
    app.state.submitter = submitter
    app.state.worker = worker
    app.state.reconciler = reconciler
    app.state.ai_client = ai_client

    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _audit_security_block(request: Request, exc: ApiError) -> None:
        try:
            append_security_audit_log(request=request, code=exc.code, detail=exc.message)
        except Exception as audit_exc:
            logger.warning("security_audit_write_failed code=%s error=%s", exc.code, audit_exc)

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        request.state.trace_id = request.headers.get("x-trace-id", "").strip() or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        try:
            path = request.url.path
            if (
                security_cfg.enabled
                and path.startswith("/api/v1/")
                and not path.startswith("/api/v1/internal/")
                and path != "/api/v1/health"
            ):
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.user_id = auth_ctx.user_id
            else:
                request.state.user_id = request.headers.get("x-user-id", "").strip() or DEFAULT_USER_ID
            response = await call_next(request)
        except ApiError as exc:
            _audit_security_block(request, exc)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_CODES:
            _audit_security_block(request, exc)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        data = {
            "status": "ok",
            "queue_name": settings.queue_name,
            "queue_pending": queue_backend.pending_count(queue_name=settings.queue_name),
            "ai_provider": ai_client.provider.name,
        }
        return success_envelope(data, trace_id_from_request(request))

    app.include_router(jobs.router)
    app.include_router(admin.router)
    app.include_router(realtime.router)
    return app


app = create_app()
