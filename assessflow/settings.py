from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_QUEUE_NAME = "assessment_analysis"


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("ASSESSFLOW_REQUIRE_TRUESTACK", "false"))


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    return _as_bool(raw)


@dataclass(frozen=True)
class OrchestratorSettings:
    queue_name: str = DEFAULT_QUEUE_NAME
    max_retries: int = 3
    retry_delay_ms: int = 5000
    retry_max_delay_ms: int = 60000
    ai_request_timeout_ms: int = 300000
    heartbeat_interval_ms: int = 30000
    queue_lease_ms: int = 360000
    stale_job_threshold_ms: int = 30 * 60 * 1000
    orphan_queued_policy: str = "fail"
    dlq_alert_threshold: int = 10
    reconcile_interval_ms: int = 15 * 60 * 1000
    job_retention_days: int = 30
    worker_max_messages_per_iteration: int = 5
    worker_poll_interval_ms: int = 200
    embedded_worker: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "OrchestratorSettings":
        env = os.environ if environ is None else environ
        ai_timeout_ms = _env_int(env, "AI_REQUEST_TIMEOUT_MS", default=300000, minimum=1)
        policy = str(env.get("ASSESSFLOW_ORPHAN_QUEUED_POLICY", "fail")).strip().lower()
        if policy not in {"fail", "republish"}:
            policy = "fail"
        return cls(
            queue_name=str(env.get("ASSESSFLOW_QUEUE_NAME", DEFAULT_QUEUE_NAME)).strip() or DEFAULT_QUEUE_NAME,
            max_retries=_env_int(env, "ASSESSFLOW_MAX_RETRIES", default=3),
            retry_delay_ms=_env_int(env, "ASSESSFLOW_RETRY_DELAY_MS", default=5000),
            retry_max_delay_ms=_env_int(env, "ASSESSFLOW_RETRY_MAX_DELAY_MS", default=60000),
            ai_request_timeout_ms=ai_timeout_ms,
            heartbeat_interval_ms=_env_int(env, "ASSESSFLOW_HEARTBEAT_INTERVAL_MS", default=30000, minimum=10),
            # lease must outlive the AI deadline or a healthy worker would see its message redelivered
            queue_lease_ms=_env_int(
                env,
                "ASSESSFLOW_QUEUE_LEASE_MS",
                default=ai_timeout_ms + 60000,
                minimum=ai_timeout_ms + 1,
            ),
            stale_job_threshold_ms=_env_int(
                env,
                "ASSESSFLOW_STALE_JOB_THRESHOLD_MS",
                default=30 * 60 * 1000,
                minimum=1,
            ),
            orphan_queued_policy=policy,
            dlq_alert_threshold=_env_int(env, "ASSESSFLOW_DLQ_ALERT_THRESHOLD", default=10, minimum=1),
            reconcile_interval_ms=_env_int(
                env,
                "ASSESSFLOW_RECONCILE_INTERVAL_MS",
                default=15 * 60 * 1000,
                minimum=1000,
            ),
            job_retention_days=_env_int(env, "ASSESSFLOW_JOB_RETENTION_DAYS", default=30, minimum=1),
            worker_max_messages_per_iteration=_env_int(
                env,
                "WORKER_MAX_MESSAGES_PER_ITERATION",
                default=5,
                minimum=1,
            ),
            worker_poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
            embedded_worker=_env_bool(env, "ASSESSFLOW_EMBEDDED_WORKER", default=False),
        )
