from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from assessflow.db.postgres import PostgresTxRunner, _import_psycopg
from assessflow.errors import ApiError
from assessflow.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from assessflow.repositories.jobs import InMemoryJobsRepository, PostgresJobsRepository, _validate_identifier
from assessflow.repositories.results import InMemoryResultsRepository, PostgresResultsRepository
from assessflow.settings import true_stack_required

logger = logging.getLogger(__name__)

JOB_STATUSES: tuple[str, ...] = ("queued", "processing", "completed", "failed", "cancelled")
ACTIVE_JOB_STATUSES = frozenset({"queued", "processing"})
TERMINAL_JOB_STATUSES = frozenset({"completed", "failed", "cancelled"})
RESULT_STATUSES = frozenset({"completed", "failed"})

# Result status a terminal job must be paired with.
RESULT_STATUS_FOR_JOB: dict[str, str] = {
    "completed": "completed",
    "failed": "failed",
    "cancelled": "failed",
}


def _job_not_found() -> ApiError:
    return ApiError(
        code="JOB_NOT_FOUND",
        message="job not found",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def _result_not_found() -> ApiError:
    return ApiError(
        code="RESULT_NOT_FOUND",
        message="result not found",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def _state_conflict(*, job_id: str, expected: str, found: str | None) -> ApiError:
    return ApiError(
        code="JOB_STATE_CONFLICT",
        message=f"job {job_id} status changed: expected {expected}, found {found}",
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


class InMemoryStore:
    """Job/Result store. Every job status write goes through `transition_job`."""

    ALLOWED_TRANSITIONS: dict[str, set[str]] = {
        "queued": {"processing", "cancelled", "failed"},
        "processing": {"completed", "failed", "queued"},
        "completed": {"failed"},
        "failed": {"completed"},
        "cancelled": set(),
    }
    # The reconciler may also settle a requeued job straight from its persisted Result.
    RECONCILE_TRANSITIONS: dict[str, set[str]] = {
        "queued": {"completed"},
    }

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.jobs: dict[str, dict[str, Any]] = {}
        self.results: dict[str, dict[str, Any]] = {}
        self.audit_logs: list[dict[str, Any]] = []
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.jobs_repository = InMemoryJobsRepository(self.jobs, lock=self._lock)
        self.results_repository = InMemoryResultsRepository(self.results, lock=self._lock)
        self.audit_repository = InMemoryAuditLogsRepository(self.audit_logs)

    def reset(self) -> None:
        with self._lock:
            self.jobs.clear()
            self.results.clear()
            self.audit_logs.clear()

    @staticmethod
    def utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        canonical = json.dumps(payload, ensure_ascii=True, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @staticmethod
    def parse_iso(value: Any) -> datetime | None:
        if not isinstance(value, str) or not value:
            return None
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(
        self,
        *,
        user_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
    ) -> tuple[dict[str, Any], bool]:
        now = self.utcnow_iso()
        job = {
            "job_id": f"job_{uuid.uuid4().hex[:16]}",
            "user_id": user_id,
            "idempotency_key": idempotency_key,
            "status": "queued",
            "result_id": None,
            "error_code": None,
            "error_message": None,
            "assessment_name": str(payload.get("assessmentName") or ""),
            "payload": payload,
            "payload_fingerprint": self._fingerprint(payload),
            "attempt_count": 0,
            "republish_count": 0,
            "created_at": now,
            "updated_at": now,
            "started_at": None,
            "completed_at": None,
        }
        saved, created = self.jobs_repository.insert_if_absent(job=job)
        if not created and saved.get("payload_fingerprint") != job["payload_fingerprint"]:
            logger.warning(
                "idempotency_key_reused_with_different_payload user_id=%s job_id=%s",
                user_id,
                saved.get("job_id"),
            )
        return saved, created

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        return self.jobs_repository.get(job_id=job_id)

    def get_job_for_user(self, *, job_id: str, user_id: str) -> dict[str, Any] | None:
        job = self.get_job(job_id)
        if job is None or job.get("user_id") != user_id:
            return None
        return job

    def require_job(self, *, job_id: str, user_id: str | None = None) -> dict[str, Any]:
        if user_id is None:
            job = self.get_job(job_id)
        else:
            job = self.get_job_for_user(job_id=job_id, user_id=user_id)
        if job is None:
            raise _job_not_found()
        return job

    def find_job_for_result(self, result_id: str) -> dict[str, Any] | None:
        return self.jobs_repository.find_by_result_id(result_id=result_id)

    def _validate_job_record(self, job: dict[str, Any]) -> None:
        status = job.get("status")
        if status == "completed":
            if not job.get("result_id"):
                raise ApiError(
                    code="JOB_STATE_INVALID",
                    message="completed job requires result_id",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            if job.get("error_message"):
                raise ApiError(
                    code="JOB_STATE_INVALID",
                    message="completed job cannot carry error_message",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
        if status == "failed" and not job.get("error_code"):
            raise ApiError(
                code="JOB_STATE_INVALID",
                message="failed job requires error_code",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )

    def transition_job(
        self,
        *,
        job_id: str,
        expected_status: str,
        new_status: str,
        changes: dict[str, Any] | None = None,
        reconcile: bool = False,
    ) -> dict[str, Any]:
        allowed = set(self.ALLOWED_TRANSITIONS.get(expected_status, set()))
        if reconcile:
            allowed |= self.RECONCILE_TRANSITIONS.get(expected_status, set())
        if new_status not in allowed:
            raise ApiError(
                code="WF_STATE_TRANSITION_INVALID",
                message=f"invalid transition: {expected_status} -> {new_status}",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        current = self.get_job(job_id)
        if current is None:
            raise _job_not_found()
        if current.get("status") != expected_status:
            raise _state_conflict(job_id=job_id, expected=expected_status, found=current.get("status"))

        now = self.utcnow_iso()
        updates = dict(changes or {})
        updates["status"] = new_status
        updates["updated_at"] = now
        if new_status in TERMINAL_JOB_STATUSES:
            updates.setdefault("completed_at", now)
        elif new_status == "queued":
            updates.setdefault("started_at", None)
        self._validate_job_record({**current, **updates})

        saved = self.jobs_repository.compare_and_set(
            job_id=job_id,
            expected_status=expected_status,
            changes=updates,
        )
        if saved is None:
            latest = self.get_job(job_id)
            raise _state_conflict(
                job_id=job_id,
                expected=expected_status,
                found=latest.get("status") if latest else None,
            )
        logger.info("job_transition job_id=%s from=%s to=%s", job_id, expected_status, new_status)
        return saved

    def update_job(
        self,
        *,
        job_id: str,
        expected_status: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Write non-status fields under the same status compare-and-set as transitions."""
        if "status" in changes:
            raise ValueError("status changes must go through transition_job")
        current = self.get_job(job_id)
        if current is None:
            raise _job_not_found()
        updates = dict(changes)
        updates["updated_at"] = self.utcnow_iso()
        self._validate_job_record({**current, **updates, "status": expected_status})
        return self.jobs_repository.compare_and_set(
            job_id=job_id,
            expected_status=expected_status,
            changes=updates,
        )

    def touch_job(self, *, job_id: str, expected_status: str = "processing") -> bool:
        saved = self.jobs_repository.compare_and_set(
            job_id=job_id,
            expected_status=expected_status,
            changes={"updated_at": self.utcnow_iso()},
        )
        return saved is not None

    def record_republish(self, *, job: dict[str, Any]) -> dict[str, Any] | None:
        return self.jobs_repository.compare_and_set(
            job_id=str(job["job_id"]),
            expected_status="queued",
            changes={
                "republish_count": int(job.get("republish_count", 0)) + 1,
                "updated_at": self.utcnow_iso(),
            },
        )

    def cancel_job(self, *, job_id: str, user_id: str) -> dict[str, Any]:
        job = self.require_job(job_id=job_id, user_id=user_id)
        if job["status"] != "queued":
            raise ApiError(
                code="JOB_NOT_CANCELLABLE",
                message=f"only queued jobs can be cancelled; job is {job['status']}",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        try:
            return self.transition_job(job_id=job_id, expected_status="queued", new_status="cancelled")
        except ApiError as exc:
            if exc.code != "JOB_STATE_CONFLICT":
                raise
            raise ApiError(
                code="JOB_NOT_CANCELLABLE",
                message="job was picked up by a worker",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            ) from exc

    def delete_job(self, *, job_id: str, expected_status: str) -> bool:
        return self.jobs_repository.delete_if_status(job_id=job_id, expected_status=expected_status)

    def list_jobs(
        self,
        *,
        user_id: str,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        if status and status not in JOB_STATUSES:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message=f"unknown job status: {status}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        limit = min(max(int(limit), 1), 100)
        offset = max(int(offset), 0)
        items, total = self.jobs_repository.list_for_user(
            user_id=user_id,
            status=status,
            limit=limit,
            offset=offset,
        )
        return {"items": items, "total": total, "limit": limit, "offset": offset}

    def job_stats(self, *, user_id: str | None = None) -> dict[str, int]:
        counts = self.jobs_repository.count_by_status(user_id=user_id)
        stats = {status: int(counts.get(status, 0)) for status in JOB_STATUSES}
        stats["total"] = sum(stats.values())
        return stats

    def list_jobs_updated_before(
        self,
        *,
        statuses: list[str] | tuple[str, ...] | frozenset[str],
        updated_before: datetime,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        return self.jobs_repository.list_updated_before(
            statuses=sorted(statuses),
            updated_before=updated_before.astimezone(UTC).isoformat(),
            limit=limit,
        )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def create_result(
        self,
        *,
        user_id: str,
        status: str,
        payload: dict[str, Any],
        job_id: str | None = None,
    ) -> dict[str, Any]:
        if status not in RESULT_STATUSES:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message=f"invalid result status: {status}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        result = {
            "result_id": f"res_{uuid.uuid4().hex[:16]}",
            "user_id": user_id,
            "job_id": job_id,
            "status": status,
            "payload": payload,
            "created_at": self.utcnow_iso(),
        }
        return self.results_repository.create(result=result)

    def get_result(self, result_id: str) -> dict[str, Any] | None:
        return self.results_repository.get(result_id=result_id)

    def get_result_for_user(self, *, result_id: str, user_id: str) -> dict[str, Any] | None:
        result = self.get_result(result_id)
        if result is None or result.get("user_id") != user_id:
            return None
        return result

    def require_result(self, *, result_id: str, user_id: str | None = None) -> dict[str, Any]:
        if user_id is None:
            result = self.get_result(result_id)
        else:
            result = self.get_result_for_user(result_id=result_id, user_id=user_id)
        if result is None:
            raise _result_not_found()
        return result

    def find_result_for_job(self, job_id: str) -> dict[str, Any] | None:
        return self.results_repository.find_by_job_id(job_id=job_id)

    def set_result_status(
        self,
        *,
        result_id: str,
        expected_status: str,
        new_status: str,
    ) -> dict[str, Any] | None:
        return self.results_repository.compare_and_set_status(
            result_id=result_id,
            expected_status=expected_status,
            new_status=new_status,
        )

    def delete_result(self, result_id: str) -> bool:
        return self.results_repository.delete(result_id=result_id)

    def discard_unlinked_result(self, *, job_id: str, result_id: str) -> bool:
        """Delete a Result whose job write lost its compare-and-set.

        The Result is kept when the job already points at it: a reconcile pass
        may have settled the job from it through the back reference.
        """
        latest = self.get_job(job_id)
        if latest is not None and latest.get("result_id") == result_id:
            logger.info("result_kept_linked job_id=%s result_id=%s", job_id, result_id)
            return False
        return self.delete_result(result_id)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit_log(self, *, action: str, subject_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self.audit_repository.append(
            log={
                "audit_id": f"audit_{uuid.uuid4().hex[:12]}",
                "action": action,
                "subject_id": subject_id,
                "occurred_at": self.utcnow_iso(),
                "payload": payload,
            }
        )

    def list_audit_logs(self, *, action: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        return self.audit_repository.list_by_action(action=action, limit=limit)


class PostgresBackedStore(InMemoryStore):
    """Row-level PostgreSQL store; the compare-and-set lives in the UPDATE ... WHERE status clause."""

    def __init__(
        self,
        *,
        dsn: str,
        jobs_table: str = "assessment_jobs",
        results_table: str = "assessment_results",
        audit_table: str = "assessment_audit_logs",
    ) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._jobs_table = _validate_identifier(jobs_table)
        self._results_table = _validate_identifier(results_table)
        self._audit_table = _validate_identifier(audit_table)
        self._tx_runner = PostgresTxRunner(self._dsn)
        super().__init__()
        self._initialize_database()

    def _bind_repositories(self) -> None:
        self.jobs_repository = PostgresJobsRepository(tx_runner=self._tx_runner, table_name=self._jobs_table)
        self.results_repository = PostgresResultsRepository(
            tx_runner=self._tx_runner,
            table_name=self._results_table,
        )
        self.audit_repository = PostgresAuditLogsRepository(
            tx_runner=self._tx_runner,
            table_name=self._audit_table,
        )

    def _connect(self) -> Any:
        psycopg = _import_psycopg()
        return psycopg.connect(self._dsn)

    def _initialize_database(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._jobs_table} (
                      job_id TEXT PRIMARY KEY,
                      user_id TEXT NOT NULL,
                      idempotency_key TEXT NOT NULL,
                      status TEXT NOT NULL,
                      result_id TEXT,
                      error_code TEXT,
                      error_message TEXT,
                      assessment_name TEXT,
                      payload JSONB NOT NULL,
                      payload_fingerprint TEXT NOT NULL,
                      attempt_count INTEGER NOT NULL DEFAULT 0,
                      republish_count INTEGER NOT NULL DEFAULT 0,
                      created_at TEXT NOT NULL,
                      updated_at TEXT NOT NULL,
                      started_at TEXT,
                      completed_at TEXT,
                      UNIQUE (user_id, idempotency_key)
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_{self._jobs_table}_status_updated
                    ON {self._jobs_table}(status, updated_at)
                    """
                )
                cur.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_{self._jobs_table}_result
                    ON {self._jobs_table}(result_id)
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._results_table} (
                      result_id TEXT PRIMARY KEY,
                      user_id TEXT NOT NULL,
                      job_id TEXT,
                      status TEXT NOT NULL,
                      payload JSONB NOT NULL,
                      created_at TEXT NOT NULL
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_{self._results_table}_job
                    ON {self._results_table}(job_id)
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._audit_table} (
                      audit_id TEXT PRIMARY KEY,
                      action TEXT NOT NULL,
                      subject_id TEXT,
                      occurred_at TEXT NOT NULL,
                      payload JSONB NOT NULL
                    )
                    """
                )
            conn.commit()

    def reset(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"TRUNCATE {self._jobs_table}, {self._results_table}, {self._audit_table}")
            conn.commit()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("ASSESSFLOW_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("ASSESSFLOW_STORE_BACKEND must be postgres when ASSESSFLOW_REQUIRE_TRUESTACK=true")
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when ASSESSFLOW_STORE_BACKEND=postgres")
        return PostgresBackedStore(
            dsn=dsn,
            jobs_table=env.get("ASSESSFLOW_JOBS_TABLE", "assessment_jobs"),
            results_table=env.get("ASSESSFLOW_RESULTS_TABLE", "assessment_results"),
            audit_table=env.get("ASSESSFLOW_AUDIT_TABLE", "assessment_audit_logs"),
        )
    if backend != "memory":
        raise RuntimeError(f"unsupported store backend: {backend}")
    return InMemoryStore()


store = create_store_from_env()
