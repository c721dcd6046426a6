from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from assessflow.ai_client import AiClientError
from assessflow.errors import ApiError, ErrorCode, TransportError, is_retryable
from assessflow.notifications import (
    EVENT_COMPLETE,
    EVENT_FAILED,
    EVENT_STARTED,
    build_complete_event,
    build_failed_event,
    build_started_event,
)
from assessflow.settings import OrchestratorSettings
from assessflow.submitter import validate_assessment_payload

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retrying: int = 0
    dead_lettered: int = 0
    dropped: int = 0
    acked: int = 0
    requeued: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retrying": self.retrying,
            "dead_lettered": self.dead_lettered,
            "dropped": self.dropped,
            "acked": self.acked,
            "requeued": self.requeued,
        }

    def merge(self, other: dict[str, int]) -> None:
        for key, value in other.items():
            setattr(self, key, getattr(self, key) + int(value))


def should_process(job: dict[str, Any] | None) -> bool:
    """A delivery is only worth running when its job still waits in the queue."""
    return job is not None and job.get("status") == "queued"


def retry_backoff_ms(attempt: int, *, base_ms: int, max_ms: int) -> int:
    return min(max_ms, base_ms * (2 ** max(0, attempt)))


class _Heartbeat:
    def __init__(self, *, store: Any, job_id: str, interval_ms: int) -> None:
        self._store = store
        self._job_id = job_id
        self._interval_s = max(10, interval_ms) / 1000.0
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"heartbeat-{job_id}", daemon=True)

    def _run(self) -> None:
        while not self._stop.wait(self._interval_s):
            try:
                alive = self._store.touch_job(job_id=self._job_id)
            except TransportError as exc:
                logger.warning("job_heartbeat_failed job_id=%s error=%s", self._job_id, exc)
                continue
            if not alive:
                return

    def __enter__(self) -> "_Heartbeat":
        self._thread.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._stop.set()
        self._thread.join(timeout=self._interval_s + 1)


class WorkerRuntime:
    """Consumes analysis messages and drives each job to a terminal status or an explicit requeue."""

    def __init__(
        self,
        *,
        store: Any,
        queue_backend: Any,
        ai_client: Any,
        notifier: Any,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.ai_client = ai_client
        self.notifier = notifier
        self.settings = settings or OrchestratorSettings()

    @property
    def queue_name(self) -> str:
        return self.settings.queue_name

    def _emit(self, job: dict[str, Any], event_type: str, event: dict[str, Any]) -> None:
        try:
            self.notifier.notify(str(job["user_id"]), event_type, event)
        except Exception as exc:
            logger.warning(
                "notification_failed job_id=%s event_type=%s error=%s",
                job.get("job_id"),
                event_type,
                exc,
            )

    def _fail_job(
        self,
        *,
        job: dict[str, Any],
        expected_status: str,
        code: ErrorCode,
        message: str,
    ) -> dict[str, Any] | None:
        result = self.store.create_result(
            user_id=job["user_id"],
            status="failed",
            payload={"error_code": code.value, "error_message": message},
            job_id=job["job_id"],
        )
        try:
            saved = self.store.transition_job(
                job_id=job["job_id"],
                expected_status=expected_status,
                new_status="failed",
                changes={
                    "error_code": code.value,
                    "error_message": message[:1000],
                    "result_id": result["result_id"],
                },
            )
        except ApiError as exc:
            logger.warning("job_fail_conflict job_id=%s code=%s", job["job_id"], exc.code)
            self.store.discard_unlinked_result(job_id=job["job_id"], result_id=result["result_id"])
            return None
        self._emit(saved, EVENT_FAILED, build_failed_event(saved))
        return saved

    def _retry_or_dead_letter(
        self,
        *,
        msg: Any,
        job: dict[str, Any],
        claimed: bool,
        error: str,
    ) -> str:
        if claimed:
            try:
                self.store.transition_job(job_id=job["job_id"], expected_status="processing", new_status="queued")
            except (ApiError, TransportError) as exc:
                logger.warning("job_requeue_revert_failed job_id=%s error=%s", job["job_id"], exc)

        if msg.attempt < self.settings.max_retries:
            delay_ms = retry_backoff_ms(
                msg.attempt,
                base_ms=self.settings.retry_delay_ms,
                max_ms=self.settings.retry_max_delay_ms,
            )
            self.queue_backend.nack(message_id=msg.message_id, requeue=True, delay_ms=delay_ms)
            logger.warning(
                "job_retry_scheduled job_id=%s attempt=%s delay_ms=%s error=%s",
                job["job_id"],
                msg.attempt + 1,
                delay_ms,
                error,
            )
            return "retrying"

        try:
            current = self.store.get_job(job["job_id"])
            if current is not None and current["status"] in {"queued", "processing"}:
                self._fail_job(
                    job=current,
                    expected_status=current["status"],
                    code=ErrorCode.TRANSPORT,
                    message=f"retries exhausted: {error}",
                )
        except TransportError as exc:
            logger.error("job_fail_unreachable job_id=%s error=%s", job["job_id"], exc)
        self.queue_backend.dead_letter(message_id=msg.message_id, reason="max_retries_exceeded")
        logger.error("job_dead_lettered job_id=%s attempts=%s", job["job_id"], msg.attempt + 1)
        return "dead_lettered"

    def process_message(self, msg: Any) -> str:
        job_id = str(msg.payload.get("job_id") or "")
        if not job_id:
            self.queue_backend.ack(message_id=msg.message_id)
            return "dropped"

        try:
            job = self.store.get_job(job_id)
        except TransportError as exc:
            return self._retry_or_dead_letter(msg=msg, job={"job_id": job_id}, claimed=False, error=str(exc))
        if not should_process(job):
            self.queue_backend.ack(message_id=msg.message_id)
            logger.info(
                "job_message_dropped job_id=%s status=%s",
                job_id,
                job.get("status") if job else None,
            )
            return "dropped"

        try:
            job = self.store.transition_job(
                job_id=job_id,
                expected_status="queued",
                new_status="processing",
                changes={
                    "attempt_count": int(job.get("attempt_count", 0)) + 1,
                    "started_at": self.store.utcnow_iso(),
                },
            )
        except ApiError:
            # another worker or a cancel got there first
            self.queue_backend.ack(message_id=msg.message_id)
            return "dropped"
        except TransportError as exc:
            return self._retry_or_dead_letter(msg=msg, job=job, claimed=False, error=str(exc))
        self._emit(job, EVENT_STARTED, build_started_event(job))

        try:
            return self._run_claimed(msg=msg, job=job)
        except TransportError as exc:
            return self._retry_or_dead_letter(msg=msg, job=job, claimed=True, error=str(exc))
        except Exception as exc:
            logger.exception("job_processing_crashed job_id=%s", job_id)
            self._fail_job(
                job=job,
                expected_status="processing",
                code=ErrorCode.AI_UPSTREAM,
                message=f"worker error: {type(exc).__name__}",
            )
            self.queue_backend.ack(message_id=msg.message_id)
            return "failed"

    def _run_claimed(self, *, msg: Any, job: dict[str, Any]) -> str:
        try:
            payload = validate_assessment_payload(job.get("payload"))
        except ApiError as exc:
            self._fail_job(job=job, expected_status="processing", code=ErrorCode.VALIDATION, message=exc.message)
            self.queue_backend.ack(message_id=msg.message_id)
            return "failed"

        started = time.monotonic()
        try:
            with _Heartbeat(store=self.store, job_id=job["job_id"], interval_ms=self.settings.heartbeat_interval_ms):
                analysis = self.ai_client.infer(
                    payload,
                    deadline_s=self.settings.ai_request_timeout_ms / 1000.0,
                )
        except AiClientError as exc:
            logger.warning(
                "ai_call_failed job_id=%s kind=%s error=%s",
                job["job_id"],
                exc.kind,
                exc,
            )
            if is_retryable(exc.error_code):
                return self._retry_or_dead_letter(msg=msg, job=job, claimed=True, error=str(exc))
            self._fail_job(job=job, expected_status="processing", code=exc.error_code, message=str(exc))
            self.queue_backend.ack(message_id=msg.message_id)
            return "failed"

        result = self.store.create_result(
            user_id=job["user_id"],
            status="completed",
            payload=analysis,
            job_id=job["job_id"],
        )
        try:
            saved = self.store.transition_job(
                job_id=job["job_id"],
                expected_status="processing",
                new_status="completed",
                changes={"result_id": result["result_id"], "error_code": None, "error_message": None},
            )
        except ApiError as exc:
            # the job was settled elsewhere: orphan cleanup, or sync_status from this very Result
            logger.warning(
                "job_complete_conflict job_id=%s result_id=%s code=%s",
                job["job_id"],
                result["result_id"],
                exc.code,
            )
            kept = not self.store.discard_unlinked_result(job_id=job["job_id"], result_id=result["result_id"])
            self.queue_backend.ack(message_id=msg.message_id)
            latest = self.store.get_job(job["job_id"]) if kept else None
            if latest is not None and latest.get("result_id") == result["result_id"] and latest["status"] == "completed":
                self._emit(latest, EVENT_COMPLETE, build_complete_event(latest))
                return "completed"
            return "dropped"
        self.queue_backend.ack(message_id=msg.message_id)
        logger.info(
            "job_completed job_id=%s result_id=%s elapsed_ms=%s",
            job["job_id"],
            result["result_id"],
            int((time.monotonic() - started) * 1000),
        )
        self._emit(saved, EVENT_COMPLETE, build_complete_event(saved))
        return "completed"

    def run_once(self, *, max_messages: int | None = None) -> dict[str, int]:
        stats = WorkerRunStats()
        limit = max(1, int(max_messages or self.settings.worker_max_messages_per_iteration))
        redelivered = self.queue_backend.redeliver_expired(
            queue_name=self.queue_name,
            lease_ms=self.settings.queue_lease_ms,
        )
        if redelivered:
            logger.warning("queue_leases_expired queue=%s count=%s", self.queue_name, redelivered)
        while stats.processed < limit:
            msg = self.queue_backend.dequeue(queue_name=self.queue_name)
            if msg is None:
                break
            stats.processed += 1
            outcome = self.process_message(msg)
            if outcome == "completed":
                stats.succeeded += 1
                stats.acked += 1
            elif outcome == "failed":
                stats.failed += 1
                stats.acked += 1
            elif outcome == "dropped":
                stats.dropped += 1
                stats.acked += 1
            elif outcome == "retrying":
                stats.retrying += 1
                stats.requeued += 1
            elif outcome == "dead_lettered":
                stats.dead_lettered += 1
                stats.failed += 1
        return stats.as_dict()

    def run_forever(
        self,
        *,
        stop_after_iterations: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        poll_s = self.settings.worker_poll_interval_ms / 1000.0
        while stop_event is None or not stop_event.is_set():
            try:
                current = self.run_once()
            except Exception:
                logger.exception("worker_iteration_failed queue=%s", self.queue_name)
                current = WorkerRunStats().as_dict()
            aggregate.merge(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                if stop_event is not None:
                    stop_event.wait(poll_s)
                else:
                    time.sleep(poll_s)
        return aggregate.as_dict()


def create_worker_runtime_from_env(
    *,
    store: Any,
    queue_backend: Any,
    ai_client: Any,
    notifier: Any,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    return WorkerRuntime(
        store=store,
        queue_backend=queue_backend,
        ai_client=ai_client,
        notifier=notifier,
        settings=OrchestratorSettings.from_env(env),
    )
