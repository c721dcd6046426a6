from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

from assessflow.queue_backend import _import_redis

logger = logging.getLogger(__name__)

EVENT_STARTED = "analysis-started"
EVENT_COMPLETE = "analysis-complete"
EVENT_FAILED = "analysis-failed"
EVENT_TYPES = frozenset({EVENT_STARTED, EVENT_COMPLETE, EVENT_FAILED})

DEFAULT_CHANNEL = "assessflow:notifications"


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def processing_time_ms(job: dict[str, Any]) -> int | None:
    started = _parse_iso(job.get("started_at"))
    finished = _parse_iso(job.get("completed_at"))
    if started is None or finished is None:
        return None
    return max(0, int((finished - started).total_seconds() * 1000))


def build_started_event(job: dict[str, Any]) -> dict[str, Any]:
    return {
        "job_id": job["job_id"],
        "status": "processing",
        "message": "Your analysis has started.",
        "metadata": {
            "assessment_name": job.get("assessment_name"),
            "attempt": int(job.get("attempt_count", 0)),
        },
    }


def build_complete_event(job: dict[str, Any]) -> dict[str, Any]:
    return {
        "job_id": job["job_id"],
        "result_id": job.get("result_id"),
        "status": "completed",
        "message": "Your analysis is ready!",
        "metadata": {
            "assessment_name": job.get("assessment_name"),
            "processing_time_ms": processing_time_ms(job),
        },
    }


def build_failed_event(job: dict[str, Any]) -> dict[str, Any]:
    return {
        "job_id": job["job_id"],
        "result_id": job.get("result_id"),
        "status": "failed",
        "message": "Analysis failed. Please try again.",
        "metadata": {
            "assessment_name": job.get("assessment_name"),
            "error_code": job.get("error_code"),
            "error_message": job.get("error_message"),
        },
    }


class NotificationSession(Protocol):
    def send(self, event: dict[str, Any]) -> None: ...


class AsyncQueueSession:
    """Bridges worker threads to one websocket connection running on an event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, *, maxsize: int = 100) -> None:
        self._loop = loop
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)

    def send(self, event: dict[str, Any]) -> None:
        if self._loop.is_closed():
            raise RuntimeError("session event loop is closed")
        self._loop.call_soon_threadsafe(self._put, event)

    def _put(self, event: dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("notification_session_backlog_full event_type=%s", event.get("event_type"))


class NotificationHub:
    """Registry of connected sessions per user. Delivery is best-effort and unbuffered."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, list[NotificationSession]] = {}

    def register(self, user_id: str, session: NotificationSession) -> None:
        with self._lock:
            self._sessions.setdefault(user_id, []).append(session)
        logger.info("notification_session_registered user_id=%s", user_id)

    def unregister(self, user_id: str, session: NotificationSession) -> None:
        with self._lock:
            sessions = self._sessions.get(user_id, [])
            if session in sessions:
                sessions.remove(session)
            if not sessions:
                self._sessions.pop(user_id, None)

    def session_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._sessions.get(user_id, []))

    def connected_users(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def deliver(self, user_id: str, event: dict[str, Any]) -> int:
        with self._lock:
            sessions = list(self._sessions.get(user_id, []))
        delivered = 0
        for session in sessions:
            try:
                session.send(event)
            except Exception as exc:
                logger.warning(
                    "notification_session_dropped user_id=%s error=%s",
                    user_id,
                    type(exc).__name__,
                )
                self.unregister(user_id, session)
                continue
            delivered += 1
        return delivered

    def reset(self) -> None:
        with self._lock:
            self._sessions.clear()


def _build_event(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unsupported notification event type: {event_type}")
    event = {"event_type": event_type}
    event.update(payload)
    event.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event


class LocalNotifier:
    def __init__(self, hub: NotificationHub) -> None:
        self.hub = hub

    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> int:
        event = _build_event(event_type, payload)
        delivered = self.hub.deliver(user_id, event)
        logger.info(
            "notification_sent user_id=%s event_type=%s job_id=%s sessions=%s",
            user_id,
            event_type,
            payload.get("job_id"),
            delivered,
        )
        return delivered


class RedisNotifier:
    """Publishes events on a redis channel so API processes can push them to their sessions."""

    def __init__(self, *, dsn: str, channel: str = DEFAULT_CHANNEL) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis notifier")
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self.channel = channel

    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> int:
        event = _build_event(event_type, payload)
        message = json.dumps({"user_id": user_id, "event": event}, ensure_ascii=True, sort_keys=True)
        try:
            receivers = int(self._client.publish(self.channel, message) or 0)
        except Exception as exc:
            logger.warning(
                "notification_publish_failed user_id=%s event_type=%s error=%s",
                user_id,
                event_type,
                exc,
            )
            return 0
        return receivers


class RedisNotificationRelay:
    """Subscribes to the notification channel and hands events to the local hub.

    A redis failure drops the subscription; the relay resubscribes with a
    doubling delay capped at ``max_reconnect_delay_ms``.
    """

    def __init__(
        self,
        *,
        dsn: str,
        hub: NotificationHub,
        channel: str = DEFAULT_CHANNEL,
        reconnect_delay_ms: int = 500,
        max_reconnect_delay_ms: int = 30000,
    ) -> None:
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._redis_errors: tuple[type[BaseException], ...] = (redis.RedisError, OSError)
        self._hub = hub
        self._channel = channel
        self._reconnect_delay_s = max(1, reconnect_delay_ms) / 1000.0
        self._max_reconnect_delay_s = max(reconnect_delay_ms, max_reconnect_delay_ms) / 1000.0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.reconnects = 0

    def handle_message(self, raw: Any) -> int:
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("notification_relay_bad_message channel=%s", self._channel)
            return 0
        user_id = str(data.get("user_id") or "")
        event = data.get("event")
        if not user_id or not isinstance(event, dict):
            return 0
        return self._hub.deliver(user_id, event)

    def _listen(self) -> None:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        try:
            pubsub.subscribe(self._channel)
            while not self._stop.is_set():
                message = pubsub.get_message(timeout=1.0)
                if message and message.get("type") == "message":
                    self.handle_message(message.get("data"))
        finally:
            try:
                pubsub.close()
            except self._redis_errors as exc:
                logger.debug("notification_relay_close_failed channel=%s error=%s", self._channel, exc)

    def _run(self) -> None:
        delay_s = self._reconnect_delay_s
        while not self._stop.is_set():
            try:
                self._listen()
                delay_s = self._reconnect_delay_s
            except self._redis_errors as exc:
                logger.warning(
                    "notification_relay_error channel=%s retry_in_ms=%s error=%s",
                    self._channel,
                    int(delay_s * 1000),
                    exc,
                )
                if self._stop.wait(delay_s):
                    return
                delay_s = min(delay_s * 2, self._max_reconnect_delay_s)
                self.reconnects += 1

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="notification-relay", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None


def create_notifier_from_env(
    hub: NotificationHub,
    environ: Mapping[str, str] | None = None,
) -> LocalNotifier | RedisNotifier:
    env = os.environ if environ is None else environ
    backend = env.get("ASSESSFLOW_NOTIFIER_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return LocalNotifier(hub)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when ASSESSFLOW_NOTIFIER_BACKEND=redis")
        return RedisNotifier(dsn=dsn, channel=env.get("ASSESSFLOW_NOTIFY_CHANNEL", DEFAULT_CHANNEL))
    raise RuntimeError(f"unsupported notifier backend: {backend}")
