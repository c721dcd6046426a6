from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None
    leased_at: str | None = None
    death: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _is_available(available_at: str | None) -> bool:
    dt = _parse_iso(available_at)
    return dt is None or dt <= datetime.now(UTC)


def _lease_expired(leased_at: str | None, *, lease_ms: int) -> bool:
    dt = _parse_iso(leased_at)
    if dt is None:
        return True
    return dt + timedelta(milliseconds=max(0, int(lease_ms))) <= datetime.now(UTC)


def next_death(previous: dict[str, Any] | None, *, reason: str, queue_name: str) -> dict[str, Any]:
    """Death metadata in the shape a broker attaches when it dead-letters a message."""
    now = _utcnow_iso()
    prev = previous or {}
    return {
        "count": int(prev.get("count", 0)) + 1,
        "reason": reason,
        "queue": queue_name,
        "first_death_at": prev.get("first_death_at") or now,
        "last_death_at": now,
    }


def dead_letter_queue_name(queue_name: str) -> str:
    return f"{queue_name}.dlq"


class InMemoryQueueBackend:
    """Single-process broker with per-queue dead-letter storage."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}
        self._dead: dict[str, QueueMessage] = {}

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            msg = QueueMessage(
                message_id=f"msg_{uuid.uuid4().hex[:12]}",
                queue_name=queue_name,
                payload=payload,
                available_at=(
                    available_at.astimezone(UTC).isoformat()
                    if isinstance(available_at, datetime)
                    else _utcnow_iso()
                ),
            )
            self._queues.setdefault(queue_name, deque()).append(msg)
            return msg

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.setdefault(queue_name, deque())
            size = len(queue)
            scanned = 0
            while scanned < size:
                msg = queue.popleft()
                if _is_available(msg.available_at):
                    msg.leased_at = _utcnow_iso()
                    self._inflight[msg.message_id] = msg
                    return msg
                queue.append(msg)
                scanned += 1
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            self._inflight.pop(message_id, None)

    def nack(
        self,
        *,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            if not requeue:
                return self.dead_letter(message_id=message_id, reason="rejected")
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            msg.attempt += 1
            msg.leased_at = None
            due_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))
            msg.available_at = due_at.isoformat()
            self._queues.setdefault(msg.queue_name, deque()).appendleft(msg)
            return msg

    def dead_letter(self, *, message_id: str, reason: str) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            msg.leased_at = None
            msg.death = next_death(msg.death, reason=reason, queue_name=msg.queue_name)
            self._dead[msg.message_id] = msg
            return msg

    def list_dead_letters(self, *, queue_name: str, limit: int = 100) -> list[QueueMessage]:
        with self._lock:
            items = [m for m in self._dead.values() if m.queue_name == queue_name]
        return items[: max(0, int(limit))]

    def dead_letter_count(self, *, queue_name: str) -> int:
        with self._lock:
            return sum(1 for m in self._dead.values() if m.queue_name == queue_name)

    def remove_dead_letter(self, *, queue_name: str, message_id: str) -> QueueMessage | None:
        with self._lock:
            msg = self._dead.get(message_id)
            if msg is None or msg.queue_name != queue_name:
                return None
            return self._dead.pop(message_id)

    def requeue_dead_letter(self, *, queue_name: str, message_id: str) -> QueueMessage | None:
        with self._lock:
            msg = self.remove_dead_letter(queue_name=queue_name, message_id=message_id)
            if msg is None:
                return None
            msg.attempt = 0
            msg.available_at = _utcnow_iso()
            self._queues.setdefault(queue_name, deque()).append(msg)
            return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, deque()))

    def inflight_job_ids(self, *, queue_name: str) -> set[str]:
        with self._lock:
            messages = list(self._queues.get(queue_name, deque()))
            messages.extend(m for m in self._inflight.values() if m.queue_name == queue_name)
        return {str(m.payload.get("job_id")) for m in messages if m.payload.get("job_id")}

    def redeliver_expired(self, *, queue_name: str, lease_ms: int) -> int:
        with self._lock:
            expired = [
                m
                for m in self._inflight.values()
                if m.queue_name == queue_name and _lease_expired(m.leased_at, lease_ms=lease_ms)
            ]
            for msg in expired:
                self._inflight.pop(msg.message_id, None)
                msg.leased_at = None
                self._queues.setdefault(queue_name, deque()).append(msg)
            return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()
            self._dead.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for ASSESSFLOW_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed broker: pending list, in-flight set and dead-letter list per queue."""

    def __init__(self, *, dsn: str, namespace: str = "assessflow") -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._dsn = dsn.strip()
        self._namespace = namespace.strip() or "assessflow"
        self._lock = threading.RLock()
        redis = _import_redis()
        self._client = redis.Redis.from_url(self._dsn, decode_responses=True)

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _pending_key(self, *, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _inflight_key(self, *, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _dead_key(self, *, queue_name: str) -> str:
        return f"{self._namespace}:queue:{dead_letter_queue_name(queue_name)}"

    def _msg_key(self, *, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _track_keys(self, *keys: str) -> None:
        for key in keys:
            self._client.sadd(self._registry_key(), key)

    def _load_msg(self, *, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id=message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, *, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id=message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        death = data.get("death")
        return QueueMessage(
            message_id=message_id,
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload", {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
            leased_at=str(data.get("leased_at", "")) or None,
            death=death if isinstance(death, dict) else None,
        )

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            msg = QueueMessage(
                message_id=f"msg_{uuid.uuid4().hex[:12]}",
                queue_name=queue_name,
                payload=payload,
                available_at=(
                    available_at.astimezone(UTC).isoformat()
                    if isinstance(available_at, datetime)
                    else _utcnow_iso()
                ),
            )
            pending_key = self._pending_key(queue_name=queue_name)
            self._save_msg(
                message_id=msg.message_id,
                data={
                    "queue_name": queue_name,
                    "payload": msg.payload,
                    "attempt": 0,
                    "status": "pending",
                    "available_at": msg.available_at,
                },
            )
            self._client.rpush(pending_key, msg.message_id)
            self._track_keys(
                pending_key,
                self._inflight_key(queue_name=queue_name),
                self._dead_key(queue_name=queue_name),
                self._msg_key(message_id=msg.message_id),
            )
            return msg

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            pending_key = self._pending_key(queue_name=queue_name)
            inflight_key = self._inflight_key(queue_name=queue_name)
            pending_count = int(self._client.llen(pending_key))
            scanned = 0
            while scanned < pending_count:
                raw_message_id = self._client.lpop(pending_key)
                if not isinstance(raw_message_id, str) or not raw_message_id:
                    return None
                msg_data = self._load_msg(message_id=raw_message_id)
                if msg_data is None:
                    scanned += 1
                    continue
                if not _is_available(msg_data.get("available_at")):
                    self._client.rpush(pending_key, raw_message_id)
                    scanned += 1
                    continue
                msg_data["status"] = "inflight"
                msg_data["leased_at"] = _utcnow_iso()
                self._save_msg(message_id=raw_message_id, data=msg_data)
                self._client.sadd(inflight_key, raw_message_id)
                return self._to_message(raw_message_id, msg_data)
            return None

    def _load_inflight(self, *, message_id: str) -> dict[str, Any] | None:
        msg_data = self._load_msg(message_id=message_id)
        if msg_data is None or msg_data.get("status") != "inflight":
            return None
        return msg_data

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            msg_data = self._load_inflight(message_id=message_id)
            if msg_data is None:
                return
            inflight_key = self._inflight_key(queue_name=str(msg_data.get("queue_name", "")))
            self._client.srem(inflight_key, message_id)
            self._client.delete(self._msg_key(message_id=message_id))

    def nack(
        self,
        *,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            if not requeue:
                return self.dead_letter(message_id=message_id, reason="rejected")
            msg_data = self._load_inflight(message_id=message_id)
            if msg_data is None:
                return None
            queue_name = str(msg_data.get("queue_name", ""))
            msg_data["attempt"] = int(msg_data.get("attempt", 0)) + 1
            msg_data["status"] = "pending"
            msg_data["leased_at"] = None
            due_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))
            msg_data["available_at"] = due_at.isoformat()
            self._save_msg(message_id=message_id, data=msg_data)
            self._client.srem(self._inflight_key(queue_name=queue_name), message_id)
            self._client.lpush(self._pending_key(queue_name=queue_name), message_id)
            return self._to_message(message_id, msg_data)

    def dead_letter(self, *, message_id: str, reason: str) -> QueueMessage | None:
        with self._lock:
            msg_data = self._load_inflight(message_id=message_id)
            if msg_data is None:
                return None
            queue_name = str(msg_data.get("queue_name", ""))
            msg_data["status"] = "dead"
            msg_data["leased_at"] = None
            msg_data["death"] = next_death(msg_data.get("death"), reason=reason, queue_name=queue_name)
            self._save_msg(message_id=message_id, data=msg_data)
            self._client.srem(self._inflight_key(queue_name=queue_name), message_id)
            self._client.rpush(self._dead_key(queue_name=queue_name), message_id)
            return self._to_message(message_id, msg_data)

    def list_dead_letters(self, *, queue_name: str, limit: int = 100) -> list[QueueMessage]:
        if int(limit) <= 0:
            return []
        with self._lock:
            ids = self._client.lrange(self._dead_key(queue_name=queue_name), 0, int(limit) - 1)
            items: list[QueueMessage] = []
            for message_id in ids or []:
                data = self._load_msg(message_id=message_id)
                if data is not None:
                    items.append(self._to_message(message_id, data))
            return items

    def dead_letter_count(self, *, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._dead_key(queue_name=queue_name)))

    def remove_dead_letter(self, *, queue_name: str, message_id: str) -> QueueMessage | None:
        with self._lock:
            data = self._load_msg(message_id=message_id)
            if data is None or data.get("status") != "dead" or data.get("queue_name") != queue_name:
                return None
            self._client.lrem(self._dead_key(queue_name=queue_name), 0, message_id)
            self._client.delete(self._msg_key(message_id=message_id))
            return self._to_message(message_id, data)

    def requeue_dead_letter(self, *, queue_name: str, message_id: str) -> QueueMessage | None:
        with self._lock:
            data = self._load_msg(message_id=message_id)
            if data is None or data.get("status") != "dead" or data.get("queue_name") != queue_name:
                return None
            self._client.lrem(self._dead_key(queue_name=queue_name), 0, message_id)
            data["status"] = "pending"
            data["attempt"] = 0
            data["available_at"] = _utcnow_iso()
            self._save_msg(message_id=message_id, data=data)
            self._client.rpush(self._pending_key(queue_name=queue_name), message_id)
            return self._to_message(message_id, data)

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(queue_name=queue_name)))

    def inflight_job_ids(self, *, queue_name: str) -> set[str]:
        with self._lock:
            ids = list(self._client.lrange(self._pending_key(queue_name=queue_name), 0, -1) or [])
            ids.extend(self._client.smembers(self._inflight_key(queue_name=queue_name)) or [])
            job_ids: set[str] = set()
            for message_id in ids:
                data = self._load_msg(message_id=message_id)
                if data is None:
                    continue
                job_id = (data.get("payload") or {}).get("job_id")
                if job_id:
                    job_ids.add(str(job_id))
            return job_ids

    def redeliver_expired(self, *, queue_name: str, lease_ms: int) -> int:
        with self._lock:
            inflight_key = self._inflight_key(queue_name=queue_name)
            redelivered = 0
            for message_id in list(self._client.smembers(inflight_key) or []):
                data = self._load_inflight(message_id=message_id)
                if data is None:
                    self._client.srem(inflight_key, message_id)
                    continue
                if not _lease_expired(data.get("leased_at"), lease_ms=lease_ms):
                    continue
                data["status"] = "pending"
                data["leased_at"] = None
                self._save_msg(message_id=message_id, data=data)
                self._client.srem(inflight_key, message_id)
                self._client.rpush(self._pending_key(queue_name=queue_name), message_id)
                redelivered += 1
            return redelivered

    def reset(self) -> None:
        with self._lock:
            registry = self._registry_key()
            keys = self._client.smembers(registry)
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(registry)


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("ASSESSFLOW_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when ASSESSFLOW_QUEUE_BACKEND=redis")
        namespace = env.get("ASSESSFLOW_QUEUE_KEY_PREFIX", "assessflow")
        return RedisQueueBackend(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported queue backend: {backend}")
