from __future__ import annotations

import json
import re
import threading
from typing import Any

from assessflow.db.postgres import PostgresTxRunner

JOB_COLUMNS: tuple[str, ...] = (
    "job_id",
    "user_id",
    "idempotency_key",
    "status",
    "result_id",
    "error_code",
    "error_message",
    "assessment_name",
    "payload",
    "payload_fingerprint",
    "attempt_count",
    "republish_count",
    "created_at",
    "updated_at",
    "started_at",
    "completed_at",
)

MUTABLE_JOB_COLUMNS = frozenset(
    {
        "status",
        "result_id",
        "error_code",
        "error_message",
        "attempt_count",
        "republish_count",
        "updated_at",
        "started_at",
        "completed_at",
    }
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_JOB_COLUMNS
    if unknown:
        raise ValueError(f"immutable job fields: {sorted(unknown)}")


class InMemoryJobsRepository:
    def __init__(self, jobs: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        self._jobs = jobs
        self._lock = lock or threading.RLock()

    def insert_if_absent(self, *, job: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        with self._lock:
            existing = self._find_by_idempotency_key(
                user_id=str(job["user_id"]),
                idempotency_key=str(job["idempotency_key"]),
            )
            if existing is not None:
                return dict(existing), False
            self._jobs[str(job["job_id"])] = dict(job)
            return dict(job), True

    def _find_by_idempotency_key(self, *, user_id: str, idempotency_key: str) -> dict[str, Any] | None:
        for row in self._jobs.values():
            if row.get("user_id") == user_id and row.get("idempotency_key") == idempotency_key:
                return row
        return None

    def find_by_idempotency_key(self, *, user_id: str, idempotency_key: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._find_by_idempotency_key(user_id=user_id, idempotency_key=idempotency_key)
            return dict(row) if row is not None else None

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._jobs.get(job_id)
            return dict(row) if row is not None else None

    def find_by_result_id(self, *, result_id: str) -> dict[str, Any] | None:
        with self._lock:
            for row in self._jobs.values():
                if row.get("result_id") == result_id:
                    return dict(row)
            return None

    def compare_and_set(
        self,
        *,
        job_id: str,
        expected_status: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        _check_changes(changes)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.get("status") != expected_status:
                return None
            row.update(changes)
            return dict(row)

    def delete_if_status(self, *, job_id: str, expected_status: str) -> bool:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.get("status") != expected_status:
                return False
            del self._jobs[job_id]
            return True

    def list_for_user(
        self,
        *,
        user_id: str,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        with self._lock:
            rows = [dict(x) for x in self._jobs.values() if x.get("user_id") == user_id]
        if status:
            rows = [x for x in rows if x.get("status") == status]
        rows.sort(key=lambda x: str(x.get("created_at", "")), reverse=True)
        return rows[offset : offset + limit], len(rows)

    def count_by_status(self, *, user_id: str | None = None) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for row in self._jobs.values():
                if user_id is not None and row.get("user_id") != user_id:
                    continue
                status = str(row.get("status"))
                counts[status] = counts.get(status, 0) + 1
        return counts

    def list_updated_before(
        self,
        *,
        statuses: list[str],
        updated_before: str,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(x)
                for x in self._jobs.values()
                if x.get("status") in statuses and str(x.get("updated_at", "")) < updated_before
            ]
        rows.sort(key=lambda x: str(x.get("updated_at", "")))
        return rows[:limit]


class PostgresJobsRepository:
    """Jobs repository for the postgres backend; status writes are compare-and-set."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "assessment_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._select_cols = ", ".join(JOB_COLUMNS)

    @staticmethod
    def _row_to_job(row: Any) -> dict[str, Any]:
        job = dict(zip(JOB_COLUMNS, row))
        if not isinstance(job.get("payload"), dict):
            job["payload"] = {}
        job["attempt_count"] = int(job.get("attempt_count") or 0)
        job["republish_count"] = int(job.get("republish_count") or 0)
        return job

    def insert_if_absent(self, *, job: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        placeholders = ", ".join("%s::jsonb" if col == "payload" else "%s" for col in JOB_COLUMNS)
        insert_sql = f"""
            INSERT INTO {self._table_name} ({self._select_cols})
            VALUES ({placeholders})
            ON CONFLICT (user_id, idempotency_key) DO NOTHING
            RETURNING job_id
        """
        select_sql = f"""
            SELECT {self._select_cols}
            FROM {self._table_name}
            WHERE user_id = %s AND idempotency_key = %s
            LIMIT 1
        """
        params = tuple(
            json.dumps(job.get(col, {}), ensure_ascii=True, sort_keys=True) if col == "payload" else job.get(col)
            for col in JOB_COLUMNS
        )

        def _op(conn: Any) -> tuple[dict[str, Any], bool]:
            with conn.cursor() as cur:
                cur.execute(insert_sql, params)
                inserted = cur.fetchone()
                if inserted is not None:
                    return dict(job), True
                cur.execute(select_sql, (job["user_id"], job["idempotency_key"]))
                row = cur.fetchone()
            if row is None:
                raise RuntimeError("idempotent insert lost both the insert and the lookup")
            return self._row_to_job(row), False

        return self._tx_runner.run_in_tx(fn=_op)

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return self._row_to_job(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def find_by_idempotency_key(self, *, user_id: str, idempotency_key: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_cols}
            FROM {self._table_name}
            WHERE user_id = %s AND idempotency_key = %s
            LIMIT 1
        """
        return self._fetch_one(sql, (user_id, idempotency_key))

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_cols}
            FROM {self._table_name}
            WHERE job_id = %s
            LIMIT 1
        """
        return self._fetch_one(sql, (job_id,))

    def find_by_result_id(self, *, result_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_cols}
            FROM {self._table_name}
            WHERE result_id = %s
            LIMIT 1
        """
        return self._fetch_one(sql, (result_id,))

    def compare_and_set(
        self,
        *,
        job_id: str,
        expected_status: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        _check_changes(changes)
        if not changes:
            return self.get(job_id=job_id)
        columns = sorted(changes)
        set_sql = ", ".join(f"{_validate_identifier(col)} = %s" for col in columns)
        sql = f"""
            UPDATE {self._table_name}
            SET {set_sql}
            WHERE job_id = %s AND status = %s
            RETURNING {self._select_cols}
        """
        params = tuple(changes[col] for col in columns) + (job_id, expected_status)
        return self._fetch_one(sql, params)

    def delete_if_status(self, *, job_id: str, expected_status: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE job_id = %s AND status = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id, expected_status))
                return int(cur.rowcount or 0) > 0

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_user(
        self,
        *,
        user_id: str,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        where = "WHERE user_id = %s"
        params: tuple[Any, ...] = (user_id,)
        if status:
            where += " AND status = %s"
            params += (status,)
        count_sql = f"SELECT COUNT(*) FROM {self._table_name} {where}"
        list_sql = f"""
            SELECT {self._select_cols}
            FROM {self._table_name}
            {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
        """

        def _op(conn: Any) -> tuple[list[dict[str, Any]], int]:
            with conn.cursor() as cur:
                cur.execute(count_sql, params)
                total_row = cur.fetchone()
                cur.execute(list_sql, params + (limit, offset))
                rows = cur.fetchall()
            total = int(total_row[0]) if total_row else 0
            return [self._row_to_job(row) for row in rows], total

        return self._tx_runner.run_in_tx(fn=_op)

    def count_by_status(self, *, user_id: str | None = None) -> dict[str, int]:
        if user_id is None:
            sql = f"SELECT status, COUNT(*) FROM {self._table_name} GROUP BY status"
            params: tuple[Any, ...] = ()
        else:
            sql = f"SELECT status, COUNT(*) FROM {self._table_name} WHERE user_id = %s GROUP BY status"
            params = (user_id,)

        def _op(conn: Any) -> dict[str, int]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return {str(row[0]): int(row[1]) for row in rows}

        return self._tx_runner.run_in_tx(fn=_op)

    def list_updated_before(
        self,
        *,
        statuses: list[str],
        updated_before: str,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._select_cols}
            FROM {self._table_name}
            WHERE status = ANY(%s) AND updated_at < %s
            ORDER BY updated_at ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (list(statuses), updated_before, limit))
                rows = cur.fetchall()
            return [self._row_to_job(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)
