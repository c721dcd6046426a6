from __future__ import annotations

import json
import threading
from typing import Any

from assessflow.db.postgres import PostgresTxRunner
from assessflow.repositories.jobs import _validate_identifier

RESULT_COLUMNS: tuple[str, ...] = ("result_id", "user_id", "job_id", "status", "payload", "created_at")


class InMemoryResultsRepository:
    def __init__(self, results: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        self._results = results
        self._lock = lock or threading.RLock()

    def create(self, *, result: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._results[str(result["result_id"])] = dict(result)
            return dict(result)

    def get(self, *, result_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._results.get(result_id)
            return dict(row) if row is not None else None

    def find_by_job_id(self, *, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            matches = [dict(x) for x in self._results.values() if x.get("job_id") == job_id]
        if not matches:
            return None
        matches.sort(key=lambda x: str(x.get("created_at", "")), reverse=True)
        return matches[0]

    def compare_and_set_status(
        self,
        *,
        result_id: str,
        expected_status: str,
        new_status: str,
    ) -> dict[str, Any] | None:
        with self._lock:
            row = self._results.get(result_id)
            if row is None or row.get("status") != expected_status:
                return None
            row["status"] = new_status
            return dict(row)

    def delete(self, *, result_id: str) -> bool:
        with self._lock:
            return self._results.pop(result_id, None) is not None


class PostgresResultsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "assessment_results") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)
        self._select_cols = ", ".join(RESULT_COLUMNS)

    @staticmethod
    def _row_to_result(row: Any) -> dict[str, Any]:
        result = dict(zip(RESULT_COLUMNS, row))
        if not isinstance(result.get("payload"), dict):
            result["payload"] = {}
        return result

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return self._row_to_result(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def create(self, *, result: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} ({self._select_cols})
            VALUES (%s, %s, %s, %s, %s::jsonb, %s)
        """
        params = (
            result["result_id"],
            result["user_id"],
            result.get("job_id"),
            result["status"],
            json.dumps(result.get("payload", {}), ensure_ascii=True, sort_keys=True),
            result["created_at"],
        )

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            return dict(result)

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, result_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_cols}
            FROM {self._table_name}
            WHERE result_id = %s
            LIMIT 1
        """
        return self._fetch_one(sql, (result_id,))

    def find_by_job_id(self, *, job_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._select_cols}
            FROM {self._table_name}
            WHERE job_id = %s
            ORDER BY created_at DESC
            LIMIT 1
        """
        return self._fetch_one(sql, (job_id,))

    def compare_and_set_status(
        self,
        *,
        result_id: str,
        expected_status: str,
        new_status: str,
    ) -> dict[str, Any] | None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s
            WHERE result_id = %s AND status = %s
            RETURNING {self._select_cols}
        """
        return self._fetch_one(sql, (new_status, result_id, expected_status))

    def delete(self, *, result_id: str) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE result_id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (result_id,))
                return int(cur.rowcount or 0) > 0

        return self._tx_runner.run_in_tx(fn=_op)
