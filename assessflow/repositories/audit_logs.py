from __future__ import annotations

import json
from typing import Any

from assessflow.db.postgres import PostgresTxRunner
from assessflow.repositories.jobs import _validate_identifier


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]]) -> None:
        self._audit_logs = audit_logs

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        self._audit_logs.append(item)
        return item

    def list_by_action(self, *, action: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._audit_logs if action is None or x.get("action") == action]
        return rows[-limit:]


class PostgresAuditLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "assessment_audit_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, action, subject_id, occurred_at, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(audit_id) DO NOTHING
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        item.get("action"),
                        item.get("subject_id"),
                        item.get("occurred_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def list_by_action(self, *, action: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        if action is None:
            sql = f"SELECT payload FROM {self._table_name} ORDER BY occurred_at DESC LIMIT %s"
            params: tuple[Any, ...] = (limit,)
        else:
            sql = f"SELECT payload FROM {self._table_name} WHERE action = %s ORDER BY occurred_at DESC LIMIT %s"
            params = (action, limit)

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            out = [row[0] for row in rows if isinstance(row[0], dict)]
            out.reverse()
            return out

        return self._tx_runner.run_in_tx(fn=_op)
