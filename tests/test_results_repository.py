from __future__ import annotations

import pytest

from assessflow.db.postgres import PostgresTxRunner
from assessflow.errors import TransportError
from assessflow.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from assessflow.repositories.results import InMemoryResultsRepository, PostgresResultsRepository


def _result(**overrides) -> dict:
    result = {
        "result_id": "res_1",
        "user_id": "user_a",
        "job_id": "job_1",
        "status": "completed",
        "payload": {"archetype": "The Analyst"},
        "created_at": "2026-01-01T00:00:00+00:00",
    }
    result.update(overrides)
    return result


class RecordingRunner:
    def __init__(self, rows: list | None = None, rowcount: int = 0) -> None:
        self.statements: list[tuple[str, tuple]] = []
        self.rows = rows or []
        self.rowcount = rowcount

    def run_in_tx(self, *, fn):
        runner = self

        class Cursor:
            rowcount = runner.rowcount

            def __enter__(self):
                return self

            def __exit__(self, exc_type, exc, tb):
                return False

            def execute(self, query, params=None):
                runner.statements.append((" ".join(query.split()), params))

            def fetchone(self):
                return runner.rows[0] if runner.rows else None

            def fetchall(self):
                return list(runner.rows)

        class Connection:
            def cursor(self):
                return Cursor()

        return fn(Connection())


def test_inmemory_find_by_job_id_returns_newest():
    repo = InMemoryResultsRepository({})
    repo.create(result=_result(result_id="res_old", created_at="2026-01-01T00:00:00+00:00"))
    repo.create(result=_result(result_id="res_new", created_at="2026-01-02T00:00:00+00:00"))
    assert repo.find_by_job_id(job_id="job_1")["result_id"] == "res_new"
    assert repo.find_by_job_id(job_id="job_missing") is None


def test_inmemory_status_compare_and_set():
    repo = InMemoryResultsRepository({})
    repo.create(result=_result())
    assert repo.compare_and_set_status(result_id="res_1", expected_status="failed", new_status="completed") is None
    assert repo.compare_and_set_status(result_id="res_1", expected_status="completed", new_status="failed")["status"] == "failed"
    assert repo.delete(result_id="res_1") is True
    assert repo.delete(result_id="res_1") is False


def test_postgres_results_create_serializes_payload():
    runner = RecordingRunner()
    repo = PostgresResultsRepository(tx_runner=runner, table_name="results")
    repo.create(result=_result())
    sql, params = runner.statements[0]
    assert sql.startswith("INSERT INTO results (result_id, user_id, job_id, status, payload, created_at)")
    assert params[4] == '{"archetype": "The Analyst"}'


def test_postgres_results_status_update_is_compare_and_set():
    row = ("res_1", "user_a", "job_1", "failed", {"error_code": "AI_TIMEOUT"}, "2026-01-01T00:00:00+00:00")
    runner = RecordingRunner(rows=[row])
    repo = PostgresResultsRepository(tx_runner=runner, table_name="results")
    saved = repo.compare_and_set_status(result_id="res_1", expected_status="completed", new_status="failed")
    assert saved["status"] == "failed"
    assert saved["payload"] == {"error_code": "AI_TIMEOUT"}
    sql, params = runner.statements[0]
    assert "WHERE result_id = %s AND status = %s" in sql
    assert params == ("failed", "res_1", "completed")


def test_postgres_results_delete_reports_rowcount():
    repo = PostgresResultsRepository(tx_runner=RecordingRunner(rowcount=1), table_name="results")
    assert repo.delete(result_id="res_1") is True
    repo = PostgresResultsRepository(tx_runner=RecordingRunner(rowcount=0), table_name="results")
    assert repo.delete(result_id="res_1") is False


def test_audit_logs_filter_by_action():
    repo = InMemoryAuditLogsRepository([])
    repo.append(log={"audit_id": "a1", "action": "dlq_message_purged", "subject_id": "msg_1"})
    repo.append(log={"audit_id": "a2", "action": "job_cascade_deleted", "subject_id": "job_1"})
    assert [x["audit_id"] for x in repo.list_by_action(action="dlq_message_purged")] == ["a1"]
    assert len(repo.list_by_action()) == 2


def test_postgres_audit_logs_store_payload_as_jsonb():
    runner = RecordingRunner()
    repo = PostgresAuditLogsRepository(tx_runner=runner, table_name="audit")
    repo.append(log={"audit_id": "a1", "action": "x", "subject_id": "s", "occurred_at": "t", "payload": {}})
    sql, params = runner.statements[0]
    assert "ON CONFLICT(audit_id) DO NOTHING" in sql
    assert params[:4] == ("a1", "x", "s", "t")


def test_tx_runner_wraps_operational_errors_as_transport(monkeypatch):
    class FakeOperationalError(Exception):
        pass

    class FakePsycopg:
        OperationalError = FakeOperationalError

        @staticmethod
        def connect(_dsn):
            raise FakeOperationalError("connection refused")

    monkeypatch.setattr("assessflow.db.postgres._import_psycopg", lambda: FakePsycopg)
    runner = PostgresTxRunner("postgresql://localhost/assessflow")
    with pytest.raises(TransportError, match="postgres unavailable"):
        runner.run_in_tx(fn=lambda conn: None)


def test_tx_runner_requires_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        PostgresTxRunner("  ")
