from assessflow.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from assessflow.repositories.jobs import InMemoryJobsRepository, PostgresJobsRepository
from assessflow.repositories.results import InMemoryResultsRepository, PostgresResultsRepository

__all__ = [
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "InMemoryJobsRepository",
    "PostgresJobsRepository",
    "InMemoryResultsRepository",
    "PostgresResultsRepository",
]
