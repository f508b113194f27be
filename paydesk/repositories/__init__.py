from paydesk.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from paydesk.repositories.cases import InMemoryCasesRepository, PostgresCasesRepository
from paydesk.repositories.outbox import InMemoryOutboxRepository, PostgresOutboxRepository
from paydesk.repositories.payments import InMemoryPaymentsRepository, PostgresPaymentsRepository

__all__ = [
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "InMemoryCasesRepository",
    "PostgresCasesRepository",
    "InMemoryOutboxRepository",
    "PostgresOutboxRepository",
    "InMemoryPaymentsRepository",
    "PostgresPaymentsRepository",
]
