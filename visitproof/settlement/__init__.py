"""
VisitProof Settlement

Jobs enter the queue on the first eligible verification of a
(user, place) pair and leave it settled, or dead-lettered after
max_attempts failed captures. Operators requeue from the DLQ.
"""

from visitproof.settlement.provider import MockProvider, SettlementProvider, make_provider
from visitproof.settlement.queue import (
    InMemoryJobBackend,
    SQLiteJobBackend,
    SettlementQueue,
    compute_backoff,
    make_job_backend,
    new_settlement_job,
)
from visitproof.settlement.worker import SettlementWorker

__all__ = [
    "InMemoryJobBackend",
    "MockProvider",
    "SQLiteJobBackend",
    "SettlementProvider",
    "SettlementQueue",
    "SettlementWorker",
    "compute_backoff",
    "make_job_backend",
    "make_provider",
    "new_settlement_job",
]
