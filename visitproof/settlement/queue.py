"""
Settlement job queue with exponential backoff and a dead-letter queue.

Per-job state machine:

    READY ──pop_ready──▶ IN_FLIGHT ──success──▶ (removed)
                            │
                            ├─failure, attempts < max──▶ RETRYING ──due──▶ READY
                            │
                            └─failure, attempts == max─▶ DEAD_LETTERED
                                                           │
                                        requeue_from_dlq ──┘ (attempts=0, due now,
                                                              refused if the key is pending)

"Due" is queried, never pushed: a retrying job simply carries a later
next_attempt_at_ms and pop_ready skips it until the clock reaches it.

Drain order among ready jobs is FIFO by default. drain_order="lifo"
drains the most recently enqueued ready jobs first.

Backends:
    InMemoryJobBackend   single owning process
    SQLiteJobBackend     durable, shareable across processes on one host
"""

import json
import logging
import threading
import uuid
from typing import Dict, List, Optional

from visitproof.core.clock import Clock, SystemClock
from visitproof.core.exceptions import QueueError
from visitproof.core.models import (
    DeadLetter,
    JobKind,
    JobState,
    SettlementJob,
    SettlementPayload,
)
from visitproof.store import sqlite_path
from visitproof.store.sqlite import SQLiteDatabase


logger = logging.getLogger(__name__)

BACKOFF_BASE_MS     = 1000
BACKOFF_CAP_MS      = 60_000
DEFAULT_MAX_ATTEMPTS = 5
DRAIN_ORDERS        = ("fifo", "lifo")


def compute_backoff(attempts: int) -> int:
    """min(60s, 2^attempts * 1s), in milliseconds."""
    if attempts < 0:
        raise ValueError(f"attempts must be non-negative, got {attempts}")
    # 2 ** attempts is never computed for large attempt counts
    if attempts >= 16:
        return BACKOFF_CAP_MS
    return min(BACKOFF_CAP_MS, (2 ** attempts) * BACKOFF_BASE_MS)


def _reset_ready(job: SettlementJob, now_ms: int) -> None:
    job.attempts           = 0
    job.next_attempt_at_ms = now_ms
    job.state              = JobState.READY
    job.last_error         = None


def new_settlement_job(
    payload:      SettlementPayload,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    job_id:       Optional[str] = None,
) -> SettlementJob:
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
    return SettlementJob(
        job_id=       job_id or f"job-{uuid.uuid4()}",
        payload=      payload,
        max_attempts= max_attempts,
    )


# ─────────────────────────────────────────────────────────────
# Backends
# ─────────────────────────────────────────────────────────────

class JobBackend:
    """Ordered pending list and dead-letter list per job kind."""

    def push(self, job: SettlementJob, unique: bool = False) -> bool:
        """
        Append job. With unique=True the push is refused (False) when a
        pending job of the same kind carries the same idempotency key.
        """
        raise NotImplementedError

    def take_ready(self, kind: JobKind, now_ms: int, limit: int, order: str) -> List[SettlementJob]:
        """Atomically remove and return up to limit due jobs."""
        raise NotImplementedError

    def push_dead(self, dead: DeadLetter) -> None:
        raise NotImplementedError

    def list_dead(self, limit: int, offset: int) -> List[DeadLetter]:
        """Most recent first."""
        raise NotImplementedError

    def requeue_dead(self, index: int, now_ms: int) -> Optional[SettlementJob]:
        """
        Atomically move the entry at index of the most-recent-first listing
        back to the pending list as READY and due at now_ms.

        Returns None, leaving the dead letter in place, when there is no
        such entry or a pending job of the same kind already carries its
        idempotency key.
        """
        raise NotImplementedError

    def purge_dead(self) -> int:
        raise NotImplementedError

    def counts(self, kind: JobKind, now_ms: int) -> Dict[str, int]:
        raise NotImplementedError


class InMemoryJobBackend(JobBackend):

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: List[SettlementJob] = []
        self._dead:    List[DeadLetter]    = []

    def _is_pending(self, job: SettlementJob) -> bool:
        return any(
            j.kind == job.kind
            and j.payload.idempotency_key == job.payload.idempotency_key
            for j in self._pending
        )

    def push(self, job, unique=False):
        with self._lock:
            if unique and self._is_pending(job):
                return False
            self._pending.append(job)
            return True

    def take_ready(self, kind, now_ms, limit, order):
        with self._lock:
            indices = range(len(self._pending))
            if order == "lifo":
                indices = reversed(indices)
            picked_idx = []
            for i in indices:
                if len(picked_idx) >= limit:
                    break
                job = self._pending[i]
                if job.kind == kind and job.next_attempt_at_ms <= now_ms:
                    picked_idx.append(i)
            picked = [self._pending[i] for i in picked_idx]
            for i in sorted(picked_idx, reverse=True):
                del self._pending[i]
            return picked

    def push_dead(self, dead):
        with self._lock:
            self._dead.append(dead)

    def list_dead(self, limit, offset):
        with self._lock:
            newest_first = list(reversed(self._dead))
            return newest_first[offset:offset + limit]

    def requeue_dead(self, index, now_ms):
        with self._lock:
            if index < 0 or index >= len(self._dead):
                return None
            position = len(self._dead) - 1 - index
            job = self._dead[position].job
            if self._is_pending(job):
                return None
            del self._dead[position]
            _reset_ready(job, now_ms)
            self._pending.append(job)
            return job

    def purge_dead(self):
        with self._lock:
            n = len(self._dead)
            self._dead.clear()
            return n

    def counts(self, kind, now_ms):
        with self._lock:
            mine = [j for j in self._pending if j.kind == kind]
            ready = sum(1 for j in mine if j.next_attempt_at_ms <= now_ms)
            return {
                "ready":   ready,
                "delayed": len(mine) - ready,
                "dlq":     sum(1 for d in self._dead if d.job.kind == kind),
            }


_QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    seq        INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id     TEXT NOT NULL,
    kind       TEXT NOT NULL,
    idem_key   TEXT NOT NULL,
    next_at    INTEGER NOT NULL,
    body       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS jobs_due ON jobs (kind, next_at);
CREATE TABLE IF NOT EXISTS dead_letters (
    seq        INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id     TEXT NOT NULL,
    kind       TEXT NOT NULL,
    body       TEXT NOT NULL
);
"""


class SQLiteJobBackend(JobBackend):

    def __init__(self, path: str) -> None:
        self.db = SQLiteDatabase(path, _QUEUE_SCHEMA)

    @staticmethod
    def _is_pending(conn, job: SettlementJob) -> bool:
        row = conn.execute(
            "SELECT 1 FROM jobs WHERE kind = ? AND idem_key = ? LIMIT 1",
            (job.kind.value, job.payload.idempotency_key),
        ).fetchone()
        return row is not None

    @staticmethod
    def _insert(conn, job: SettlementJob) -> None:
        conn.execute(
            "INSERT INTO jobs (job_id, kind, idem_key, next_at, body) VALUES (?, ?, ?, ?, ?)",
            (
                job.job_id, job.kind.value, job.payload.idempotency_key,
                job.next_attempt_at_ms, json.dumps(job.to_dict()),
            ),
        )

    def push(self, job, unique=False):
        with self.db.tx() as conn:
            if unique and self._is_pending(conn, job):
                return False
            self._insert(conn, job)
            return True

    def take_ready(self, kind, now_ms, limit, order):
        direction = "DESC" if order == "lifo" else "ASC"
        with self.db.tx() as conn:
            rows = conn.execute(
                f"SELECT seq, body FROM jobs WHERE kind = ? AND next_at <= ? "
                f"ORDER BY seq {direction} LIMIT ?",
                (kind.value, now_ms, limit),
            ).fetchall()
            conn.executemany(
                "DELETE FROM jobs WHERE seq = ?", [(row["seq"],) for row in rows]
            )
        return [SettlementJob.from_dict(json.loads(row["body"])) for row in rows]

    def push_dead(self, dead):
        with self.db.tx() as conn:
            conn.execute(
                "INSERT INTO dead_letters (job_id, kind, body) VALUES (?, ?, ?)",
                (dead.job.job_id, dead.job.kind.value, json.dumps(dead.to_dict())),
            )

    def list_dead(self, limit, offset):
        with self.db.tx() as conn:
            rows = conn.execute(
                "SELECT body FROM dead_letters ORDER BY seq DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [DeadLetter.from_dict(json.loads(row["body"])) for row in rows]

    def requeue_dead(self, index, now_ms):
        if index < 0:
            return None
        with self.db.tx() as conn:
            row = conn.execute(
                "SELECT seq, body FROM dead_letters ORDER BY seq DESC LIMIT 1 OFFSET ?",
                (index,),
            ).fetchone()
            if row is None:
                return None
            job = DeadLetter.from_dict(json.loads(row["body"])).job
            if self._is_pending(conn, job):
                return None
            conn.execute("DELETE FROM dead_letters WHERE seq = ?", (row["seq"],))
            _reset_ready(job, now_ms)
            self._insert(conn, job)
        return job

    def purge_dead(self):
        with self.db.tx() as conn:
            return conn.execute("DELETE FROM dead_letters").rowcount

    def counts(self, kind, now_ms):
        with self.db.tx() as conn:
            ready = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE kind = ? AND next_at <= ?",
                (kind.value, now_ms),
            ).fetchone()[0]
            total = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE kind = ?", (kind.value,)
            ).fetchone()[0]
            dlq = conn.execute(
                "SELECT COUNT(*) FROM dead_letters WHERE kind = ?", (kind.value,)
            ).fetchone()[0]
        return {"ready": ready, "delayed": total - ready, "dlq": dlq}


def make_job_backend(dsn: Optional[str]) -> JobBackend:
    path = sqlite_path(dsn)
    if path is None:
        return InMemoryJobBackend()
    return SQLiteJobBackend(path)


# ─────────────────────────────────────────────────────────────
# Queue
# ─────────────────────────────────────────────────────────────

class SettlementQueue:

    def __init__(
        self,
        backend:     Optional[JobBackend] = None,
        clock:       Optional[Clock] = None,
        drain_order: str = "fifo",
    ) -> None:
        if drain_order not in DRAIN_ORDERS:
            raise QueueError(
                "Unknown drain order", {"drain_order": drain_order, "valid": DRAIN_ORDERS}
            )
        self.backend     = backend or InMemoryJobBackend()
        self.clock       = clock or SystemClock()
        self.drain_order = drain_order

    def enqueue(self, job: SettlementJob) -> bool:
        """
        Add a job as READY, due now, with attempts reset to 0.
        Returns False if a job with the same idempotency key is already
        pending.
        """
        _reset_ready(job, self.clock.now_ms())
        accepted = self.backend.push(job, unique=True)
        if not accepted:
            logger.info(
                "duplicate settlement enqueue ignored key=%s", job.payload.idempotency_key
            )
        return accepted

    def pop_ready(self, kind: JobKind = JobKind.SETTLEMENT, limit: int = 10) -> List[SettlementJob]:
        if limit <= 0:
            return []
        jobs = self.backend.take_ready(kind, self.clock.now_ms(), limit, self.drain_order)
        for job in jobs:
            job.state = JobState.IN_FLIGHT
        return jobs

    def requeue_backoff(self, job: SettlementJob, error: Optional[str] = None) -> int:
        """Reschedule a failed job. Returns the due time in ms."""
        job.next_attempt_at_ms = self.clock.now_ms() + compute_backoff(job.attempts)
        job.state              = JobState.RETRYING
        job.last_error         = error
        self.backend.push(job)
        return job.next_attempt_at_ms

    def push_dlq(self, job: SettlementJob, error: str) -> DeadLetter:
        job.state      = JobState.DEAD_LETTERED
        job.last_error = error
        dead = DeadLetter(job=job, error=error, dead_at_ms=self.clock.now_ms())
        self.backend.push_dead(dead)
        return dead

    def list_dlq(self, n: int = 50, offset: int = 0) -> List[DeadLetter]:
        """Most recent first. Index i here is the index for requeue_from_dlq."""
        if n <= 0 or offset < 0:
            return []
        return self.backend.list_dead(n, offset)

    def requeue_from_dlq(self, index: int) -> bool:
        """
        Move dead letter index (list_dlq order) back to READY, attempts 0.
        False if there is no such entry or its idempotency key is already
        pending; the dead letter then stays where it is.
        """
        job = self.backend.requeue_dead(index, self.clock.now_ms())
        if job is None:
            logger.info("dead letter %d not requeued", index)
            return False
        logger.info("requeued dead-lettered job %s", job.job_id)
        return True

    def purge_dlq(self) -> int:
        return self.backend.purge_dead()

    def stats(self, kind: JobKind = JobKind.SETTLEMENT) -> Dict[str, int]:
        counts = self.backend.counts(kind, self.clock.now_ms())
        counts["total"] = counts["ready"] + counts["delayed"]
        return counts
