"""
Verification aggregation.

Each (user_id, place_id) pair owns one VerificationRecord with three
flags. record_gps / record_qr / record_receipt upsert only their own
flag, atomically, and never clear a flag that is already True.

    allowed = gps_ok and (qr_ok or receipt_ok)            default
    allowed = gps_ok and qr_ok and receipt_ok             receipt_required

The aggregator decides; it does not enqueue. Every record_* call returns
an EligibilityChange whose became_allowed is True exactly once per pair,
on the call that flips allowed from False to True. Callers enqueue the
settlement job on that signal.
"""

import logging
import threading
from typing import Dict, Optional, Tuple

from visitproof.core.clock import Clock, SystemClock
from visitproof.core.models import Eligibility, EligibilityChange, VerificationRecord
from visitproof.store import sqlite_path
from visitproof.store.sqlite import SQLiteDatabase


logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Repositories
# ─────────────────────────────────────────────────────────────

class VerificationRepository:
    """Persistence for VerificationRecord, keyed uniquely by (user_id, place_id)."""

    def get(self, user_id: str, place_id: str) -> Optional[VerificationRecord]:
        raise NotImplementedError

    def upsert(
        self,
        user_id:    str,
        place_id:   str,
        now_ms:     int,
        gps_ok:     Optional[bool] = None,
        qr_ok:      Optional[bool] = None,
        receipt_ok: Optional[bool] = None,
    ) -> Tuple[VerificationRecord, VerificationRecord]:
        """
        Atomically create-or-merge. Returns (before, after); before is a
        default all-False record when the pair was absent.
        """
        raise NotImplementedError


class InMemoryVerificationRepository(VerificationRepository):

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, str], VerificationRecord] = {}

    def get(self, user_id: str, place_id: str) -> Optional[VerificationRecord]:
        with self._lock:
            return self._records.get((user_id, place_id))

    def upsert(self, user_id, place_id, now_ms, gps_ok=None, qr_ok=None, receipt_ok=None):
        with self._lock:
            before = self._records.get((user_id, place_id)) or VerificationRecord(user_id, place_id)
            after  = before.merged(gps_ok, qr_ok, receipt_ok, now_ms)
            self._records[(user_id, place_id)] = after
            return before, after


_VERIFICATION_SCHEMA = """
CREATE TABLE IF NOT EXISTS verification (
    user_id    TEXT NOT NULL,
    place_id   TEXT NOT NULL,
    gps_ok     INTEGER NOT NULL DEFAULT 0,
    qr_ok      INTEGER NOT NULL DEFAULT 0,
    receipt_ok INTEGER NOT NULL DEFAULT 0,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (user_id, place_id)
);
"""


class SQLiteVerificationRepository(VerificationRepository):

    def __init__(self, path: str) -> None:
        self.db = SQLiteDatabase(path, _VERIFICATION_SCHEMA)

    @staticmethod
    def _row_to_record(row) -> VerificationRecord:
        return VerificationRecord(
            user_id=       row["user_id"],
            place_id=      row["place_id"],
            gps_ok=        bool(row["gps_ok"]),
            qr_ok=         bool(row["qr_ok"]),
            receipt_ok=    bool(row["receipt_ok"]),
            updated_at_ms= int(row["updated_at"]),
        )

    def get(self, user_id: str, place_id: str) -> Optional[VerificationRecord]:
        with self.db.tx() as conn:
            row = conn.execute(
                "SELECT * FROM verification WHERE user_id = ? AND place_id = ?",
                (user_id, place_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def upsert(self, user_id, place_id, now_ms, gps_ok=None, qr_ok=None, receipt_ok=None):
        with self.db.tx() as conn:
            row = conn.execute(
                "SELECT * FROM verification WHERE user_id = ? AND place_id = ?",
                (user_id, place_id),
            ).fetchone()
            before = self._row_to_record(row) if row else VerificationRecord(user_id, place_id)
            after  = before.merged(gps_ok, qr_ok, receipt_ok, now_ms)
            conn.execute(
                """
                INSERT INTO verification
                    (user_id, place_id, gps_ok, qr_ok, receipt_ok, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, place_id) DO UPDATE SET
                    gps_ok = excluded.gps_ok,
                    qr_ok = excluded.qr_ok,
                    receipt_ok = excluded.receipt_ok,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id, place_id,
                    int(after.gps_ok), int(after.qr_ok), int(after.receipt_ok),
                    after.updated_at_ms,
                ),
            )
        return before, after


def make_verification_repository(dsn: Optional[str]) -> VerificationRepository:
    path = sqlite_path(dsn)
    if path is None:
        return InMemoryVerificationRepository()
    return SQLiteVerificationRepository(path)


# ─────────────────────────────────────────────────────────────
# Aggregator
# ─────────────────────────────────────────────────────────────

class VerificationAggregator:

    def __init__(
        self,
        repository:       Optional[VerificationRepository] = None,
        receipt_required: bool = False,
        clock:            Optional[Clock] = None,
    ) -> None:
        self.repository       = repository or InMemoryVerificationRepository()
        self.receipt_required = receipt_required
        self.clock            = clock or SystemClock()

    def _eligibility(self, record: VerificationRecord) -> Eligibility:
        if self.receipt_required:
            second_factor = record.qr_ok and record.receipt_ok
        else:
            second_factor = record.qr_ok or record.receipt_ok
        return Eligibility(
            allowed=    record.gps_ok and second_factor,
            gps_ok=     record.gps_ok,
            qr_ok=      record.qr_ok,
            receipt_ok= record.receipt_ok,
        )

    def _record(self, user_id: str, place_id: str, **flags) -> EligibilityChange:
        before, after = self.repository.upsert(
            user_id, place_id, self.clock.now_ms(), **flags
        )
        change = EligibilityChange(self._eligibility(before), self._eligibility(after))
        if change.became_allowed:
            logger.info("eligibility reached user=%s place=%s", user_id, place_id)
        return change

    def record_gps(self, user_id: str, place_id: str, ok: bool) -> EligibilityChange:
        return self._record(user_id, place_id, gps_ok=ok)

    def record_qr(self, user_id: str, place_id: str, ok: bool) -> EligibilityChange:
        return self._record(user_id, place_id, qr_ok=ok)

    def record_receipt(self, user_id: str, place_id: str, ok: bool) -> EligibilityChange:
        return self._record(user_id, place_id, receipt_ok=ok)

    def record(
        self,
        user_id:    str,
        place_id:   str,
        gps_ok:     Optional[bool] = None,
        qr_ok:      Optional[bool] = None,
        receipt_ok: Optional[bool] = None,
    ) -> EligibilityChange:
        """Record several factors in one atomic upsert."""
        return self._record(
            user_id, place_id, gps_ok=gps_ok, qr_ok=qr_ok, receipt_ok=receipt_ok
        )

    def get_eligibility(self, user_id: str, place_id: str) -> Eligibility:
        record = self.repository.get(user_id, place_id) or VerificationRecord(user_id, place_id)
        return self._eligibility(record)
