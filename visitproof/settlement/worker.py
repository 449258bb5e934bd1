"""
Settlement worker.

One run_once() drains up to batch_limit ready jobs. Per job:

    acquire lease settle:{idempotency_key}
        not acquired  → SKIPPED (the holder is assumed to be making progress)
    provider.capture(payload)
        ok            → sign event, emit → SETTLED
        raises        → attempts += 1
                        attempts <  max → requeue with backoff → RETRYING
                        attempts >= max → dead-letter          → DEAD_LETTERED
    release lease (always)

A failing job never stops the batch. A failing event sink is logged and
the job still counts as SETTLED, since the payment was already captured.
"""

import logging
from typing import Callable, List, Optional

from visitproof.core.clock import Clock, SystemClock
from visitproof.core.models import (
    JobKind,
    JobOutcome,
    JobOutcomeStatus,
    SettlementEvent,
    SettlementJob,
)
from visitproof.core.signer import Signer
from visitproof.guard.idempotency import DEFAULT_LOCK_TTL_MS, IdempotencyLockManager
from visitproof.settlement.provider import SettlementProvider
from visitproof.settlement.queue import SettlementQueue


logger = logging.getLogger(__name__)

SETTLE_LOCK_PREFIX = "settle:"
DEFAULT_BATCH_LIMIT = 10


class SettlementWorker:

    def __init__(
        self,
        queue:       SettlementQueue,
        locks:       IdempotencyLockManager,
        signer:      Signer,
        provider:    SettlementProvider,
        clock:       Optional[Clock] = None,
        lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        on_event:    Optional[Callable[[SettlementEvent], None]] = None,
    ) -> None:
        self.queue       = queue
        self.locks       = locks
        self.signer      = signer
        self.provider    = provider
        self.clock       = clock or queue.clock or SystemClock()
        self.lock_ttl_ms = lock_ttl_ms
        self.batch_limit = batch_limit
        self.on_event    = on_event

    def run_once(
        self,
        kind:  JobKind = JobKind.SETTLEMENT,
        limit: Optional[int] = None,
    ) -> List[JobOutcome]:
        jobs = self.queue.pop_ready(kind, self.batch_limit if limit is None else limit)
        outcomes = []
        for job in jobs:
            try:
                outcomes.append(self.process(job))
            except Exception as exc:
                logger.exception("job %s failed outside its attempt", job.job_id)
                outcomes.append(self._fail(job, str(exc) or exc.__class__.__name__))
        return outcomes

    def process(self, job: SettlementJob) -> JobOutcome:
        lock_key = f"{SETTLE_LOCK_PREFIX}{job.payload.idempotency_key}"
        lease = self.locks.acquire(lock_key, self.lock_ttl_ms)
        if lease is None:
            logger.info("job %s skipped, %s is held", job.job_id, lock_key)
            return JobOutcome(
                job_id=     job.job_id,
                mission_id= job.payload.mission_id,
                status=     JobOutcomeStatus.SKIPPED,
                attempts=   job.attempts,
            )
        try:
            return self._attempt(job)
        finally:
            self.locks.release(lease)

    def _attempt(self, job: SettlementJob) -> JobOutcome:
        payload = job.payload
        try:
            payment_id = self.provider.capture(payload)
            event = self.signer.sign_event(SettlementEvent(
                provider=            self.provider.name,
                mission_id=          payload.mission_id,
                external_payment_id= payment_id,
                amount=              payload.amount,
                currency=            payload.currency,
                ts=                  self.clock.now_ms(),
            ))
        except Exception as exc:
            return self._fail(job, str(exc) or exc.__class__.__name__)

        # the payment is captured; a failing sink must not requeue it
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception:
                logger.exception(
                    "event sink failed for job=%s mission=%s", job.job_id, payload.mission_id
                )
        logger.info(
            "settlement captured job=%s mission=%s payment=%s",
            job.job_id, payload.mission_id, payment_id,
        )
        return JobOutcome(
            job_id=     job.job_id,
            mission_id= payload.mission_id,
            status=     JobOutcomeStatus.SETTLED,
            attempts=   job.attempts,
            event=      event,
        )

    def _fail(self, job: SettlementJob, error: str) -> JobOutcome:
        job.attempts += 1
        if job.attempts < job.max_attempts:
            retry_at = self.queue.requeue_backoff(job, error)
            logger.info(
                "job %s attempt %d/%d failed, retry at %d: %s",
                job.job_id, job.attempts, job.max_attempts, retry_at, error,
            )
            return JobOutcome(
                job_id=      job.job_id,
                mission_id=  job.payload.mission_id,
                status=      JobOutcomeStatus.RETRYING,
                attempts=    job.attempts,
                retry_at_ms= retry_at,
                error=       error,
            )

        self.queue.push_dlq(job, error)
        logger.warning(
            "job %s dead-lettered after %d attempts: %s", job.job_id, job.attempts, error
        )
        return JobOutcome(
            job_id=     job.job_id,
            mission_id= job.payload.mission_id,
            status=     JobOutcomeStatus.DEAD_LETTERED,
            attempts=   job.attempts,
            error=      error,
        )
