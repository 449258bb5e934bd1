"""
Runtime context for VisitProof.

The one service object built at startup and passed to every caller: it
owns the shared store, the job queue backend and the verification
repository, so there is no process-wide mutable state anywhere else.
"""

from dataclasses import dataclass
from typing import Optional

from visitproof.config import VisitProofConfig
from visitproof.core.clock import Clock, SystemClock
from visitproof.core.signer import Signer
from visitproof.guard.idempotency import IdempotencyLockManager
from visitproof.guard.ratelimit import RateLimiter
from visitproof.settlement.provider import SettlementProvider, make_provider
from visitproof.settlement.queue import SettlementQueue, make_job_backend
from visitproof.settlement.worker import SettlementWorker
from visitproof.store import SharedStore, make_store
from visitproof.verification.aggregator import (
    VerificationAggregator,
    make_verification_repository,
)
from visitproof.verification.consensus import ConsensusValidator, ScanSession
from visitproof.verification.geofence import GeofenceEvaluator
from visitproof.verification.location import LocationVerifier
from visitproof.verification.receipt import ReceiptVerifier
from visitproof.verification.scan import ScanVerifier
from visitproof.verification.status import EligibilityStatus


@dataclass
class RuntimeContext:
    """Wired VisitProof services sharing one clock and one store."""

    config:       VisitProofConfig
    clock:        Clock
    store:        SharedStore
    signer:       Signer
    locks:        IdempotencyLockManager
    rate_limiter: RateLimiter
    aggregator:   VerificationAggregator
    queue:        SettlementQueue
    worker:       SettlementWorker
    scanner:      ScanVerifier
    location:     LocationVerifier
    receipts:     ReceiptVerifier
    status:       EligibilityStatus
    consensus:    ConsensusValidator

    @classmethod
    def from_config(
        cls,
        config:   VisitProofConfig,
        clock:    Optional[Clock] = None,
        provider: Optional[SettlementProvider] = None,
    ) -> "RuntimeContext":
        """Build every service. Raises ConfigurationError on missing secrets."""
        config.require_secrets()
        clock = clock or SystemClock()

        store = make_store(config.store_dsn, clock)
        signer = Signer(
            config.sign_secret,
            webhook_secret= config.webhook_secret,
            namespace=      config.qr.namespace,
            validity_ms=    config.qr.expiry_ms,
            clock=          clock,
        )
        locks = IdempotencyLockManager(store, clock=clock)
        rate_limiter = RateLimiter(store, config.rate_limit_table())
        aggregator = VerificationAggregator(
            make_verification_repository(config.store_dsn),
            receipt_required= config.receipt_required,
            clock=            clock,
        )
        queue = SettlementQueue(
            make_job_backend(config.store_dsn),
            clock=       clock,
            drain_order= config.settlement.drain_order,
        )
        worker = SettlementWorker(
            queue,
            locks,
            signer,
            provider or make_provider(config.settlement.provider),
            clock=       clock,
            lock_ttl_ms= config.settlement.lock_ttl_ms,
            batch_limit= config.settlement.batch_limit,
        )
        geofence = GeofenceEvaluator()
        scanner = ScanVerifier(
            signer,
            aggregator,
            config.places,
            queue=             queue,
            geofence=          geofence,
            require_signature= config.qr.require_signature,
            receipt_required=  config.receipt_required,
            reward_amount=     config.settlement.reward_amount,
            currency=          config.settlement.currency,
            max_attempts=      config.settlement.max_attempts,
            clock=             clock,
            rate_limiter=      rate_limiter,
        )
        location = LocationVerifier(
            aggregator,
            config.places,
            geofence=     geofence,
            trigger=      scanner.trigger,
            rate_limiter= rate_limiter,
        )
        receipts = ReceiptVerifier(
            aggregator,
            config.places,
            trigger=      scanner.trigger,
            rate_limiter= rate_limiter,
        )
        status = EligibilityStatus(aggregator, rate_limiter=rate_limiter)
        consensus = ConsensusValidator(
            threshold=   config.consensus.threshold,
            window_ms=   config.consensus.window_ms,
            buffer_size= config.consensus.buffer_size,
        )
        return cls(
            config=       config,
            clock=        clock,
            store=        store,
            signer=       signer,
            locks=        locks,
            rate_limiter= rate_limiter,
            aggregator=   aggregator,
            queue=        queue,
            worker=       worker,
            scanner=      scanner,
            location=     location,
            receipts=     receipts,
            status=       status,
            consensus=    consensus,
        )

    def new_scan_session(self, error_rate: float = 0.0) -> ScanSession:
        return ScanSession(self.consensus, error_rate=error_rate)

    def close(self) -> None:
        self.store.close()

    def __repr__(self) -> str:
        return (
            f"RuntimeContext("
            f"store={self.config.store_dsn!r}, "
            f"places={len(self.config.places)})"
        )
