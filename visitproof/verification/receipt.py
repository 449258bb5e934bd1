"""
Receipt verification flow.

    client throttle (receipt_verify, 5 per minute by default)   RATE_LIMITED
    missing receipt id or unknown place                         MALFORMED

Reading the receipt itself happens upstream; this flow takes an already
verified receipt id as evidence and records the receipt factor. The
upsert is idempotent, so resubmitting the same receipt changes nothing
and never enqueues a second job.
"""

from typing import Iterable, Optional

from visitproof.core.models import Place, VerifyFailure
from visitproof.guard.ratelimit import RateLimiter
from visitproof.verification.aggregator import VerificationAggregator
from visitproof.verification.flow import (
    RateGate,
    SettlementTrigger,
    VerifyOutcome,
    reject,
)


RECEIPT_RATE_LIMIT = "receipt_verify"


class ReceiptVerifier:

    def __init__(
        self,
        aggregator:   VerificationAggregator,
        places:       Iterable[Place],
        trigger:      Optional[SettlementTrigger] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.aggregator = aggregator
        self.places     = {p.place_id: p for p in places}
        self.trigger    = trigger or SettlementTrigger(None)
        self.gate       = RateGate(rate_limiter, RECEIPT_RATE_LIMIT)

    def verify(
        self,
        user_id:    str,
        place_id:   str,
        receipt_id: str,
        mission_id: Optional[str] = None,
        amount:     Optional[int] = None,
        client_id:  Optional[str] = None,
    ) -> VerifyOutcome:
        ids = {"place_id": place_id, "mission_id": mission_id}

        rate = self.gate.check(client_id or user_id)
        if rate is not None and not rate.allowed:
            return reject("receipt", VerifyFailure.RATE_LIMITED, rate_limit=rate, **ids)

        if not receipt_id or place_id not in self.places:
            return reject("receipt", VerifyFailure.MALFORMED, rate_limit=rate, **ids)

        change = self.aggregator.record_receipt(user_id, place_id, True)
        return VerifyOutcome(
            ok=          True,
            place=       self.places[place_id],
            eligibility= change.after,
            job_id=      self.trigger.fire(change, user_id, place_id, mission_id, amount),
            rate_limit=  rate,
            **ids,
        )
