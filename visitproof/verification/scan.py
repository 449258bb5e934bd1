"""
Scan verification flow.

One submitted scan is checked factor by factor, stopping at the first
failure so the caller can say which factor rejected it:

    client throttle (scan_verify)   RATE_LIMITED
    token format / namespace        MALFORMED
    token age                       EXPIRED
    token signature                 SIGNATURE
    place lookup                    MALFORMED   (token names an unknown place)
    location vs geofence            GEOFENCE
    receipt policy                  RULE

On success the GPS and QR factors (and the receipt factor, when receipt
evidence came with the scan) are recorded in one upsert. If that upsert
is the one that makes the pair eligible, exactly one settlement job is
enqueued under the key "{user_id}:{place_id}:{mission_id}".
"""

from typing import Iterable, Optional

from visitproof.core.clock import Clock, SystemClock
from visitproof.core.models import LocationSample, Place, VerifyFailure
from visitproof.core.signer import Signer
from visitproof.guard.ratelimit import RateLimiter
from visitproof.settlement.queue import DEFAULT_MAX_ATTEMPTS, SettlementQueue
from visitproof.verification.aggregator import VerificationAggregator
from visitproof.verification.flow import (
    DEFAULT_CURRENCY,
    DEFAULT_REWARD_AMOUNT,
    RateGate,
    SettlementTrigger,
    VerifyOutcome,
    idempotency_key,
    reject,
)
from visitproof.verification.geofence import GeofenceEvaluator


SCAN_RATE_LIMIT = "scan_verify"

__all__ = ["ScanVerifier", "VerifyOutcome", "idempotency_key"]


class ScanVerifier:

    def __init__(
        self,
        signer:            Signer,
        aggregator:        VerificationAggregator,
        places:            Iterable[Place],
        queue:             Optional[SettlementQueue] = None,
        geofence:          Optional[GeofenceEvaluator] = None,
        require_signature: bool = True,
        receipt_required:  bool = False,
        reward_amount:     int  = DEFAULT_REWARD_AMOUNT,
        currency:          str  = DEFAULT_CURRENCY,
        max_attempts:      int  = DEFAULT_MAX_ATTEMPTS,
        clock:             Optional[Clock] = None,
        rate_limiter:      Optional[RateLimiter] = None,
    ) -> None:
        self.signer            = signer
        self.aggregator        = aggregator
        self.places            = {p.place_id: p for p in places}
        self.geofence          = geofence or GeofenceEvaluator()
        self.require_signature = require_signature
        self.receipt_required  = receipt_required
        self.clock             = clock or SystemClock()
        self.gate              = RateGate(rate_limiter, SCAN_RATE_LIMIT)
        self.trigger           = SettlementTrigger(
            queue,
            reward_amount= reward_amount,
            currency=      currency,
            max_attempts=  max_attempts,
        )

    def verify(
        self,
        raw:        str,
        user_id:    str,
        location:   LocationSample,
        receipt_id: Optional[str] = None,
        amount:     Optional[int] = None,
        client_id:  Optional[str] = None,
    ) -> VerifyOutcome:
        """
        client_id identifies the caller for throttling (an IP address at
        the boundary); the user id is used when it is not given.
        """
        rate = self.gate.check(client_id or user_id)
        if rate is not None and not rate.allowed:
            return reject("scan", VerifyFailure.RATE_LIMITED, rate_limit=rate)

        check = self.signer.check(
            raw, now_ms=self.clock.now_ms(), require_signature=self.require_signature
        )
        if not check.valid:
            ids = {}
            if check.token is not None:
                ids = {"place_id": check.token.place_id, "mission_id": check.token.mission_id}
            return reject("scan", check.reason, rate_limit=rate, **ids)

        token = check.token
        ids = {"place_id": token.place_id, "mission_id": token.mission_id}

        place = self.places.get(token.place_id)
        if place is None:
            return reject("scan", VerifyFailure.MALFORMED, rate_limit=rate, **ids)

        fence_result = self.geofence.evaluate(location, place.fence)
        if not fence_result.passed:
            return reject(
                "scan", VerifyFailure.GEOFENCE,
                place=place, geofence=fence_result, rate_limit=rate, **ids
            )

        has_receipt = bool(receipt_id)
        if self.receipt_required and not has_receipt:
            return reject(
                "scan", VerifyFailure.RULE,
                place=place, geofence=fence_result, rate_limit=rate, **ids
            )

        change = self.aggregator.record(
            user_id, token.place_id,
            gps_ok=     True,
            qr_ok=      True,
            receipt_ok= True if has_receipt else None,
        )
        job_id = self.trigger.fire(change, user_id, token.place_id, token.mission_id, amount)

        return VerifyOutcome(
            ok=          True,
            place=       place,
            geofence=    fence_result,
            eligibility= change.after,
            job_id=      job_id,
            rate_limit=  rate,
            **ids,
        )
