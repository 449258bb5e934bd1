"""
Location verification flow.

    client throttle (verify_location)   RATE_LIMITED
    place lookup                        MALFORMED
    location vs geofence                GEOFENCE

A passing sample records the GPS factor for (user_id, place_id). A
failing one records nothing; flags never regress, so a later miss cannot
undo an earlier hit.

The GPS factor alone never makes a pair eligible, but with a QR or
receipt factor already on file it can. When the caller knows the
mission, that transition enqueues the settlement job here.
"""

import logging
from typing import Iterable, Optional

from visitproof.core.models import LocationSample, Place, VerifyFailure
from visitproof.guard.ratelimit import RateLimiter
from visitproof.verification.aggregator import VerificationAggregator
from visitproof.verification.flow import (
    RateGate,
    SettlementTrigger,
    VerifyOutcome,
    reject,
)
from visitproof.verification.geofence import GeofenceEvaluator


logger = logging.getLogger(__name__)

LOCATION_RATE_LIMIT = "verify_location"


class LocationVerifier:

    def __init__(
        self,
        aggregator:   VerificationAggregator,
        places:       Iterable[Place],
        geofence:     Optional[GeofenceEvaluator] = None,
        trigger:      Optional[SettlementTrigger] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.aggregator = aggregator
        self.places     = {p.place_id: p for p in places}
        self.geofence   = geofence or GeofenceEvaluator()
        self.trigger    = trigger or SettlementTrigger(None)
        self.gate       = RateGate(rate_limiter, LOCATION_RATE_LIMIT)

    def verify(
        self,
        user_id:    str,
        place_id:   str,
        sample:     LocationSample,
        mission_id: Optional[str] = None,
        client_id:  Optional[str] = None,
    ) -> VerifyOutcome:
        rate = self.gate.check(client_id or user_id)
        if rate is not None and not rate.allowed:
            return reject("location", VerifyFailure.RATE_LIMITED, place_id=place_id, rate_limit=rate)

        place = self.places.get(place_id)
        if place is None:
            return reject("location", VerifyFailure.MALFORMED, place_id=place_id, rate_limit=rate)

        fence_result = self.geofence.evaluate(sample, place.fence)
        if not fence_result.passed:
            return reject(
                "location", VerifyFailure.GEOFENCE,
                place_id=place_id, place=place, geofence=fence_result, rate_limit=rate,
            )

        change = self.aggregator.record_gps(user_id, place_id, True)
        logger.info(
            "gps verified user=%s place=%s distance=%.1f",
            user_id, place_id, fence_result.distance_meters,
        )
        return VerifyOutcome(
            ok=          True,
            place_id=    place_id,
            mission_id=  mission_id,
            place=       place,
            geofence=    fence_result,
            eligibility= change.after,
            job_id=      self.trigger.fire(change, user_id, place_id, mission_id),
            rate_limit=  rate,
        )
