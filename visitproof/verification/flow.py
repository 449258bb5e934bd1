"""
Pieces shared by the verification flows (scan, location, receipt,
eligibility status):

    VerifyOutcome       result of one flow call, with the failing factor
    RateGate            per-client throttle in front of a flow
    SettlementTrigger   enqueues one settlement job when a pair first
                        becomes eligible

A flow that is throttled returns reason RATE_LIMITED and carries the
RateLimitResult so the boundary layer can answer with
RateLimiter.headers(outcome.rate_limit).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from visitproof.core.models import (
    Eligibility,
    EligibilityChange,
    GeofenceResult,
    Place,
    RateLimitResult,
    SettlementPayload,
    VerifyFailure,
)
from visitproof.guard.ratelimit import RateLimiter
from visitproof.settlement.queue import (
    DEFAULT_MAX_ATTEMPTS,
    SettlementQueue,
    new_settlement_job,
)


logger = logging.getLogger(__name__)

DEFAULT_REWARD_AMOUNT = 1000
DEFAULT_CURRENCY      = "KRW"


@dataclass(frozen=True)
class VerifyOutcome:
    ok:          bool
    reason:      Optional[VerifyFailure] = None
    place_id:    Optional[str] = None
    mission_id:  Optional[str] = None
    place:       Optional[Place] = None
    geofence:    Optional[GeofenceResult] = None
    eligibility: Optional[Eligibility] = None
    job_id:      Optional[str] = None
    rate_limit:  Optional[RateLimitResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.ok}
        if self.reason is not None:
            data["reason"] = self.reason.value
        if self.place_id is not None:
            data["placeId"] = self.place_id
        if self.mission_id is not None:
            data["missionId"] = self.mission_id
        if self.geofence is not None and self.place is not None:
            data["geofence"] = {
                "center":   {"lat": self.place.fence.center.lat, "lng": self.place.fence.center.lng},
                "radius":   self.place.fence.radius_meters,
                "distance": round(self.geofence.distance_meters, 1),
            }
        if self.eligibility is not None:
            data["eligibility"] = self.eligibility.to_dict()
        if self.job_id is not None:
            data["jobId"] = self.job_id
        if self.reason == VerifyFailure.RATE_LIMITED and self.rate_limit is not None:
            data["retryAfter"] = self.rate_limit.reset_seconds
        return data


def idempotency_key(user_id: str, place_id: str, mission_id: str) -> str:
    return f"{user_id}:{place_id}:{mission_id}"


def reject(flow: str, reason: VerifyFailure, **fields) -> VerifyOutcome:
    logger.info(
        "%s rejected reason=%s place=%s mission=%s",
        flow, reason.value, fields.get("place_id"), fields.get("mission_id"),
    )
    return VerifyOutcome(ok=False, reason=reason, **fields)


class RateGate:
    """
    Counts one request for a named policy. Without a limiter every
    request passes and no result is reported.
    """

    def __init__(self, limiter: Optional[RateLimiter], name: str) -> None:
        self.limiter = limiter
        self.name    = name

    def check(self, identity: str) -> Optional[RateLimitResult]:
        if self.limiter is None:
            return None
        return self.limiter.check(self.name, identity)


class SettlementTrigger:
    """
    Turns a first-time eligibility transition into exactly one settlement
    job keyed "{user_id}:{place_id}:{mission_id}".

    A transition reached by a flow that does not know the mission (a bare
    location check) cannot be settled; it is logged and left to the
    caller.
    """

    def __init__(
        self,
        queue:         Optional[SettlementQueue],
        reward_amount: int = DEFAULT_REWARD_AMOUNT,
        currency:      str = DEFAULT_CURRENCY,
        max_attempts:  int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.queue         = queue
        self.reward_amount = reward_amount
        self.currency      = currency
        self.max_attempts  = max_attempts

    def fire(
        self,
        change:     EligibilityChange,
        user_id:    str,
        place_id:   str,
        mission_id: Optional[str],
        amount:     Optional[int] = None,
    ) -> Optional[str]:
        """Job id of the enqueued job, or None when nothing was enqueued."""
        if not change.became_allowed or self.queue is None:
            return None
        if not mission_id:
            logger.warning(
                "user=%s place=%s became eligible without a mission, no settlement enqueued",
                user_id, place_id,
            )
            return None
        job = new_settlement_job(
            SettlementPayload(
                mission_id=      mission_id,
                amount=          self.reward_amount if amount is None else amount,
                currency=        self.currency,
                idempotency_key= idempotency_key(user_id, place_id, mission_id),
                user_id=         user_id,
                place_id=        place_id,
            ),
            max_attempts=self.max_attempts,
        )
        if self.queue.enqueue(job):
            return job.job_id
        return None
