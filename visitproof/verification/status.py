"""
Eligibility read model for a status endpoint.

Throttled under verify_complete. Reports the four booleans for
(user_id, place_id) without changing anything.
"""

from typing import Optional

from visitproof.core.models import VerifyFailure
from visitproof.guard.ratelimit import RateLimiter
from visitproof.verification.aggregator import VerificationAggregator
from visitproof.verification.flow import RateGate, VerifyOutcome, reject


STATUS_RATE_LIMIT = "verify_complete"


class EligibilityStatus:

    def __init__(
        self,
        aggregator:   VerificationAggregator,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.aggregator = aggregator
        self.gate       = RateGate(rate_limiter, STATUS_RATE_LIMIT)

    def check(
        self,
        user_id:   str,
        place_id:  str,
        client_id: Optional[str] = None,
    ) -> VerifyOutcome:
        rate = self.gate.check(client_id or user_id)
        if rate is not None and not rate.allowed:
            return reject("status", VerifyFailure.RATE_LIMITED, place_id=place_id, rate_limit=rate)
        return VerifyOutcome(
            ok=          True,
            place_id=    place_id,
            eligibility= self.aggregator.get_eligibility(user_id, place_id),
            rate_limit=  rate,
        )
