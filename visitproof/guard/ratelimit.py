"""
Fixed-window rate limiter.

Counter key: rl:{name}:{sha256(identity)}. The raw identity (IP, user id)
is hashed before it touches the store or the logs.

The window TTL is set by the first increment; later increments in the
same window keep it. Fail-open: if the store is unreachable the request
is allowed with used=0 and the result is marked degraded.
"""

import hashlib
import logging
import math
from typing import Dict, Optional

from visitproof.core.exceptions import StoreUnavailableError
from visitproof.core.models import RateLimitResult
from visitproof.store.base import SharedStore


logger = logging.getLogger(__name__)

DEFAULT_LIMIT      = 60
DEFAULT_WINDOW_SEC = 60


def hash_identity(raw_identity: str) -> str:
    return hashlib.sha256(raw_identity.encode("utf-8")).hexdigest()


class RateLimiter:

    def __init__(
        self,
        store:    SharedStore,
        policies: Optional[Dict[str, Dict[str, int]]] = None,
    ) -> None:
        self.store    = store
        self.policies = dict(policies or {})

    def _resolve(self, name: str, limit: Optional[int], window_sec: Optional[int]):
        policy = self.policies.get(name, {})
        return (
            limit if limit is not None else int(policy.get("limit", DEFAULT_LIMIT)),
            window_sec if window_sec is not None else int(policy.get("window_sec", DEFAULT_WINDOW_SEC)),
        )

    @staticmethod
    def key(name: str, raw_identity: str) -> str:
        return f"rl:{name}:{hash_identity(raw_identity)}"

    def check(
        self,
        name:         str,
        raw_identity: str,
        limit:        Optional[int] = None,
        window_sec:   Optional[int] = None,
    ) -> RateLimitResult:
        """Count this request and report the window state."""
        limit, window_sec = self._resolve(name, limit, window_sec)
        try:
            used, ttl_ms = self.store.incr(self.key(name, raw_identity), window_sec * 1000)
        except StoreUnavailableError as exc:
            logger.warning("rate limit store unavailable for %s, failing open: %s", name, exc)
            return RateLimitResult(
                limit=limit, used=0, remaining=limit,
                reset_seconds=window_sec, degraded=True,
            )
        result = RateLimitResult(
            limit=         limit,
            used=          used,
            remaining=     limit - used,
            reset_seconds= max(0, math.ceil(ttl_ms / 1000)),
        )
        if not result.allowed:
            logger.info(
                "rate limited %s identity=%s used=%d limit=%d",
                name, hash_identity(raw_identity)[:12], used, limit,
            )
        return result

    def peek(
        self,
        name:         str,
        raw_identity: str,
        limit:        Optional[int] = None,
        window_sec:   Optional[int] = None,
    ) -> RateLimitResult:
        """Window state without counting a request."""
        limit, window_sec = self._resolve(name, limit, window_sec)
        try:
            used, ttl_ms = self.store.get_counter(self.key(name, raw_identity))
        except StoreUnavailableError as exc:
            logger.warning("rate limit store unavailable for %s, failing open: %s", name, exc)
            return RateLimitResult(
                limit=limit, used=0, remaining=limit,
                reset_seconds=window_sec, degraded=True,
            )
        reset = math.ceil(ttl_ms / 1000) if used else window_sec
        return RateLimitResult(
            limit=limit, used=used, remaining=limit - used, reset_seconds=reset,
        )

    @staticmethod
    def headers(result: RateLimitResult) -> Dict[str, str]:
        """Response headers for the boundary layer."""
        headers = {
            "X-RateLimit-Limit":     str(result.limit),
            "X-RateLimit-Remaining": str(max(0, result.remaining)),
            "X-RateLimit-Reset":     str(result.reset_seconds),
        }
        if not result.allowed:
            headers["Retry-After"] = str(result.reset_seconds)
        return headers
