"""
Request-level guards backed by the shared store.

    IdempotencyLockManager  mutual-exclusion leases over a key
    RateLimiter             fixed-window counters per hashed identity
"""

from visitproof.guard.idempotency import IdempotencyLockManager
from visitproof.guard.ratelimit import RateLimiter, hash_identity

__all__ = ["IdempotencyLockManager", "RateLimiter", "hash_identity"]
