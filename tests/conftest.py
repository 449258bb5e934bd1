"""
Shared fixtures for the VisitProof test suite.

Every time-dependent component is driven by a ManualClock so TTLs,
backoff and token expiry are tested without sleeping.
"""

import pytest

from visitproof.core.clock import ManualClock
from visitproof.core.exceptions import StoreUnavailableError
from visitproof.core.signer import Signer
from visitproof.store.base import SharedStore
from visitproof.store.memory import InMemoryStore


SIGN_SECRET    = "test-sign-secret"
WEBHOOK_SECRET = "test-webhook-secret"


class UnreachableStore(SharedStore):
    """A store whose every primitive fails as if the network were down."""

    def _down(self, *args, **kwargs):
        raise StoreUnavailableError("connection refused", {"host": "store.invalid"})

    incr             = _down
    get_counter      = _down
    set_if_absent    = _down
    get              = _down
    delete           = _down
    delete_if_equals = _down

    def ping(self) -> bool:
        return False


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock)


@pytest.fixture
def unreachable_store():
    return UnreachableStore()


@pytest.fixture
def signer(clock):
    return Signer(SIGN_SECRET, webhook_secret=WEBHOOK_SECRET, clock=clock)
