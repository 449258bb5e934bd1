"""
Settlement providers.

A provider captures one payment and returns the provider-side payment
id. Any exception it raises is a failed attempt; the worker decides
between retry and dead-lettering. Providers must honour the payload's
idempotency_key so a capture repeated after a lease expiry is harmless.
"""

import threading
import time
import uuid
from typing import Dict, Optional

from visitproof.core.exceptions import ConfigurationError, ProviderError
from visitproof.core.models import SettlementPayload


class SettlementProvider:
    """Capture interface implemented by every payment provider."""

    name = "provider"

    def capture(self, payload: SettlementPayload) -> str:
        raise NotImplementedError


class MockProvider(SettlementProvider):
    """
    In-process provider for local runs and tests.

    fail_times   number of leading capture calls that raise
    always_fail  every call raises
    delay_s      sleep before answering

    Captures are idempotent per idempotency_key: repeating a successful
    key returns the same payment id.
    """

    name = "mock"

    def __init__(
        self,
        fail_times:  int   = 0,
        always_fail: bool  = False,
        error:       str   = "mock provider failure",
        delay_s:     float = 0.0,
    ) -> None:
        self.fail_times  = fail_times
        self.always_fail = always_fail
        self.error       = error
        self.delay_s     = delay_s
        self.calls       = 0
        self.captured: Dict[str, str] = {}
        self._lock = threading.Lock()

    def capture(self, payload: SettlementPayload) -> str:
        if self.delay_s:
            time.sleep(self.delay_s)
        with self._lock:
            self.calls += 1
            if self.always_fail or self.calls <= self.fail_times:
                raise ProviderError(
                    self.error,
                    {"mission_id": payload.mission_id, "attempt": self.calls},
                )
            existing: Optional[str] = self.captured.get(payload.idempotency_key)
            if existing is not None:
                return existing
            payment_id = f"pay_{uuid.uuid4().hex[:12]}"
            self.captured[payload.idempotency_key] = payment_id
            return payment_id


PROVIDERS = {
    "mock": MockProvider,
}


def make_provider(name: str) -> SettlementProvider:
    try:
        return PROVIDERS[name]()
    except KeyError:
        raise ConfigurationError(
            "Unknown settlement provider", {"provider": name, "known": sorted(PROVIDERS)}
        ) from None
