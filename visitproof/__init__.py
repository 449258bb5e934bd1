"""
visitproof/__init__.py

VisitProof: verification and settlement for location-anchored rewards.

A scan, a location sample and optional receipt evidence become a signed
settlement event:

    proof token → consensus → geofence → eligibility → settlement queue
      → idempotency lease → provider capture → signed event
"""

__version__ = "0.1.0"

from visitproof.config import VisitProofConfig
from visitproof.core.clock import Clock, ManualClock, SystemClock
from visitproof.core.exceptions import (
    ConfigurationError,
    ProviderError,
    QueueError,
    SettlementError,
    StoreUnavailableError,
    VisitProofError,
)
from visitproof.core.models import (
    Eligibility,
    Geofence,
    GeoPoint,
    LocationSample,
    Place,
    ProofToken,
    ScanRead,
    SettlementEvent,
    SettlementJob,
    SettlementPayload,
    VerifyFailure,
)
from visitproof.core.signer import Signer
from visitproof.runtime.context import RuntimeContext

__all__ = [
    # Wiring
    "RuntimeContext",
    "VisitProofConfig",
    # Core types
    "Eligibility",
    "GeoPoint",
    "Geofence",
    "LocationSample",
    "Place",
    "ProofToken",
    "ScanRead",
    "SettlementEvent",
    "SettlementJob",
    "SettlementPayload",
    "Signer",
    "VerifyFailure",
    # Time
    "Clock",
    "ManualClock",
    "SystemClock",
    # Errors
    "VisitProofError",
    "ConfigurationError",
    "StoreUnavailableError",
    "QueueError",
    "SettlementError",
    "ProviderError",
]
