"""
visitproof/core/models.py

VisitProof Data Model

Types for every record that moves through the verification-and-settlement
pipeline:

    ProofToken          signed, time-bound capability for (place, mission)
    ScanRead            one raw scanner observation (ephemeral)
    ConsensusResult     derived on every read, never persisted
    Geofence            circular policy region + accuracy cap
    LocationSample      a reported position with its accuracy
    GeofenceResult      outcome of a geofence evaluation
    VerificationRecord  per (user_id, place_id) flags, upserted
    Eligibility         derived reward decision
    SettlementPayload   typed payload of a settlement job
    SettlementJob       unit of work owned by the settlement queue
    DeadLetter          a job that exhausted its retries
    SettlementEvent     signed "payment.captured" emission
    RateLimitResult     per-request limiter outcome
    Lease               an idempotency lease with its ownership token

Wire names (camelCase) are produced by to_dict() only. Python attributes
stay snake_case.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional


# ─────────────────────────────────────────────────────────────
# Vocabulary
# ─────────────────────────────────────────────────────────────

class VerifyFailure(str, Enum):
    """Which factor rejected a verification."""
    MALFORMED    = "MALFORMED"
    EXPIRED      = "EXPIRED"
    SIGNATURE    = "SIGNATURE"
    GEOFENCE     = "GEOFENCE"
    RULE         = "RULE"
    RATE_LIMITED = "RATE_LIMITED"


class JobKind(str, Enum):
    """
    Tagged job kinds. Every kind maps to exactly one payload type in
    _PAYLOAD_TYPES; adding a kind means adding its payload there.
    """
    SETTLEMENT = "settlement"


class JobState(str, Enum):
    READY         = "ready"
    IN_FLIGHT     = "in_flight"
    RETRYING      = "retrying"
    DEAD_LETTERED = "dead_lettered"


class JobOutcomeStatus(str, Enum):
    SETTLED       = "settled"
    RETRYING      = "retrying"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED       = "skipped"


# ─────────────────────────────────────────────────────────────
# Proof tokens
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProofToken:
    """
    Signed capability for one (place_id, mission_id) pair.

    Immutable once issued. The signature covers payload(), which is the
    pipe-delimited namespace|place_id|mission_id|issued_at_ms|nonce.
    """
    namespace:    str
    place_id:     str
    mission_id:   str
    issued_at_ms: int
    nonce:        str
    signature:    str = ""

    def payload(self) -> str:
        return "|".join([
            self.namespace,
            self.place_id,
            self.mission_id,
            str(self.issued_at_ms),
            self.nonce,
        ])

    def serialize(self) -> str:
        """Full wire form: payload|signature."""
        return f"{self.payload()}|{self.signature}"

    def with_signature(self, signature: str) -> "ProofToken":
        return replace(self, signature=signature)


@dataclass(frozen=True)
class TokenCheck:
    """Result of Signer.check(). bool(check) is True iff valid."""
    valid:  bool
    reason: Optional[VerifyFailure] = None
    token:  Optional[ProofToken]    = None

    def __bool__(self) -> bool:
        return self.valid


# ─────────────────────────────────────────────────────────────
# Consensus
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ScanRead:
    text:         str
    timestamp_ms: int
    source_tag:   str = "camera"


@dataclass(frozen=True)
class ConsensusResult:
    valid:               bool
    confidence_percent:  float
    consecutive_matches: int
    threshold_used:      int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid":              self.valid,
            "confidencePercent":  self.confidence_percent,
            "consecutiveMatches": self.consecutive_matches,
            "thresholdUsed":      self.threshold_used,
        }


# ─────────────────────────────────────────────────────────────
# Location
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class Geofence:
    center:              GeoPoint
    radius_meters:       float
    max_accuracy_meters: float


@dataclass(frozen=True)
class LocationSample:
    lat:      float
    lng:      float
    accuracy: float


@dataclass(frozen=True)
class GeofenceResult:
    passed:          bool
    distance_meters: float
    accuracy_ok:     bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed":         self.passed,
            "distanceMeters": self.distance_meters,
            "accuracyOk":     self.accuracy_ok,
        }


@dataclass(frozen=True)
class Place:
    place_id: str
    fence:    Geofence


# ─────────────────────────────────────────────────────────────
# Verification
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VerificationRecord:
    user_id:       str
    place_id:      str
    gps_ok:        bool = False
    qr_ok:         bool = False
    receipt_ok:    bool = False
    updated_at_ms: int  = 0

    def merged(
        self,
        gps_ok:     Optional[bool],
        qr_ok:      Optional[bool],
        receipt_ok: Optional[bool],
        now_ms:     int,
    ) -> "VerificationRecord":
        """
        Merge evidence into a copy of this record. A flag that is None is
        left untouched; a True flag is never cleared by a later False.
        """
        return replace(
            self,
            gps_ok=        self.gps_ok or bool(gps_ok),
            qr_ok=         self.qr_ok or bool(qr_ok),
            receipt_ok=    self.receipt_ok or bool(receipt_ok),
            updated_at_ms= now_ms,
        )


@dataclass(frozen=True)
class Eligibility:
    allowed:    bool
    gps_ok:     bool
    qr_ok:      bool
    receipt_ok: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed":   self.allowed,
            "gpsOk":     self.gps_ok,
            "qrOk":      self.qr_ok,
            "receiptOk": self.receipt_ok,
        }


@dataclass(frozen=True)
class EligibilityChange:
    """Eligibility before and after one record_* call."""
    before: Eligibility
    after:  Eligibility

    @property
    def became_allowed(self) -> bool:
        return self.after.allowed and not self.before.allowed


# ─────────────────────────────────────────────────────────────
# Settlement
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SettlementPayload:
    mission_id:      str
    amount:          int
    currency:        str
    idempotency_key: str
    user_id:         Optional[str] = None
    place_id:        Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "missionId":      self.mission_id,
            "amount":         self.amount,
            "currency":       self.currency,
            "idempotencyKey": self.idempotency_key,
            "userId":         self.user_id,
            "placeId":        self.place_id,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SettlementPayload":
        return SettlementPayload(
            mission_id=      data["missionId"],
            amount=          int(data["amount"]),
            currency=        data["currency"],
            idempotency_key= data["idempotencyKey"],
            user_id=         data.get("userId"),
            place_id=        data.get("placeId"),
        )


_PAYLOAD_TYPES = {
    JobKind.SETTLEMENT: SettlementPayload,
}


@dataclass
class SettlementJob:
    """
    Owned exclusively by the settlement queue.

    Mutable: the worker increments attempts and the queue reschedules
    next_attempt_at_ms. Everything else is fixed at creation.
    """
    job_id:             str
    payload:            SettlementPayload
    max_attempts:       int      = 5
    attempts:           int      = 0
    next_attempt_at_ms: int      = 0
    kind:               JobKind  = JobKind.SETTLEMENT
    state:              JobState = JobState.READY
    last_error:         Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id":            self.job_id,
            "type":          self.kind.value,
            "payload":       self.payload.to_dict(),
            "attempts":      self.attempts,
            "maxAttempts":   self.max_attempts,
            "nextAttemptAt": self.next_attempt_at_ms,
            "state":         self.state.value,
            "lastError":     self.last_error,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SettlementJob":
        kind = JobKind(data.get("type", JobKind.SETTLEMENT.value))
        payload_type = _PAYLOAD_TYPES[kind]
        return SettlementJob(
            job_id=             data["id"],
            payload=            payload_type.from_dict(data["payload"]),
            max_attempts=       int(data.get("maxAttempts", 5)),
            attempts=           int(data.get("attempts", 0)),
            next_attempt_at_ms= int(data.get("nextAttemptAt", 0)),
            kind=               kind,
            state=              JobState(data.get("state", JobState.READY.value)),
            last_error=         data.get("lastError"),
        )


@dataclass
class DeadLetter:
    job:         SettlementJob
    error:       str
    dead_at_ms:  int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job":      self.job.to_dict(),
            "error":    self.error,
            "deadAt":   self.dead_at_ms,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "DeadLetter":
        return DeadLetter(
            job=        SettlementJob.from_dict(data["job"]),
            error=      data.get("error", ""),
            dead_at_ms= int(data.get("deadAt", 0)),
        )


@dataclass(frozen=True)
class SettlementEvent:
    """
    Webhook-equivalent event emitted after a successful capture.
    signature = "v1=" + hex(HMAC-SHA256(JCS(body_dict()), webhook_secret))
    """
    provider:            str
    mission_id:          str
    external_payment_id: str
    amount:              int
    currency:            str
    ts:                  int
    type:                str = "payment.captured"
    signature:           str = ""

    def body_dict(self) -> Dict[str, Any]:
        return {
            "provider":          self.provider,
            "type":              self.type,
            "missionId":         self.mission_id,
            "externalPaymentId": self.external_payment_id,
            "amount":            self.amount,
            "currency":          self.currency,
            "ts":                self.ts,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.body_dict(), "signature": self.signature}


@dataclass(frozen=True)
class JobOutcome:
    job_id:      str
    mission_id:  str
    status:      JobOutcomeStatus
    attempts:    int
    event:       Optional[SettlementEvent] = None
    retry_at_ms: Optional[int] = None
    error:       Optional[str] = None


# ─────────────────────────────────────────────────────────────
# Guards
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RateLimitResult:
    """
    remaining < 0 means the request is over the limit; the boundary
    layer answers with Retry-After = reset_seconds.
    """
    limit:         int
    used:          int
    remaining:     int
    reset_seconds: int
    degraded:      bool = False

    @property
    def allowed(self) -> bool:
        return self.remaining >= 0


@dataclass(frozen=True)
class Lease:
    key:           str
    token:         str
    expires_at_ms: int
    degraded:      bool = False
