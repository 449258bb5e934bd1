"""
visitproof/core/signer.py

HMAC-SHA256 signing for proof tokens and settlement events.

Key contracts:
    hmac_sign(payload, secret, encoding)  → "base64url" (no padding) or "hex"
    Signer.issue(place_id, mission_id)    → signed ProofToken, nonce = 16 hex chars
    Signer.verify(token)                  → bool. Never raises.
    Signer.check(raw)                     → TokenCheck(valid, reason). Never raises.
    Signer.sign_event(event)              → event with "v1=<hex>" signature

Token wire format:
    NS|place_id|mission_id|issued_at_ms|nonce|signature

Tokens and events use distinct secrets. Comparison is always constant
time over the encoded signature bytes; a length mismatch is a plain False.
"""

import base64
import re
import secrets
from dataclasses import replace
from typing import Optional, Union

from cryptography.hazmat.primitives import constant_time, hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac

from visitproof.core.canonical import canonicalize
from visitproof.core.clock import Clock, SystemClock
from visitproof.core.exceptions import ConfigurationError
from visitproof.core.models import (
    ProofToken,
    SettlementEvent,
    TokenCheck,
    VerifyFailure,
)


DEFAULT_NAMESPACE     = "ZZIK"
DEFAULT_VALIDITY_MS   = 5 * 60_000
EVENT_SIGNATURE_PREFIX = "v1="

# namespace, place_id, mission_id, issued_at_ms, nonce, signature
_TOKEN_FIELD_COUNT = 6
_NONCE_HEX_LENGTH  = 16
_TIMESTAMP_RE      = re.compile(r"0|[1-9][0-9]*")


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def hmac_sign(
    payload:  Union[str, bytes],
    secret:   Union[str, bytes],
    encoding: str = "base64url",
) -> str:
    """
    HMAC-SHA256 of payload under secret.

    encoding="base64url" → urlsafe base64, '=' padding stripped (token form)
    encoding="hex"       → lowercase hex (webhook form)
    """
    h = crypto_hmac.HMAC(_to_bytes(secret), hashes.SHA256())
    h.update(_to_bytes(payload))
    digest = h.finalize()
    if encoding == "hex":
        return digest.hex()
    if encoding == "base64url":
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    raise ValueError(f"Unknown signature encoding: {encoding!r}")


def signatures_equal(given: str, expected: str) -> bool:
    """Constant-time comparison of two encoded signatures. Never raises."""
    if not isinstance(given, str) or not isinstance(expected, str):
        return False
    a = given.encode("utf-8", errors="replace")
    b = expected.encode("utf-8")
    if len(a) != len(b):
        return False
    return constant_time.bytes_eq(a, b)


def parse_token(raw: str) -> Optional[ProofToken]:
    """
    Parse the wire form into a ProofToken.
    Returns None for anything that is not exactly six fields with a
    timestamp in canonical decimal form. Never raises.
    """
    if not isinstance(raw, str):
        return None
    parts = raw.split("|")
    if len(parts) != _TOKEN_FIELD_COUNT:
        return None
    namespace, place_id, mission_id, ts, nonce, signature = parts
    if not (namespace and place_id and mission_id and nonce and signature):
        return None
    # ts must equal str(int(ts)); payload() re-signs that form
    if not _TIMESTAMP_RE.fullmatch(ts):
        return None
    return ProofToken(
        namespace=    namespace,
        place_id=     place_id,
        mission_id=   mission_id,
        issued_at_ms= int(ts),
        nonce=        nonce,
        signature=    signature,
    )


class Signer:
    """
    Issues and verifies proof tokens, and signs settlement events.

    A Signer without a token secret cannot be constructed: a missing
    secret is a startup failure, not a per-request one.
    """

    def __init__(
        self,
        secret:         Union[str, bytes],
        webhook_secret: Optional[Union[str, bytes]] = None,
        namespace:      str   = DEFAULT_NAMESPACE,
        validity_ms:    int   = DEFAULT_VALIDITY_MS,
        clock:          Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ConfigurationError("Signing secret is not configured")
        if "|" in namespace:
            raise ConfigurationError(
                "Token namespace must not contain '|'",
                {"namespace": namespace},
            )
        self._secret         = _to_bytes(secret)
        self._webhook_secret = _to_bytes(webhook_secret) if webhook_secret else None
        self.namespace       = namespace
        self.validity_ms     = validity_ms
        self.clock           = clock or SystemClock()

    # ── Tokens ────────────────────────────────────────────────

    def issue(self, place_id: str, mission_id: str) -> ProofToken:
        """Issue a signed token stamped with the current time."""
        for name, value in (("place_id", place_id), ("mission_id", mission_id)):
            if not value or "|" in value:
                raise ValueError(f"{name} must be non-empty and must not contain '|'")
        unsigned = ProofToken(
            namespace=    self.namespace,
            place_id=     place_id,
            mission_id=   mission_id,
            issued_at_ms= self.clock.now_ms(),
            nonce=        secrets.token_hex(_NONCE_HEX_LENGTH // 2),
        )
        return unsigned.with_signature(self.sign(unsigned.payload()))

    def sign(self, payload: Union[str, bytes]) -> str:
        """Token signature (base64url) over payload."""
        return hmac_sign(payload, self._secret, encoding="base64url")

    def verify(self, token: Union[ProofToken, str]) -> bool:
        """
        True iff the signature matches the canonical payload.

        Accepts a ProofToken or its wire form. Malformed input is False.
        Expiry is not considered here; see check().
        """
        if isinstance(token, str):
            token = parse_token(token)
        if not isinstance(token, ProofToken):
            return False
        try:
            expected = self.sign(token.payload())
        except (TypeError, ValueError):
            return False
        return signatures_equal(token.signature, expected)

    def is_expired(self, token: ProofToken, now_ms: Optional[int] = None) -> bool:
        now = self.clock.now_ms() if now_ms is None else now_ms
        return now - token.issued_at_ms > self.validity_ms

    def check(
        self,
        raw:               Union[ProofToken, str],
        now_ms:            Optional[int] = None,
        require_signature: bool = True,
    ) -> TokenCheck:
        """
        Full token check in explainability order:
            format → namespace → expiry → signature

        Returns a TokenCheck naming the first factor that failed.
        """
        token = parse_token(raw) if isinstance(raw, str) else raw
        if not isinstance(token, ProofToken):
            return TokenCheck(False, VerifyFailure.MALFORMED)
        if token.namespace != self.namespace:
            return TokenCheck(False, VerifyFailure.MALFORMED, token)
        if token.issued_at_ms <= 0 or self.is_expired(token, now_ms):
            return TokenCheck(False, VerifyFailure.EXPIRED, token)
        if require_signature and not self.verify(token):
            return TokenCheck(False, VerifyFailure.SIGNATURE, token)
        return TokenCheck(True, None, token)

    # ── Settlement events ─────────────────────────────────────

    def sign_event(self, event: SettlementEvent) -> SettlementEvent:
        """Return a copy of event carrying its webhook-style signature."""
        if self._webhook_secret is None:
            raise ConfigurationError("Webhook secret is not configured")
        body = canonicalize(event.body_dict())
        signature = EVENT_SIGNATURE_PREFIX + hmac_sign(
            body, self._webhook_secret, encoding="hex"
        )
        return replace(event, signature=signature)

    def verify_event(self, event: SettlementEvent) -> bool:
        """True iff event.signature matches its body. Never raises."""
        if self._webhook_secret is None:
            return False
        try:
            body = canonicalize(event.body_dict())
        except Exception:
            return False
        expected = EVENT_SIGNATURE_PREFIX + hmac_sign(
            body, self._webhook_secret, encoding="hex"
        )
        return signatures_equal(event.signature, expected)

    def __repr__(self) -> str:
        return f"Signer(namespace={self.namespace!r}, validity_ms={self.validity_ms})"
