"""
tests/test_signer.py

Proof token and settlement event signing.

  TOKENS
    issued token verifies; wire form round-trips through parse_token
    any single-character change to the payload or signature fails
    malformed input is a negative result, never an exception
    check() reports the first failing factor

  EVENTS
    event signature is "v1=" + hex HMAC over the canonical body
    any body change breaks the event signature
"""

import base64
import hashlib
import hmac
import json

import pytest

from visitproof.core.canonical import canonicalize
from visitproof.core.exceptions import ConfigurationError
from visitproof.core.models import SettlementEvent, VerifyFailure
from visitproof.core.signer import (
    DEFAULT_VALIDITY_MS,
    Signer,
    hmac_sign,
    parse_token,
    signatures_equal,
)

from conftest import SIGN_SECRET, WEBHOOK_SECRET


# ─────────────────────────────────────────────────────────────
# Primitives
# ─────────────────────────────────────────────────────────────

class TestHmacSign:

    def test_base64url_matches_stdlib_hmac(self):
        digest = hmac.new(b"k", b"payload", hashlib.sha256).digest()
        expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
        assert hmac_sign("payload", "k") == expected

    def test_hex_encoding(self):
        expected = hmac.new(b"k", b"payload", hashlib.sha256).hexdigest()
        assert hmac_sign("payload", "k", encoding="hex") == expected

    def test_base64url_has_no_padding_or_unsafe_chars(self):
        sig = hmac_sign("anything", "secret")
        assert "=" not in sig
        assert "+" not in sig and "/" not in sig

    def test_unknown_encoding_rejected(self):
        with pytest.raises(ValueError):
            hmac_sign("p", "k", encoding="base32")

    def test_signatures_equal_handles_length_mismatch(self):
        assert signatures_equal("abc", "abc")
        assert not signatures_equal("abc", "abcd")
        assert not signatures_equal(None, "abc")


# ─────────────────────────────────────────────────────────────
# Tokens
# ─────────────────────────────────────────────────────────────

class TestTokenIssue:

    def test_issued_token_verifies(self, signer):
        token = signer.issue("gangnam", "m1")
        assert signer.verify(token)
        assert signer.verify(token.serialize())

    def test_wire_format(self, signer, clock):
        token = signer.issue("gangnam", "m1")
        parts = token.serialize().split("|")
        assert len(parts) == 6
        assert parts[:4] == ["ZZIK", "gangnam", "m1", str(clock.now_ms())]
        assert len(parts[4]) == 16
        int(parts[4], 16)

    def test_parse_round_trip(self, signer):
        token = signer.issue("seongsu", "m9")
        assert parse_token(token.serialize()) == token

    def test_nonces_are_unique(self, signer):
        nonces = {signer.issue("gangnam", "m1").nonce for _ in range(50)}
        assert len(nonces) == 50

    def test_pipe_in_ids_rejected(self, signer):
        with pytest.raises(ValueError):
            signer.issue("gang|nam", "m1")
        with pytest.raises(ValueError):
            signer.issue("gangnam", "")

    def test_missing_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            Signer("")


class TestTokenTamper:

    def test_every_payload_character_change_breaks_signature(self, signer):
        token = signer.issue("gangnam", "m1")
        raw = token.serialize()
        sig_start = raw.rindex("|")
        for i in range(sig_start):
            if raw[i] == "|":
                continue
            replacement = "0" if raw[i] != "0" else "1"
            tampered = raw[:i] + replacement + raw[i + 1:]
            assert not signer.verify(tampered), f"mutation at {i} still verified"

    def test_signature_change_breaks_signature(self, signer):
        token = signer.issue("gangnam", "m1")
        sig = token.signature
        flipped = ("A" if sig[0] != "A" else "B") + sig[1:]
        assert not signer.verify(token.with_signature(flipped))

    def test_other_secret_cannot_verify(self, signer, clock):
        other = Signer("another-secret", clock=clock)
        assert not other.verify(signer.issue("gangnam", "m1"))

    @pytest.mark.parametrize("raw", [
        "",
        "garbage",
        "ZZIK|gangnam|m1|123|nonce",
        "ZZIK|gangnam|m1|notanint|nonce|sig",
        "ZZIK||m1|123|nonce|sig",
        "ZZIK|gangnam|m1|123|nonce|sig|extra",
    ])
    def test_malformed_input_is_false(self, signer, raw):
        assert signer.verify(raw) is False
        assert parse_token(raw) is None

    @pytest.mark.parametrize("rewrite", [
        lambda ts: "0" + ts,
        lambda ts: "+" + ts,
        lambda ts: " " + ts,
        lambda ts: ts + " ",
        lambda ts: ts[:1] + "_" + ts[1:],
        lambda ts: ts + "\n",
    ])
    def test_non_canonical_timestamp_is_false(self, signer, rewrite):
        token = signer.issue("gangnam", "m1")
        ts = str(token.issued_at_ms)
        raw = "|".join([
            token.namespace, token.place_id, token.mission_id,
            rewrite(ts), token.nonce, token.signature,
        ])
        assert signer.verify(raw) is False
        assert parse_token(raw) is None
        assert signer.check(raw).reason == VerifyFailure.MALFORMED


class TestTokenCheck:

    def test_valid(self, signer):
        check = signer.check(signer.issue("gangnam", "m1").serialize())
        assert check.valid
        assert check.reason is None
        assert check.token.place_id == "gangnam"

    def test_malformed(self, signer):
        check = signer.check("not-a-token")
        assert not check
        assert check.reason == VerifyFailure.MALFORMED

    def test_wrong_namespace_is_malformed(self, signer, clock):
        foreign = Signer(SIGN_SECRET, namespace="OTHER", clock=clock)
        check = signer.check(foreign.issue("gangnam", "m1").serialize())
        assert check.reason == VerifyFailure.MALFORMED

    def test_expiry_boundary(self, signer, clock):
        raw = signer.issue("gangnam", "m1").serialize()
        clock.advance(DEFAULT_VALIDITY_MS)
        assert signer.check(raw).valid
        clock.advance(1)
        assert signer.check(raw).reason == VerifyFailure.EXPIRED

    def test_expiry_reported_before_signature(self, signer, clock):
        token = signer.issue("gangnam", "m1").with_signature("forged")
        clock.advance(DEFAULT_VALIDITY_MS + 1)
        assert signer.check(token).reason == VerifyFailure.EXPIRED

    def test_bad_signature(self, signer):
        token = signer.issue("gangnam", "m1").with_signature("forged")
        assert signer.check(token).reason == VerifyFailure.SIGNATURE

    def test_signature_optional_when_not_required(self, signer):
        token = signer.issue("gangnam", "m1").with_signature("forged")
        assert signer.check(token, require_signature=False).valid


# ─────────────────────────────────────────────────────────────
# Settlement events
# ─────────────────────────────────────────────────────────────

def _event(**overrides) -> SettlementEvent:
    fields = dict(
        provider=            "mock",
        mission_id=          "m1",
        external_payment_id= "pay_123",
        amount=              1000,
        currency=            "KRW",
        ts=                  1_700_000_000_000,
    )
    fields.update(overrides)
    return SettlementEvent(**fields)


class TestEventSignature:

    def test_signature_format(self, signer):
        signed = signer.sign_event(_event())
        body = canonicalize(_event().body_dict())
        expected = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
        assert signed.signature == "v1=" + expected

    def test_signed_event_verifies(self, signer):
        assert signer.verify_event(signer.sign_event(_event()))

    def test_body_change_breaks_signature(self, signer):
        signed = signer.sign_event(_event())
        tampered = SettlementEvent(**{**signed.__dict__, "amount": 999_999})
        assert not signer.verify_event(tampered)

    def test_canonical_body_is_key_sorted(self):
        body = json.loads(canonicalize(_event().body_dict()))
        assert list(body) == sorted(body)
        assert "signature" not in body

    def test_missing_webhook_secret(self, clock):
        with pytest.raises(ConfigurationError):
            Signer(SIGN_SECRET, clock=clock).sign_event(_event())

    def test_token_secret_does_not_sign_events(self, signer, clock):
        other = Signer(SIGN_SECRET, webhook_secret=SIGN_SECRET, clock=clock)
        assert not signer.verify_event(other.sign_event(_event()))
