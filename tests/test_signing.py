"""
Webhook signing: outbound headers, Stripe-style and Svix inbound verification.
"""
import hashlib
import hmac

import pytest

from relay.core.exceptions import ConfigurationError, ErrorCode, WebhookVerificationError
from relay.core.signing import (
    build_webhook_headers,
    compute_webhook_signature,
    extract_svix_signatures,
    sign_svix_payload,
    verify_shared_secret,
    verify_stripe_signature,
    verify_svix_signature,
)
from relay.core.config import settings

NOW = 1_760_000_000
STRIPE_SECRET = "whsec_stripe_test_secret"
TEST_SVIX_SECRET = settings.RESEND_WEBHOOK_SECRET
BODY = b'{"id":"evt_1","type":"invoice.payment_failed"}'


def _stripe_header(ts: int, body: bytes = BODY, secret: str = STRIPE_SECRET) -> str:
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def _svix_headers(ts: int, body: bytes = BODY, msg_id: str = "msg_2abc") -> dict:
    return {
        "svix-id": msg_id,
        "svix-timestamp": str(ts),
        "svix-signature": f"v1,{sign_svix_payload(TEST_SVIX_SECRET, msg_id, ts, body)}",
    }


# ============================================================================
# Outbound
# ============================================================================

class TestOutboundSignature:

    @pytest.mark.unit
    def test_signature_is_hmac_over_timestamp_dot_body(self):
        expected = hmac.new(b"s3cret", b"1700000000.{}", hashlib.sha256).hexdigest()
        assert compute_webhook_signature("s3cret", 1700000000, "{}") == expected

    @pytest.mark.unit
    def test_headers(self):
        headers = build_webhook_headers("s3cret", '{"a":1}', "track.created", timestamp=1700000000)

        assert headers["Content-Type"] == "application/json"
        assert headers["X-Webhook-Timestamp"] == "1700000000"
        assert headers["X-Webhook-Event"] == "track.created"
        assert headers["X-Webhook-Signature"] == compute_webhook_signature("s3cret", 1700000000, '{"a":1}')


# ============================================================================
# Stripe style
# ============================================================================

class TestStripeSignature:

    @pytest.mark.unit
    def test_valid_signature_returns_timestamp(self):
        assert verify_stripe_signature(BODY, _stripe_header(NOW), STRIPE_SECRET, now=NOW) == NOW

    @pytest.mark.unit
    def test_any_of_multiple_v1_signatures_matches(self):
        header = f"t={NOW},v1={'0' * 64},{_stripe_header(NOW).split(',')[1]}"
        assert verify_stripe_signature(BODY, header, STRIPE_SECRET, now=NOW) == NOW

    @pytest.mark.unit
    def test_missing_header(self):
        with pytest.raises(WebhookVerificationError) as exc:
            verify_stripe_signature(BODY, None, STRIPE_SECRET, now=NOW)
        assert exc.value.error_code == ErrorCode.WEBHOOK_SIGNATURE_MISSING
        assert exc.value.status_code == 400

    @pytest.mark.unit
    def test_header_without_v1(self):
        with pytest.raises(WebhookVerificationError):
            verify_stripe_signature(BODY, f"t={NOW}", STRIPE_SECRET, now=NOW)

    @pytest.mark.unit
    @pytest.mark.parametrize("offset", [301, -301, 3600])
    def test_stale_timestamp_in_either_direction(self, offset):
        ts = NOW - offset
        with pytest.raises(WebhookVerificationError) as exc:
            verify_stripe_signature(BODY, _stripe_header(ts), STRIPE_SECRET, now=NOW)
        assert exc.value.error_code == ErrorCode.WEBHOOK_TIMESTAMP_STALE

    @pytest.mark.unit
    def test_timestamp_at_tolerance_edge_is_accepted(self):
        ts = NOW - 300
        assert verify_stripe_signature(BODY, _stripe_header(ts), STRIPE_SECRET, now=NOW) == ts

    @pytest.mark.unit
    def test_non_numeric_timestamp(self):
        with pytest.raises(WebhookVerificationError):
            verify_stripe_signature(BODY, "t=yesterday,v1=abc", STRIPE_SECRET, now=NOW)

    @pytest.mark.unit
    def test_modified_body_is_rejected(self):
        with pytest.raises(WebhookVerificationError) as exc:
            verify_stripe_signature(BODY + b" ", _stripe_header(NOW), STRIPE_SECRET, now=NOW)
        assert exc.value.error_code == ErrorCode.WEBHOOK_SIGNATURE_INVALID

    @pytest.mark.unit
    def test_wrong_secret_is_rejected(self):
        header = _stripe_header(NOW, secret="other")
        with pytest.raises(WebhookVerificationError):
            verify_stripe_signature(BODY, header, STRIPE_SECRET, now=NOW)


# ============================================================================
# Svix
# ============================================================================

class TestSvixSignature:

    @pytest.mark.unit
    def test_valid_signature_returns_message_id(self):
        assert verify_svix_signature(BODY, _svix_headers(NOW), TEST_SVIX_SECRET, now=NOW) == "msg_2abc"

    @pytest.mark.unit
    def test_one_valid_signature_among_several(self):
        headers = _svix_headers(NOW)
        headers["svix-signature"] = f"v1,AAAA v2,ignored {headers['svix-signature']}"
        assert verify_svix_signature(BODY, headers, TEST_SVIX_SECRET, now=NOW) == "msg_2abc"

    @pytest.mark.unit
    def test_extract_only_v1_tokens(self):
        assert extract_svix_signatures("v1,abc v2,def v1,ghi garbage") == ["abc", "ghi"]

    @pytest.mark.unit
    @pytest.mark.parametrize("missing", ["svix-id", "svix-timestamp", "svix-signature"])
    def test_missing_header(self, missing):
        headers = _svix_headers(NOW)
        del headers[missing]
        with pytest.raises(WebhookVerificationError) as exc:
            verify_svix_signature(BODY, headers, TEST_SVIX_SECRET, now=NOW)
        assert exc.value.error_code == ErrorCode.WEBHOOK_SIGNATURE_MISSING

    @pytest.mark.unit
    def test_stale_timestamp(self):
        with pytest.raises(WebhookVerificationError) as exc:
            verify_svix_signature(BODY, _svix_headers(NOW - 600), TEST_SVIX_SECRET, now=NOW)
        assert exc.value.error_code == ErrorCode.WEBHOOK_TIMESTAMP_STALE

    @pytest.mark.unit
    def test_message_id_is_part_of_signed_content(self):
        headers = _svix_headers(NOW)
        headers["svix-id"] = "msg_other"
        with pytest.raises(WebhookVerificationError):
            verify_svix_signature(BODY, headers, TEST_SVIX_SECRET, now=NOW)

    @pytest.mark.unit
    def test_invalid_secret_encoding_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            verify_svix_signature(BODY, _svix_headers(NOW), "whsec_***not-base64***", now=NOW)


class TestSharedSecret:

    @pytest.mark.unit
    def test_match(self):
        assert verify_shared_secret("abc", "abc") is True

    @pytest.mark.unit
    @pytest.mark.parametrize("provided,expected", [("abd", "abc"), (None, "abc"), ("", "abc"), ("abc", "")])
    def test_mismatch(self, provided, expected):
        assert verify_shared_secret(provided, expected) is False
