"""
HMAC signing for outbound webhooks and verification of inbound ones.

Outbound (generic webhooks)::

    X-Webhook-Signature = hex(HMAC-SHA256(secret, "{timestamp}.{body}"))

Inbound, two schemes are supported:

- Stripe style: ``stripe-signature: t=<ts>,v1=<hex>[,v1=<hex>]`` over ``"{t}.{body}"``
- Svix style: ``svix-id``, ``svix-timestamp``, ``svix-signature`` (space separated
  ``v1,<base64>`` tokens) over ``"{id}.{timestamp}.{body}"`` with a ``whsec_`` secret

Both verifiers check headers, freshness and signature before anything
parses the body.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from typing import Mapping

from relay.core.exceptions import ConfigurationError, ErrorCode, WebhookVerificationError

DEFAULT_TOLERANCE_SECONDS = 300
SVIX_SECRET_PREFIX = "whsec_"


def _to_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def compute_webhook_signature(secret: str, timestamp: int | str, body: bytes | str) -> str:
    """Hex HMAC-SHA256 over "{timestamp}.{body}" for outbound deliveries"""
    message = f"{timestamp}.".encode("utf-8") + _to_bytes(body)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_webhook_headers(
    secret: str,
    body: bytes | str,
    event_type: str,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Headers attached to every outbound generic webhook request"""
    ts = int(timestamp if timestamp is not None else time.time())
    return {
        "Content-Type": "application/json",
        "X-Webhook-Signature": compute_webhook_signature(secret, ts, body),
        "X-Webhook-Timestamp": str(ts),
        "X-Webhook-Event": event_type,
    }


def _check_timestamp(raw: str, tolerance: int, now: float | None, provider: str) -> int:
    try:
        ts = int(raw)
    except (TypeError, ValueError):
        raise WebhookVerificationError(
            "Webhook timestamp is not a number",
            error_code=ErrorCode.WEBHOOK_TIMESTAMP_STALE,
            provider=provider,
        )
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        raise WebhookVerificationError(
            "Webhook timestamp outside tolerance window",
            error_code=ErrorCode.WEBHOOK_TIMESTAMP_STALE,
            provider=provider,
        )
    return ts


def _any_matches(expected: str, candidates: list[str]) -> bool:
    # Compare against every candidate so timing does not reveal which one matched
    matched = False
    for candidate in candidates:
        if hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8")):
            matched = True
    return matched


def parse_stripe_signature_header(header: str) -> tuple[str | None, list[str]]:
    """Split "t=...,v1=...,v1=..." into (timestamp, [v1 signatures])"""
    timestamp = None
    signatures: list[str] = []
    for item in (header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes | str,
    header: str | None,
    secret: str,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> int:
    """
    Verify a Stripe-style signature header.

    Returns:
        The verified timestamp.

    Raises:
        WebhookVerificationError: missing header, stale timestamp or bad signature.
    """
    if not header:
        raise WebhookVerificationError(
            "Missing signature header",
            error_code=ErrorCode.WEBHOOK_SIGNATURE_MISSING,
            provider="stripe",
        )

    raw_ts, signatures = parse_stripe_signature_header(header)
    if raw_ts is None or not signatures:
        raise WebhookVerificationError(
            "Malformed signature header",
            error_code=ErrorCode.WEBHOOK_SIGNATURE_MISSING,
            provider="stripe",
        )

    ts = _check_timestamp(raw_ts, tolerance, now, "stripe")
    expected = compute_webhook_signature(secret, raw_ts, payload)
    if not _any_matches(expected, signatures):
        raise WebhookVerificationError("Signature mismatch", provider="stripe")
    return ts


def decode_svix_secret(secret: str) -> bytes:
    """Strip the whsec_ prefix and base64-decode the signing key"""
    raw = secret.strip()
    if raw.startswith(SVIX_SECRET_PREFIX):
        raw = raw[len(SVIX_SECRET_PREFIX):]
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError("Svix signing secret is not valid base64") from e


def sign_svix_payload(secret: str, msg_id: str, timestamp: int | str, payload: bytes | str) -> str:
    """Base64 HMAC-SHA256 over "{id}.{timestamp}.{body}" (no version prefix)"""
    key = decode_svix_secret(secret)
    message = f"{msg_id}.{timestamp}.".encode("utf-8") + _to_bytes(payload)
    return base64.b64encode(hmac.new(key, message, hashlib.sha256).digest()).decode("ascii")


def extract_svix_signatures(header: str) -> list[str]:
    """Pick the v1 signatures out of "v1,<sig> v1,<sig2> v2,<other>" """
    out = []
    for token in (header or "").split():
        version, sep, sig = token.partition(",")
        if sep and version == "v1" and sig:
            out.append(sig.strip())
    return out


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value or ""


def verify_svix_signature(
    payload: bytes | str,
    headers: Mapping[str, str],
    secret: str,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> str:
    """
    Verify a Svix-signed request.

    Returns:
        The verified svix-id (usable as an idempotency key).

    Raises:
        WebhookVerificationError: missing headers, stale timestamp or bad signature.
    """
    msg_id = _header(headers, "svix-id")
    raw_ts = _header(headers, "svix-timestamp")
    signature_header = _header(headers, "svix-signature")
    if not msg_id or not raw_ts or not signature_header:
        raise WebhookVerificationError(
            "Missing Svix headers",
            error_code=ErrorCode.WEBHOOK_SIGNATURE_MISSING,
            provider="svix",
        )

    _check_timestamp(raw_ts, tolerance, now, "svix")

    candidates = extract_svix_signatures(signature_header)
    if not candidates:
        raise WebhookVerificationError(
            "No v1 signature in svix-signature header",
            error_code=ErrorCode.WEBHOOK_SIGNATURE_MISSING,
            provider="svix",
        )

    expected = sign_svix_payload(secret, msg_id, raw_ts, payload)
    if not _any_matches(expected, candidates):
        raise WebhookVerificationError("Signature mismatch", provider="svix")
    return msg_id


def verify_shared_secret(provided: str | None, expected: str) -> bool:
    """Constant-time comparison for shared-secret headers and tokens"""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
