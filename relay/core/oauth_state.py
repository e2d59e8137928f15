"""
PKCE pair generation and the signed, self-contained OAuth state token.

state = base64url(json payload) + "." + base64url(HMAC-SHA256(secret, payload_b64))

Nothing is stored server-side between start and callback; the signature
is checked before any field of the payload is decoded or trusted.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import time

from pydantic import BaseModel, ValidationError

from relay.core.crypto import b64url_decode, b64url_encode
from relay.core.exceptions import ErrorCode, OAuthStateError

_VERIFIER_BYTES = 32


class OAuthStatePayload(BaseModel):
    """Fields carried through the provider redirect round-trip"""
    org_id: str
    return_to: str
    code_verifier: str
    iat: int


def generate_code_verifier(length: int = _VERIFIER_BYTES) -> str:
    """PKCE code verifier (RFC 7636): base64url of random bytes, no padding"""
    return base64.urlsafe_b64encode(os.urandom(length)).rstrip(b"=").decode("ascii")


def generate_code_challenge(verifier: str) -> str:
    """S256 challenge for a verifier"""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _sign(secret: str, payload_b64: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256)
    return b64url_encode(mac.digest())


def sign_state(payload: OAuthStatePayload, secret: str) -> str:
    """Serialize and sign a state payload"""
    raw = json.dumps(payload.model_dump(), separators=(",", ":")).encode("utf-8")
    payload_b64 = b64url_encode(raw)
    return f"{payload_b64}.{_sign(secret, payload_b64)}"


def build_state(
    org_id: str,
    return_to: str,
    code_verifier: str,
    secret: str,
    issued_at: int | None = None,
) -> str:
    payload = OAuthStatePayload(
        org_id=org_id,
        return_to=return_to,
        code_verifier=code_verifier,
        iat=int(issued_at if issued_at is not None else time.time()),
    )
    return sign_state(payload, secret)


def verify_state(
    state: str | None,
    secret: str,
    *,
    max_age_seconds: int,
    clock_skew_seconds: int = 60,
    now: float | None = None,
) -> OAuthStatePayload:
    """
    Verify and decode a state token.

    Raises:
        OAuthStateError: malformed token, bad signature, or iat outside
            [now - max_age, now + clock_skew].
    """
    if not state:
        raise OAuthStateError("Missing state")

    if not state.isascii():
        raise OAuthStateError("Malformed state")

    payload_b64, sep, signature = state.partition(".")
    if not sep or not payload_b64 or not signature or "." in signature:
        raise OAuthStateError("Malformed state")

    expected = _sign(secret, payload_b64)
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii", "replace")):
        raise OAuthStateError("Invalid state signature")

    try:
        data = json.loads(b64url_decode(payload_b64))
        payload = OAuthStatePayload.model_validate(data)
    except (binascii.Error, ValueError, ValidationError) as e:
        raise OAuthStateError("Invalid state payload") from e

    current = time.time() if now is None else now
    if payload.iat > current + clock_skew_seconds:
        raise OAuthStateError("State issued in the future", error_code=ErrorCode.OAUTH_STATE_EXPIRED)
    if current - payload.iat > max_age_seconds:
        raise OAuthStateError("State expired", error_code=ErrorCode.OAUTH_STATE_EXPIRED)

    return payload
