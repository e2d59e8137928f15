"""
OAuth handshake endpoints: /api/oauth/{provider}/start and /callback.
"""
import time
from contextlib import contextmanager
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from sqlalchemy import select

from relay.core.config import settings
from relay.core.exceptions import OAuthProviderError
from relay.core.oauth_state import build_state, generate_code_challenge, verify_state
from relay.db.models.oauth_connection import OAuthConnection
from relay.db.models.organization import MembershipRole
from relay.domain.services.oauth_providers import AccountProfile, GoogleOAuthProvider, TokenResponse

RETURN_TO = "https://app.soundpath.test/settings/integrations"


def _state(org_id: str, verifier: str = "pkce-verifier", issued_at: int | None = None) -> str:
    return build_state(
        org_id=org_id,
        return_to=RETURN_TO,
        code_verifier=verifier,
        secret=settings.OAUTH_STATE_SECRET,
        issued_at=int(time.time()) if issued_at is None else issued_at,
    )


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


@contextmanager
def _provider_transport(handler):
    """Send the callback's provider calls to a mock transport"""
    real_client = httpx.AsyncClient

    def _client(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    with patch("relay.api.routes.oauth.httpx.AsyncClient", side_effect=_client):
        yield


class TestOAuthStart:

    @pytest.mark.asyncio
    async def test_requires_session(self, test_client, org_factory):
        org = await org_factory()

        response = await test_client.get(f"/api/oauth/google/start?organization_id={org.id}")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_rejects_expired_session(self, test_client, org_factory, session_token):
        org = await org_factory(member_auth_user_id="auth-user-1")

        response = await test_client.get(
            f"/api/oauth/google/start?organization_id={org.id}",
            headers={"Authorization": f"Bearer {session_token(expires_in=-10)}"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_scout_is_forbidden(self, test_client, org_factory, session_token):
        org = await org_factory(member_auth_user_id="auth-user-1", role=MembershipRole.SCOUT)

        response = await test_client.get(
            f"/api/oauth/google/start?organization_id={org.id}",
            headers={"Authorization": f"Bearer {session_token()}"},
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_inactive_owner_is_forbidden(self, test_client, org_factory, session_token):
        org = await org_factory(member_auth_user_id="auth-user-1", active=False)

        response = await test_client.get(
            f"/api/oauth/google/start?organization_id={org.id}",
            headers={"Authorization": f"Bearer {session_token()}"},
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_owner_gets_pkce_authorization_url(self, test_client, org_factory, session_token):
        org = await org_factory(member_auth_user_id="auth-user-1", role=MembershipRole.OWNER)

        response = await test_client.get(
            f"/api/oauth/google/start?organization_id={org.id}",
            headers={"Authorization": f"Bearer {session_token()}"},
        )

        assert response.status_code == 200
        url = response.json()["url"]
        assert url.startswith(GoogleOAuthProvider.authorization_url)
        params = _query(url)
        assert params["client_id"] == "google-client-id"
        assert params["redirect_uri"] == "https://api.soundpath.test/api/oauth/google/callback"
        assert params["code_challenge_method"] == "S256"
        assert params["access_type"] == "offline"

        state = verify_state(params["state"], settings.OAUTH_STATE_SECRET, max_age_seconds=600)
        assert state.org_id == org.id
        assert state.return_to == RETURN_TO
        assert params["code_challenge"] == generate_code_challenge(state.code_verifier)

    @pytest.mark.asyncio
    async def test_manager_on_microsoft(self, test_client, org_factory, session_token):
        org = await org_factory(member_auth_user_id="auth-user-1", role=MembershipRole.MANAGER)

        response = await test_client.get(
            f"/api/oauth/microsoft/start?organization_id={org.id}",
            headers={"Authorization": f"Bearer {session_token()}"},
        )

        assert response.status_code == 200
        assert "offline_access" in _query(response.json()["url"])["scope"]

    @pytest.mark.asyncio
    async def test_foreign_return_to_is_rejected(self, test_client, org_factory, session_token):
        org = await org_factory(member_auth_user_id="auth-user-1")

        response = await test_client.get(
            "/api/oauth/google/start",
            params={"organization_id": org.id, "return_to": "https://evil.example/steal"},
            headers={"Authorization": f"Bearer {session_token()}"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_provider(self, test_client, org_factory, session_token):
        org = await org_factory(member_auth_user_id="auth-user-1")

        response = await test_client.get(
            f"/api/oauth/myspace/start?organization_id={org.id}",
            headers={"Authorization": f"Bearer {session_token()}"},
        )

        assert response.status_code == 400


class TestOAuthCallback:

    @pytest.mark.asyncio
    async def test_tampered_state_never_reaches_provider(self, test_client, org_factory):
        org = await org_factory()
        payload, signature = _state(org.id).split(".")
        forged = f"{payload}.{signature[:-2]}xx"

        with patch.object(GoogleOAuthProvider, "exchange_code", new_callable=AsyncMock) as exchange:
            response = await test_client.get(
                "/api/oauth/google/callback", params={"code": "auth-code", "state": forged}
            )

        assert response.status_code == 400
        exchange.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_ascii_state_is_rejected(self, test_client):
        with patch.object(GoogleOAuthProvider, "exchange_code", new_callable=AsyncMock) as exchange:
            response = await test_client.get(
                "/api/oauth/google/callback", params={"code": "auth-code", "state": "café.abc"}
            )

        assert response.status_code == 400
        exchange.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_state(self, test_client, org_factory):
        org = await org_factory()
        state = _state(org.id, issued_at=int(time.time()) - settings.OAUTH_STATE_MAX_AGE_SECONDS - 5)

        with patch.object(GoogleOAuthProvider, "exchange_code", new_callable=AsyncMock) as exchange:
            response = await test_client.get(
                "/api/oauth/google/callback", params={"code": "auth-code", "state": state}
            )

        assert response.status_code == 400
        exchange.assert_not_called()

    @pytest.mark.asyncio
    async def test_success_stores_encrypted_tokens(self, test_client, db_session, org_factory, vault):
        org = await org_factory()
        tokens = TokenResponse(
            access_token="google-access",
            refresh_token="google-refresh",
            token_type="Bearer",
            expires_in=3600,
            scope="openid email",
        )

        with patch.object(GoogleOAuthProvider, "exchange_code", new=AsyncMock(return_value=tokens)) as exchange, \
                patch.object(GoogleOAuthProvider, "fetch_profile",
                             new=AsyncMock(return_value=AccountProfile("ar@label.test", "A&R Team"))):
            response = await test_client.get(
                "/api/oauth/google/callback",
                params={"code": "auth-code", "state": _state(org.id, verifier="the-verifier")},
            )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(RETURN_TO)
        assert _query(location) == {"integration": "google", "connected": "1"}

        kwargs = exchange.call_args.kwargs
        assert kwargs["code"] == "auth-code"
        assert kwargs["code_verifier"] == "the-verifier"
        assert kwargs["redirect_uri"] == "https://api.soundpath.test/api/oauth/google/callback"

        connection = (
            await db_session.execute(select(OAuthConnection).where(OAuthConnection.organization_id == org.id))
        ).scalar_one()
        assert connection.provider == "google"
        assert connection.account_email == "ar@label.test"
        assert connection.encrypted_access_token.startswith("v1:")
        assert "google-access" not in connection.encrypted_access_token
        assert vault.decrypt(connection.encrypted_access_token) == "google-access"
        assert vault.decrypt(connection.encrypted_refresh_token) == "google-refresh"
        assert connection.expires_at is not None

    @pytest.mark.asyncio
    async def test_reconnect_without_refresh_token_keeps_stored_one(
        self, test_client, db_session, org_factory, oauth_connection_factory, vault
    ):
        org = await org_factory()
        await oauth_connection_factory(org.id, access_token="old", refresh_token="kept-refresh")
        tokens = TokenResponse(access_token="new", refresh_token=None, token_type="Bearer", expires_in=3600)

        with patch.object(GoogleOAuthProvider, "exchange_code", new=AsyncMock(return_value=tokens)), \
                patch.object(GoogleOAuthProvider, "fetch_profile",
                             new=AsyncMock(return_value=AccountProfile(None, None))):
            response = await test_client.get(
                "/api/oauth/google/callback", params={"code": "c", "state": _state(org.id)}
            )

        assert response.status_code == 302
        rows = (
            await db_session.execute(select(OAuthConnection).where(OAuthConnection.organization_id == org.id))
        ).scalars().all()
        assert len(rows) == 1
        await db_session.refresh(rows[0])
        assert vault.decrypt(rows[0].encrypted_access_token) == "new"
        assert vault.decrypt(rows[0].encrypted_refresh_token) == "kept-refresh"

    @pytest.mark.asyncio
    async def test_provider_error_redirects_with_connected_0(self, test_client, org_factory):
        org = await org_factory()

        with patch.object(GoogleOAuthProvider, "exchange_code", new_callable=AsyncMock) as exchange:
            response = await test_client.get(
                "/api/oauth/google/callback",
                params={"error": "access_denied", "state": _state(org.id)},
            )

        assert response.status_code == 302
        assert _query(response.headers["location"]) == {
            "integration": "google", "connected": "0", "error": "access_denied"
        }
        exchange.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_exchange_redirects_with_connected_0(self, test_client, db_session, org_factory):
        org = await org_factory()
        rejected = AsyncMock(side_effect=OAuthProviderError("google", "invalid_grant"))

        with patch.object(GoogleOAuthProvider, "exchange_code", new=rejected):
            response = await test_client.get(
                "/api/oauth/google/callback", params={"code": "used-code", "state": _state(org.id)}
            )

        assert response.status_code == 302
        params = _query(response.headers["location"])
        assert params["connected"] == "0"
        assert params["error"] == "invalid_grant"
        stored = (
            await db_session.execute(select(OAuthConnection).where(OAuthConnection.organization_id == org.id))
        ).scalars().all()
        assert stored == []

    @pytest.mark.asyncio
    async def test_missing_code(self, test_client, org_factory):
        org = await org_factory()

        response = await test_client.get("/api/oauth/google/callback", params={"state": _state(org.id)})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_profile_that_is_not_an_object_still_connects(self, test_client, db_session, org_factory):
        org = await org_factory()

        def handler(request):
            if str(request.url) == GoogleOAuthProvider.token_url:
                return httpx.Response(200, json={"access_token": "at", "expires_in": 3600})
            return httpx.Response(200, json=["not", "a", "dict"])

        with _provider_transport(handler):
            response = await test_client.get(
                "/api/oauth/google/callback", params={"code": "c", "state": _state(org.id)}
            )

        assert response.status_code == 302
        assert _query(response.headers["location"]) == {"integration": "google", "connected": "1"}
        connection = (
            await db_session.execute(select(OAuthConnection).where(OAuthConnection.organization_id == org.id))
        ).scalar_one()
        assert connection.account_email is None

    @pytest.mark.asyncio
    async def test_unreadable_expires_in_redirects_with_connected_0(self, test_client, db_session, org_factory):
        org = await org_factory()

        with _provider_transport(lambda request: httpx.Response(
            200, json={"access_token": "at", "expires_in": "soon"}
        )):
            response = await test_client.get(
                "/api/oauth/google/callback", params={"code": "c", "state": _state(org.id)}
            )

        assert response.status_code == 302
        assert _query(response.headers["location"]) == {
            "integration": "google", "connected": "0", "error": "invalid_expires_in"
        }
        stored = (
            await db_session.execute(select(OAuthConnection).where(OAuthConnection.organization_id == org.id))
        ).scalars().all()
        assert stored == []
