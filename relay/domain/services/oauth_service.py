"""
OAuth Handshake - start (authorization URL) and callback (code exchange).

start:    session → role gate → PKCE pair → signed state → provider URL
callback: verify state signature and age → exchange code → fetch profile
          → encrypt tokens → upsert connection → redirect to return_to

After the state has been verified every failure redirects back to the
initiating application with connected=0 and an error parameter; state
problems themselves are 400 responses.
"""
from __future__ import annotations

import time
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.config import settings
from relay.core.crypto import get_vault
from relay.core.exceptions import (
    ConfigurationError,
    ErrorCode,
    ForbiddenError,
    OAuthProviderError,
    ValidationException,
)
from relay.core.logging import get_logger
from relay.core.oauth_state import (
    build_state,
    generate_code_challenge,
    generate_code_verifier,
    verify_state,
)
from relay.core.retry import utcnow
from relay.db.models.oauth_connection import OAuthConnection
from relay.db.models.organization import ELEVATED_ROLES, Membership, StaffMember
from relay.domain.services.oauth_providers import (
    SUPPORTED_PROVIDERS,
    BaseOAuthProvider,
    get_oauth_provider,
)

logger = get_logger(__name__)


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


def append_query(url: str, params: dict[str, str]) -> str:
    """Add query parameters to a URL, keeping the ones already present"""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def allowed_return_origins() -> set[str]:
    origins = {_origin(settings.APP_BASE_URL)}
    for raw in settings.OAUTH_ALLOWED_RETURN_ORIGINS.split(","):
        if raw.strip():
            origins.add(_origin(raw.strip()))
    return origins


def validate_return_to(return_to: str) -> str:
    """return_to must be an absolute http(s) URL on an allowed origin"""
    parts = urlsplit(return_to or "")
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationException("return_to must be an absolute URL", field="return_to")
    if _origin(return_to) not in allowed_return_origins():
        raise ValidationException("return_to origin is not allowed", field="return_to")
    return return_to


def callback_redirect_uri(provider: str) -> str:
    return f"{settings.PUBLIC_API_URL}/api/oauth/{provider}/callback"


class OAuthService:
    """Runs the two halves of the handshake for one request"""

    def __init__(
        self,
        db: AsyncSession,
        *,
        provider_factory: Callable[[str], BaseOAuthProvider] = get_oauth_provider,
        now: Callable[[], float] = time.time,
    ):
        self.db = db
        self.provider_factory = provider_factory
        self.now = now

    def _provider(self, name: str) -> BaseOAuthProvider:
        if name not in SUPPORTED_PROVIDERS:
            raise ValidationException(
                f"Unsupported provider: {name}",
                field="provider",
                details={"code": ErrorCode.OAUTH_PROVIDER_UNKNOWN.value},
            )
        provider = self.provider_factory(name)
        if not provider.is_configured:
            raise ConfigurationError(f"{name} OAuth client is not configured")
        return provider

    def _state_secret(self) -> str:
        if not settings.OAUTH_STATE_SECRET:
            raise ConfigurationError("OAUTH_STATE_SECRET is not configured")
        return settings.OAUTH_STATE_SECRET

    async def require_elevated_membership(self, auth_user_id: str, organization_id: str) -> Membership:
        """Only active Owners/Managers of the organization may connect integrations"""
        result = await self.db.execute(
            select(Membership)
            .join(StaffMember, StaffMember.id == Membership.staff_member_id)
            .where(
                StaffMember.auth_user_id == auth_user_id,
                Membership.organization_id == organization_id,
                Membership.active.is_(True),
                Membership.role.in_(ELEVATED_ROLES),
            )
        )
        membership = result.scalars().first()
        if membership is None:
            logger.warning(
                "OAuth start denied: no elevated membership",
                extra_data={"organization_id": organization_id},
            )
            raise ForbiddenError("Owner or Manager role required")
        return membership

    async def start(
        self, provider_name: str, *, auth_user_id: str, organization_id: str, return_to: str
    ) -> str:
        """Authorization URL the browser should navigate to"""
        provider = self._provider(provider_name)
        secret = self._state_secret()
        validate_return_to(return_to)
        await self.require_elevated_membership(auth_user_id, organization_id)

        verifier = generate_code_verifier()
        state = build_state(
            org_id=organization_id,
            return_to=return_to,
            code_verifier=verifier,
            secret=secret,
            issued_at=int(self.now()),
        )
        url = provider.build_authorization_url(
            redirect_uri=callback_redirect_uri(provider.name),
            state=state,
            code_challenge=generate_code_challenge(verifier),
        )
        logger.info(
            "OAuth flow started",
            extra_data={"provider": provider.name, "organization_id": organization_id},
        )
        return url

    async def complete(
        self,
        provider_name: str,
        *,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
        client: httpx.AsyncClient,
    ) -> str:
        """
        Handle the provider callback and return the redirect target.

        Raises:
            OAuthStateError: state missing, forged or expired (nothing else runs).
            ValidationException: valid state but no code and no provider error.
        """
        secret = self._state_secret()
        payload = verify_state(
            state,
            secret,
            max_age_seconds=settings.OAUTH_STATE_MAX_AGE_SECONDS,
            clock_skew_seconds=settings.OAUTH_STATE_CLOCK_SKEW_SECONDS,
            now=self.now(),
        )

        def _fail(reason: str) -> str:
            return append_query(
                payload.return_to,
                {"integration": provider_name, "connected": "0", "error": reason},
            )

        if error:
            logger.info(
                "OAuth provider returned an error",
                extra_data={"provider": provider_name, "error": error},
            )
            return _fail(error)

        if not code:
            raise ValidationException("Missing code", field="code")

        provider = self._provider(provider_name)
        vault = get_vault()
        redirect_uri = callback_redirect_uri(provider.name)

        try:
            tokens = await provider.exchange_code(
                client, code=code, code_verifier=payload.code_verifier, redirect_uri=redirect_uri
            )
        except OAuthProviderError as e:
            logger.warning(
                "OAuth token exchange rejected",
                extra_data={"provider": provider.name, "error": e.message},
            )
            return _fail(e.message or "token_exchange_failed")
        except httpx.HTTPError as e:
            logger.warning(
                "OAuth token exchange failed",
                extra_data={"provider": provider.name, "error": str(e)},
            )
            return _fail("token_exchange_failed")

        try:
            profile = await provider.fetch_profile(client, tokens.token_type, tokens.access_token)
        except httpx.HTTPError as e:
            logger.warning(
                "OAuth profile fetch failed",
                extra_data={"provider": provider.name, "error": str(e)},
            )
            profile = None

        try:
            await self._upsert_connection(
                organization_id=payload.org_id,
                provider=provider,
                access_token=vault.encrypt(tokens.access_token),
                refresh_token=vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
                token_type=tokens.token_type,
                expires_at=tokens.expires_at(utcnow()),
                scopes=tokens.scope or " ".join(provider.scopes),
                account_email=profile.email if profile else None,
                account_name=profile.name if profile else None,
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Storing OAuth connection failed",
                extra_data={"provider": provider.name, "organization_id": payload.org_id, "error": str(e)},
                exc_info=True,
            )
            return _fail("storage_failed")

        logger.info(
            "OAuth connection stored",
            extra_data={"provider": provider.name, "organization_id": payload.org_id},
        )
        return append_query(payload.return_to, {"integration": provider.name, "connected": "1"})

    async def _upsert_connection(
        self,
        *,
        organization_id: str,
        provider: BaseOAuthProvider,
        access_token: str,
        refresh_token: Optional[str],
        token_type: str,
        expires_at,
        scopes: str,
        account_email: Optional[str],
        account_name: Optional[str],
    ) -> OAuthConnection:
        """One row per (organization, provider); re-authorization overwrites it"""
        result = await self.db.execute(
            select(OAuthConnection).where(
                OAuthConnection.organization_id == organization_id,
                OAuthConnection.provider == provider.name,
            )
        )
        connection = result.scalar_one_or_none()
        if connection is None:
            connection = OAuthConnection(organization_id=organization_id, provider=provider.name)
            self.db.add(connection)

        connection.encrypted_access_token = access_token
        # Providers omit the refresh token on some re-consents; keep the stored one then
        if refresh_token or connection.encrypted_refresh_token is None:
            connection.encrypted_refresh_token = refresh_token
        connection.token_type = token_type
        connection.expires_at = expires_at
        connection.scopes = scopes
        connection.account_email = account_email
        connection.account_name = account_name
        connection.active = True
        connection.updated_at = utcnow()

        await self.db.commit()
        return connection
