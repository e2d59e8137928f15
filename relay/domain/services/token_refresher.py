"""
Token Refresher - lazy refresh-on-use of OAuth access tokens.

Called by the calendar dispatcher before each send. The common path
(token valid for more than a minute, or no expiry known) makes no
network call. A failed refresh returns the connection untouched and the
downstream API call is left to fail on its own.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.crypto import CredentialVault
from relay.core.exceptions import OAuthProviderError
from relay.core.logging import get_logger
from relay.core.retry import utcnow
from relay.db.models.oauth_connection import OAuthConnection
from relay.domain.services.oauth_providers import BaseOAuthProvider, get_oauth_provider

logger = get_logger(__name__)

REFRESH_THRESHOLD = timedelta(seconds=60)


def needs_refresh(connection: OAuthConnection, now: datetime) -> bool:
    if connection.expires_at is None:
        return False
    return connection.expires_at - now < REFRESH_THRESHOLD


class TokenRefresher:
    """Refreshes and persists OAuth access tokens for one session"""

    def __init__(
        self,
        db: AsyncSession,
        vault: CredentialVault,
        client: httpx.AsyncClient,
        provider_factory: Callable[[str], BaseOAuthProvider] = get_oauth_provider,
    ):
        self.db = db
        self.vault = vault
        self.client = client
        self.provider_factory = provider_factory

    async def ensure_fresh(
        self, connection: OAuthConnection, now: datetime | None = None
    ) -> OAuthConnection:
        """
        Return a connection whose access token is usable (best effort).

        Raises:
            TokenDecryptionError: the stored refresh token cannot be decrypted.
        """
        now = now or utcnow()
        if not needs_refresh(connection, now):
            return connection

        if not connection.encrypted_refresh_token:
            logger.info(
                "Token near expiry but no refresh token stored",
                extra_data={"connection_id": connection.id, "provider": connection.provider},
            )
            return connection

        provider = self.provider_factory(connection.provider)
        if not provider.is_configured:
            logger.warning(
                "Token refresh skipped: provider client credentials missing",
                extra_data={"connection_id": connection.id, "provider": connection.provider},
            )
            return connection

        refresh_token = self.vault.decrypt(connection.encrypted_refresh_token)

        try:
            tokens = await provider.refresh(self.client, refresh_token)
        except (OAuthProviderError, httpx.HTTPError) as e:
            logger.warning(
                "Token refresh failed, continuing with stale token",
                extra_data={
                    "connection_id": connection.id,
                    "provider": connection.provider,
                    "error": str(e),
                },
            )
            return connection

        connection.encrypted_access_token = self.vault.encrypt(tokens.access_token)
        new_expiry = tokens.expires_at(now)
        if new_expiry is not None:
            connection.expires_at = new_expiry
        if tokens.refresh_token:
            # Microsoft rotates refresh tokens; keep the newest one
            connection.encrypted_refresh_token = self.vault.encrypt(tokens.refresh_token)
        if tokens.token_type:
            connection.token_type = tokens.token_type
        connection.updated_at = now

        await self.db.commit()

        logger.info(
            "OAuth token refreshed",
            extra_data={
                "connection_id": connection.id,
                "provider": connection.provider,
                "expires_at": connection.expires_at,
            },
        )
        return connection
