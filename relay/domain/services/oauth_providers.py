"""
OAuth / calendar provider interface and implementations.

Each provider knows its authorization, token and profile endpoints and
how to create a calendar event. Business logic (handshake, refresher,
calendar dispatcher) depends only on BaseOAuthProvider.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from relay.core.config import settings
from relay.core.exceptions import OAuthProviderError
from relay.core.logging import get_logger
from relay.domain.services.renderers import (
    CalendarPayload,
    render_google_event,
    render_microsoft_event,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    refresh_token: Optional[str]
    token_type: str
    expires_in: Optional[int]
    scope: Optional[str] = None

    def expires_at(self, now: datetime) -> Optional[datetime]:
        if not self.expires_in:
            return None
        return now + timedelta(seconds=self.expires_in)


@dataclass(frozen=True)
class AccountProfile:
    email: Optional[str]
    name: Optional[str]


class BaseOAuthProvider(ABC):
    """Provider endpoints plus the calls made against them"""

    name: str
    authorization_url: str
    token_url: str
    profile_url: str
    calendar_events_url: str
    scopes: tuple[str, ...]

    def __init__(self, client_id: str, client_secret: str):
        self.client_id = client_id
        self.client_secret = client_secret

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def extra_authorization_params(self) -> dict[str, str]:
        return {}

    def extra_refresh_params(self) -> dict[str, str]:
        return {}

    def build_authorization_url(self, *, redirect_uri: str, state: str, code_challenge: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            **self.extra_authorization_params(),
        }
        return f"{self.authorization_url}?{urlencode(params)}"

    async def _post_token(self, client: httpx.AsyncClient, data: dict[str, str], operation: str) -> TokenResponse:
        response = await client.post(
            self.token_url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or not body.get("access_token"):
            description = body.get("error_description") or body.get("error") or f"{operation}_failed"
            raise OAuthProviderError(
                self.name,
                str(description),
                details={"operation": operation, "status_code": response.status_code},
            )

        expires_in = body.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in else None
        except (TypeError, ValueError):
            raise OAuthProviderError(
                self.name,
                "invalid_expires_in",
                details={"operation": operation, "expires_in": str(expires_in)},
            ) from None

        return TokenResponse(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            token_type=body.get("token_type") or "Bearer",
            expires_in=expires_in,
            scope=body.get("scope"),
        )

    async def exchange_code(
        self, client: httpx.AsyncClient, *, code: str, code_verifier: str, redirect_uri: str
    ) -> TokenResponse:
        return await self._post_token(
            client,
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
                "code_verifier": code_verifier,
            },
            "token_exchange",
        )

    async def refresh(self, client: httpx.AsyncClient, refresh_token: str) -> TokenResponse:
        return await self._post_token(
            client,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                **self.extra_refresh_params(),
            },
            "token_refresh",
        )

    async def fetch_profile(self, client: httpx.AsyncClient, token_type: str, access_token: str) -> AccountProfile:
        """Best effort: an unreadable profile yields empty fields"""
        response = await client.get(
            self.profile_url, headers={"Authorization": f"{token_type} {access_token}"}
        )
        if response.status_code >= 400:
            logger.warning(
                "Profile fetch failed",
                extra_data={"provider": self.name, "status_code": response.status_code},
            )
            return AccountProfile(email=None, name=None)
        try:
            data = response.json()
        except ValueError:
            return AccountProfile(email=None, name=None)
        if not isinstance(data, dict):
            return AccountProfile(email=None, name=None)
        return self.parse_profile(data)

    @abstractmethod
    def parse_profile(self, data: dict) -> AccountProfile:
        """Map the provider's profile document to AccountProfile"""

    @abstractmethod
    def render_event(self, job_type: str, payload: CalendarPayload, now: datetime) -> dict:
        """Calendar event body for a calendar job"""


class GoogleOAuthProvider(BaseOAuthProvider):
    name = "google"
    authorization_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    profile_url = "https://openidconnect.googleapis.com/v1/userinfo"
    calendar_events_url = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
    scopes = (
        "openid",
        "email",
        "profile",
        "https://www.googleapis.com/auth/calendar.events",
    )

    def extra_authorization_params(self) -> dict[str, str]:
        # offline + consent so Google always returns a refresh token
        return {"access_type": "offline", "prompt": "consent", "include_granted_scopes": "true"}

    def parse_profile(self, data: dict) -> AccountProfile:
        return AccountProfile(email=data.get("email"), name=data.get("name"))

    def render_event(self, job_type: str, payload: CalendarPayload, now: datetime) -> dict:
        return render_google_event(job_type, payload, now)


class MicrosoftOAuthProvider(BaseOAuthProvider):
    name = "microsoft"
    authorization_url = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    token_url = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    profile_url = "https://graph.microsoft.com/v1.0/me"
    calendar_events_url = "https://graph.microsoft.com/v1.0/me/events"
    scopes = ("openid", "profile", "email", "offline_access", "Calendars.ReadWrite")

    def extra_authorization_params(self) -> dict[str, str]:
        return {"response_mode": "query", "prompt": "select_account"}

    def extra_refresh_params(self) -> dict[str, str]:
        return {"scope": " ".join(self.scopes)}

    def parse_profile(self, data: dict) -> AccountProfile:
        return AccountProfile(
            email=data.get("mail") or data.get("userPrincipalName"),
            name=data.get("displayName"),
        )

    def render_event(self, job_type: str, payload: CalendarPayload, now: datetime) -> dict:
        return render_microsoft_event(job_type, payload, now)


SUPPORTED_PROVIDERS = ("google", "microsoft")


def get_oauth_provider(name: str) -> BaseOAuthProvider:
    """Provider instance built from current settings"""
    if name == "google":
        return GoogleOAuthProvider(
            settings.GOOGLE_OAUTH_CLIENT_ID, settings.GOOGLE_OAUTH_CLIENT_SECRET
        )
    if name == "microsoft":
        return MicrosoftOAuthProvider(
            settings.MICROSOFT_OAUTH_CLIENT_ID, settings.MICROSOFT_OAUTH_CLIENT_SECRET
        )
    raise ValueError(f"Unknown OAuth provider: {name}")
