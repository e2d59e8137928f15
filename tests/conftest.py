"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async) and a session factory for dispatchers
- Outbound HTTP through httpx.MockTransport
- Session tokens for authenticated routes
- Test data factories
"""
# Settings are read at import time, so the environment is set before importing relay
import base64
import os

TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_SVIX_SECRET = "whsec_" + base64.b64encode(b"test-svix-signing-key-0123456789").decode()

os.environ.update({
    "ENVIRONMENT": "test",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "APP_BASE_URL": "https://app.soundpath.test",
    "PUBLIC_API_URL": "https://api.soundpath.test",
    "WORKER_TOKEN": "test-worker-token",
    "SESSION_JWT_SECRET": "test-session-secret-do-not-use-in-production",
    "OAUTH_STATE_SECRET": "test-state-secret-do-not-use-in-production",
    "OAUTH_TOKEN_ENCRYPTION_KEY": TEST_ENCRYPTION_KEY,
    "GOOGLE_OAUTH_CLIENT_ID": "google-client-id",
    "GOOGLE_OAUTH_CLIENT_SECRET": "google-client-secret",
    "MICROSOFT_OAUTH_CLIENT_ID": "microsoft-client-id",
    "MICROSOFT_OAUTH_CLIENT_SECRET": "microsoft-client-secret",
    "VAPID_PRIVATE_KEY": "test-vapid-private-key",
    "VAPID_CONTACT_EMAIL": "mailto:ops@soundpath.test",
    "STRIPE_WEBHOOK_SECRET": "whsec_stripe_test_secret",
    "RESEND_WEBHOOK_SECRET": TEST_SVIX_SECRET,
    "RESEND_API_KEY": "re_test_key",
    "INBOUND_EMAIL_SECRET": "",
})

import time
import uuid
from typing import AsyncGenerator, Callable

import httpx
import jwt as pyjwt
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from relay.core.config import settings
from relay.core.crypto import CredentialVault
from relay.db.database import Base, get_db
from relay.db.models.communication import CommunicationPlatform, CommunicationWebhook
from relay.db.models.oauth_connection import OAuthConnection
from relay.db.models.organization import Membership, MembershipRole, Organization, StaffMember
from relay.db.models.push import PushSubscription
from relay.db.models.track import Track
from relay.db.models.webhook import Webhook
from relay.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker:
    """Session maker on the test engine (what dispatchers receive)"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Outbound HTTP
# ============================================================================

class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served"""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


@pytest.fixture
def mock_http():
    """
    Factory: mock_http(handler) → (AsyncClient, transport).

    handler may also be an int (fixed status code for every request).
    """
    def _make(handler):
        if isinstance(handler, int):
            status_code = handler
            handler = lambda request: httpx.Response(status_code, text="ok" if status_code < 400 else "error")  # noqa: E731
        transport = RecordingTransport(handler)
        client = httpx.AsyncClient(transport=transport)
        return client, transport

    return _make


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def session_token() -> Callable[..., str]:
    """Factory for session JWTs signed with the test secret"""
    def _token(sub: str = "auth-user-1", expires_in: int = 3600, **claims) -> str:
        payload = {"sub": sub, "exp": int(time.time()) + expires_in, **claims}
        return pyjwt.encode(payload, settings.SESSION_JWT_SECRET, algorithm="HS256")

    return _token


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def org_factory(db_session: AsyncSession):
    """Factory for an organization, optionally with one member"""
    async def _create_org(
        name: str = "Test Label",
        member_auth_user_id: str | None = None,
        role: MembershipRole = MembershipRole.OWNER,
        active: bool = True,
    ) -> Organization:
        org = Organization(id=str(uuid.uuid4()), name=name)
        db_session.add(org)
        if member_auth_user_id:
            staff = StaffMember(auth_user_id=member_auth_user_id, name="Test Staff")
            db_session.add(staff)
            await db_session.flush()
            db_session.add(Membership(
                organization_id=org.id,
                staff_member_id=staff.id,
                role=role,
                active=active,
            ))
        await db_session.commit()
        await db_session.refresh(org)
        return org

    return _create_org


@pytest.fixture
def webhook_factory(db_session: AsyncSession):
    """Factory for outbound webhook registrations"""
    async def _create_webhook(
        organization_id: str,
        url: str = "https://hooks.example.com/soundpath",
        secret: str = "whsec_outbound",
        events: list[str] | None = None,
        active: bool = True,
    ) -> Webhook:
        webhook = Webhook(
            organization_id=organization_id,
            url=url,
            secret=secret,
            events=events if events is not None else ["track.created"],
            active=active,
        )
        db_session.add(webhook)
        await db_session.commit()
        await db_session.refresh(webhook)
        return webhook

    return _create_webhook


@pytest.fixture
def chat_webhook_factory(db_session: AsyncSession):
    """Factory for chat-platform webhooks"""
    async def _create(
        organization_id: str,
        platform: CommunicationPlatform = CommunicationPlatform.SLACK,
        url: str | None = "https://hooks.slack.test/services/T000/B000/XXX",
        active: bool = True,
    ) -> CommunicationWebhook:
        target = CommunicationWebhook(
            organization_id=organization_id, platform=platform, url=url, active=active
        )
        db_session.add(target)
        await db_session.commit()
        await db_session.refresh(target)
        return target

    return _create


@pytest.fixture
def push_subscription_factory(db_session: AsyncSession):
    """Factory for browser push subscriptions"""
    async def _create(
        auth_user_id: str = "auth-user-1",
        endpoint: str = "https://push.example.com/sub/1",
        active: bool = True,
    ) -> PushSubscription:
        sub = PushSubscription(
            auth_user_id=auth_user_id,
            endpoint=endpoint,
            p256dh="BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0QTpQtUbVlUls0VJXg7A8u-Ts1XbjhazAkj7I99e8QcYP7DkM",
            auth="tBHItJI5svbpez7KI4CCXg",
            active=active,
        )
        db_session.add(sub)
        await db_session.commit()
        await db_session.refresh(sub)
        return sub

    return _create


@pytest.fixture
def oauth_connection_factory(db_session: AsyncSession, vault: CredentialVault):
    """Factory for OAuth connections with encrypted tokens"""
    async def _create(
        organization_id: str,
        provider: str = "google",
        access_token: str = "access-token-1",
        refresh_token: str | None = "refresh-token-1",
        expires_at=None,
        active: bool = True,
    ) -> OAuthConnection:
        connection = OAuthConnection(
            organization_id=organization_id,
            provider=provider,
            token_type="Bearer",
            encrypted_access_token=vault.encrypt(access_token),
            encrypted_refresh_token=vault.encrypt(refresh_token) if refresh_token else None,
            expires_at=expires_at,
            active=active,
        )
        db_session.add(connection)
        await db_session.commit()
        await db_session.refresh(connection)
        return connection

    return _create


@pytest.fixture
def track_factory(db_session: AsyncSession):
    """Factory for tracks"""
    async def _create(
        organization_id: str,
        artist_name: str = "Test Artist",
        title: str = "Test Track",
        sc_link: str | None = "https://soundcloud.com/test-artist/test-track",
        release_date=None,
    ) -> Track:
        track = Track(
            organization_id=organization_id,
            artist_name=artist_name,
            title=title,
            sc_link=sc_link,
            release_date=release_date,
        )
        db_session.add(track)
        await db_session.commit()
        await db_session.refresh(track)
        return track

    return _create
