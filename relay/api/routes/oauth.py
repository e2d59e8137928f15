"""
OAuth Routes - calendar integration handshake
"""
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from relay.api.dependencies.session_auth import require_session
from relay.core.auth import SessionPayload
from relay.core.config import settings
from relay.db.database import get_db
from relay.domain.services.oauth_service import OAuthService

router = APIRouter()


class AuthorizationUrlResponse(BaseModel):
    url: str


@router.get("/{provider}/start", response_model=AuthorizationUrlResponse)
async def start_oauth(
    provider: str,
    organization_id: str = Query(...),
    return_to: Optional[str] = Query(None),
    session: SessionPayload = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> AuthorizationUrlResponse:
    """
    Begin an OAuth flow for an organization.

    Returns the provider authorization URL as JSON; the browser navigates
    there itself since it cannot attach the session header to a redirect.
    """
    service = OAuthService(db)
    url = await service.start(
        provider,
        auth_user_id=session.sub,
        organization_id=organization_id,
        return_to=return_to or f"{settings.APP_BASE_URL}/settings/integrations",
    )
    return AuthorizationUrlResponse(url=url)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> RedirectResponse:
    """Provider redirect target: exchange the code, store tokens, bounce back to the app"""
    service = OAuthService(db)
    async with httpx.AsyncClient(timeout=settings.DELIVERY_HTTP_TIMEOUT_SECONDS) as client:
        target = await service.complete(provider, code=code, state=state, error=error, client=client)
    return RedirectResponse(url=target, status_code=302)
