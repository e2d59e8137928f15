"""
API Routes
"""
from fastapi import APIRouter

from relay.api.routes.oauth import router as oauth_router
from relay.api.routes.workers import router as workers_router
from relay.api.webhooks.billing import router as billing_router
from relay.api.webhooks.inbound_email import router as inbound_email_router

router = APIRouter()

router.include_router(workers_router, prefix="/workers", tags=["workers"])
router.include_router(oauth_router, prefix="/oauth", tags=["oauth"])
router.include_router(billing_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(inbound_email_router, prefix="/webhooks", tags=["webhooks"])
