"""
Web Push provider: interface plus the pywebpush (VAPID) implementation.

The push dispatcher depends only on BasePushProvider so tests can swap in
a fake without touching the network.
"""
from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from pywebpush import WebPushException, webpush

from relay.core.config import settings
from relay.core.exceptions import ConfigurationError, DeliveryError
from relay.core.logging import get_logger

logger = get_logger(__name__)

# Push services answer these when a subscription no longer exists
GONE_STATUS_CODES = (404, 410)


@dataclass(frozen=True)
class PushResult:
    status_code: Optional[int]
    gone: bool = False


class BasePushProvider(ABC):
    """Sends one encrypted message to one browser subscription"""

    @abstractmethod
    async def send(self, subscription_info: dict, message: dict) -> PushResult:
        """
        Deliver `message` (JSON-serializable) to a subscription.

        Returns:
            PushResult with gone=True when the subscription has expired.

        Raises:
            DeliveryError: any other failure.
        """


class WebPushProvider(BasePushProvider):
    """pywebpush is synchronous (requests); calls run in a worker thread"""

    def __init__(
        self,
        vapid_private_key: str,
        contact: str,
        *,
        ttl: int = 60,
        urgency: str = "high",
        timeout: float = 10.0,
    ):
        self.vapid_private_key = vapid_private_key
        self.contact = contact if contact.startswith("mailto:") else f"mailto:{contact}"
        self.ttl = ttl
        self.urgency = urgency
        self.timeout = timeout

    def _send_sync(self, subscription_info: dict, message: dict) -> PushResult:
        try:
            response = webpush(
                subscription_info=subscription_info,
                data=json.dumps(message),
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.contact},
                ttl=self.ttl,
                headers={"Urgency": self.urgency},
                timeout=self.timeout,
            )
        except WebPushException as e:
            response = getattr(e, "response", None)
            status_code = getattr(response, "status_code", None)
            if status_code in GONE_STATUS_CODES:
                return PushResult(status_code=status_code, gone=True)
            raise DeliveryError(
                f"Web push failed: {e}",
                response_status=status_code,
                response_body=(getattr(response, "text", "") or "")[: settings.RESPONSE_BODY_MAX_CHARS],
                details={"channel": "push"},
            ) from e
        return PushResult(status_code=getattr(response, "status_code", None))

    async def send(self, subscription_info: dict, message: dict) -> PushResult:
        return await asyncio.to_thread(self._send_sync, subscription_info, message)


def get_push_provider() -> BasePushProvider:
    """
    Provider built from VAPID settings.

    Raises:
        ConfigurationError: VAPID keys are not configured.
    """
    if not settings.VAPID_PRIVATE_KEY or not settings.VAPID_CONTACT_EMAIL:
        raise ConfigurationError("VAPID_PRIVATE_KEY / VAPID_CONTACT_EMAIL are not configured")
    return WebPushProvider(
        settings.VAPID_PRIVATE_KEY,
        settings.VAPID_CONTACT_EMAIL,
        timeout=settings.DELIVERY_HTTP_TIMEOUT_SECONDS,
    )
