"""
Inbound Email Service - turns a forwarded submission email into a track.

Resend only sends a notification (``email.received`` + email id); the
message itself is fetched from its receiving API. Other providers post
the message fields directly. The organization is encoded in the
recipient address: ``<organization uuid>@inbound.example``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.config import settings
from relay.core.exceptions import ConfigurationError, ExternalServiceException, ValidationException
from relay.core.logging import get_logger, log_async_operation
from relay.db.models.organization import Organization
from relay.db.models.track import Track
from relay.domain.services.delivery_producer import DeliveryProducer

logger = get_logger(__name__)

RESEND_RECEIVING_URL = "https://api.resend.com/emails/receiving/{email_id}"
SOUNDCLOUD_OEMBED_URL = "https://soundcloud.com/oembed"

_URL_RE = re.compile(r"\bhttps?://[^\s<>\"')]+", re.IGNORECASE)
_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


@dataclass
class ExtractedLinks:
    urls: list[str] = field(default_factory=list)
    soundcloud: list[str] = field(default_factory=list)
    spotify: list[str] = field(default_factory=list)

    @property
    def primary(self) -> Optional[str]:
        if self.soundcloud:
            return self.soundcloud[0]
        if self.spotify:
            return self.spotify[0]
        return None


def extract_links(text: str) -> ExtractedLinks:
    """All URLs in order of appearance (deduplicated), split by platform"""
    urls: list[str] = []
    for match in _URL_RE.findall(text or ""):
        url = match.rstrip("),.;")
        if url not in urls:
            urls.append(url)
    return ExtractedLinks(
        urls=urls,
        soundcloud=[u for u in urls if "soundcloud.com" in u.lower()],
        spotify=[u for u in urls if "open.spotify.com" in u.lower()],
    )


def parse_org_id_from_recipient(address: str) -> Optional[str]:
    """Lower-cased organization id when the local part is a UUID"""
    address = (address or "").strip()
    # "Label Inbox <uuid@domain>" form
    if "<" in address and address.endswith(">"):
        address = address[address.rindex("<") + 1:-1]
    local, sep, _ = address.partition("@")
    if not sep or not _UUID_RE.match(local):
        return None
    return local.lower()


def _recipients(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v or "") for v in value]
    return [str(value or "")]


def _first(body: dict, *keys: str) -> Any:
    for key in keys:
        value = body.get(key)
        if value:
            return value
    return None


class InboundEmailService:
    """Ingests one inbound email"""

    def __init__(self, db: AsyncSession, client: httpx.AsyncClient):
        self.db = db
        self.client = client

    async def fetch_resend_email(self, email_id: str) -> dict:
        """
        Fetch a received message from Resend.

        Raises:
            ConfigurationError: RESEND_API_KEY is not set.
            ExternalServiceException: Resend answered with an error.
        """
        if not settings.RESEND_API_KEY:
            raise ConfigurationError("RESEND_API_KEY is not configured")

        response = await self.client.get(
            RESEND_RECEIVING_URL.format(email_id=email_id),
            headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
        )
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400 or not isinstance(data, dict):
            message = None
            if isinstance(data, dict):
                error = data.get("error")
                message = error.get("message") if isinstance(error, dict) else data.get("message")
            raise ExternalServiceException(
                "resend",
                message or f"Resend receiving API error: {response.status_code}",
                details={"status_code": response.status_code},
            )
        return data

    async def soundcloud_metadata(self, url: str) -> dict[str, Optional[str]]:
        """Artist and title from SoundCloud oEmbed; empty on any failure"""
        try:
            response = await self.client.get(
                SOUNDCLOUD_OEMBED_URL, params={"format": "json", "url": url}
            )
            if response.status_code >= 400:
                return {}
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("SoundCloud oEmbed lookup failed", extra_data={"url": url, "error": str(e)})
            return {}
        if not isinstance(data, dict):
            return {}
        return {"artist_name": data.get("author_name"), "title": data.get("title")}

    async def normalize(self, body: dict) -> dict:
        """Resolve a Resend notification into the message fields"""
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise ValidationException("Notification data must be an object", field="data")
        if body.get("type") == "email.received" and data.get("email_id"):
            received = await self.fetch_resend_email(data["email_id"])
            return {
                "To": received.get("to"),
                "From": received.get("from"),
                "Subject": received.get("subject"),
                "TextBody": received.get("text") or "",
                "HtmlBody": received.get("html") or "",
            }
        return body

    @log_async_operation("inbound_email_ingest")
    async def ingest(self, body: dict) -> dict:
        """
        Create a track from the email and queue track.created deliveries.

        Raises:
            ValidationException: no recipient maps to a known organization.
        """
        message = await self.normalize(body)

        to = _first(message, "To", "to", "recipient", "originalRecipient")
        if to is None:
            envelope = message.get("envelope")
            to = envelope.get("to") if isinstance(envelope, dict) else None
        organization_id = next(
            (org for org in map(parse_org_id_from_recipient, _recipients(to)) if org), None
        )
        if organization_id is None:
            raise ValidationException("Could not determine organization from recipient", field="to")
        if await self.db.get(Organization, organization_id) is None:
            raise ValidationException("Unknown organization", field="to")

        subject = str(_first(message, "Subject", "subject") or "New Submission")[:200]
        text = str(_first(message, "TextBody", "text", "textBody", "body") or "")
        html = str(_first(message, "HtmlBody", "html", "htmlBody") or "")
        links = extract_links("\n\n".join(part for part in (subject, text, html) if part))

        artist_name = "Unknown Artist"
        title = subject
        if links.soundcloud:
            meta = await self.soundcloud_metadata(links.soundcloud[0])
            artist_name = meta.get("artist_name") or artist_name
            title = meta.get("title") or title

        sender = str(_first(message, "From", "from") or "")[:200]
        track = Track(
            organization_id=organization_id,
            artist_name=artist_name[:200],
            title=title[:200],
            sc_link=links.primary,
            status="inbox",
            crate="network",
            source="email_bridge",
            archived=False,
            submitter_email=sender or None,
            submitter_note=text[:2000] or None,
        )
        self.db.add(track)
        await self.db.flush()

        queued = await DeliveryProducer(self.db).publish_track_event(track, "track.created")
        await self.db.commit()

        logger.info(
            "Inbound email ingested",
            extra_data={"organization_id": organization_id, "track_id": track.id, **queued},
        )
        return {
            "success": True,
            "organization_id": organization_id,
            "links": {"soundcloud": links.soundcloud, "spotify": links.spotify},
            "track": track.to_event_payload(),
        }
