"""
Channel payload models and renderers.

Job payloads are stored as JSON; each channel validates its own shape
with a pydantic model before rendering, so a malformed payload surfaces
as a delivery failure (and goes through the retry path) instead of a
KeyError deep inside a request builder.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from relay.core.exceptions import DeliveryError, ErrorCode

FOLLOW_UP_DELAY = timedelta(days=2)
FOLLOW_UP_DURATION = timedelta(minutes=15)


class TrackInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    artist_name: Optional[str] = None
    title: Optional[str] = None
    sc_link: Optional[str] = None
    release_date: Optional[date] = None
    created_at: Optional[datetime] = None


class TrackEventPayload(BaseModel):
    """communication_deliveries.payload"""
    model_config = ConfigDict(extra="allow")

    track: TrackInfo


class PushPayload(BaseModel):
    """push_notification_jobs.payload"""
    title: str
    body: str
    url: str = "/"


class CalendarPayload(BaseModel):
    """calendar_jobs.payload"""
    model_config = ConfigDict(extra="allow")

    track: TrackInfo


def parse_payload(model: type[BaseModel], payload: Any) -> Any:
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise DeliveryError(
            f"Invalid {model.__name__}: {e.error_count()} validation error(s)",
            error_code=ErrorCode.DELIVERY_PAYLOAD_INVALID,
        ) from e


# ============================================================================
# Chat platforms
# ============================================================================

def build_submission_line(track: TrackInfo) -> str:
    artist = track.artist_name or "Unknown Artist"
    title = track.title or "Untitled"
    line = f"New submission: {artist} — {title}"
    if track.sc_link:
        line += f" ({track.sc_link})"
    if track.created_at:
        line += f" • {track.created_at.strftime('%Y-%m-%d %H:%M')} UTC"
    return line


def render_communication(platform: str, payload: TrackEventPayload) -> dict:
    """Request body for a chat-platform incoming webhook"""
    track = payload.track
    line = build_submission_line(track)
    artist = track.artist_name or "Unknown Artist"
    title = track.title or "Untitled"

    if platform == "slack":
        blocks = [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*New Submission*\n*{artist}* — {title}"},
            }
        ]
        if track.sc_link:
            blocks.append(
                {"type": "section", "text": {"type": "mrkdwn", "text": f"<{track.sc_link}|Listen>"}}
            )
        return {"text": line, "blocks": blocks}

    if platform == "discord":
        return {"content": line}

    # telegram / whatsapp / generic relays accept plain JSON
    return {"text": line, "track": track.model_dump(mode="json", exclude_none=True)}


# ============================================================================
# Calendar providers
# ============================================================================

def _event_title(prefix: str, track: TrackInfo) -> str:
    return f"{prefix}: {track.artist_name or 'Artist'} — {track.title or 'Track'}"


def _event_description(track: TrackInfo) -> Optional[str]:
    return f"Listen: {track.sc_link}" if track.sc_link else None


def _iso_utc(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z"


def render_google_event(job_type: str, payload: CalendarPayload, now: datetime) -> dict:
    """Google Calendar v3 event resource"""
    track = payload.track
    if job_type == "follow_up_reminder":
        start = now + FOLLOW_UP_DELAY
        event = {
            "summary": _event_title("Follow up", track),
            "start": {"dateTime": _iso_utc(start)},
            "end": {"dateTime": _iso_utc(start + FOLLOW_UP_DURATION)},
            "reminders": {"useDefault": True},
        }
    elif job_type == "label_master_release":
        release = _require_release_date(track)
        event = {
            "summary": _event_title("Release", track),
            "start": {"date": release.isoformat()},
            "end": {"date": (release + timedelta(days=1)).isoformat()},
        }
    else:
        raise DeliveryError(
            f"Unknown calendar job type: {job_type}",
            error_code=ErrorCode.DELIVERY_PAYLOAD_INVALID,
        )

    description = _event_description(track)
    if description:
        event["description"] = description
    return event


def render_microsoft_event(job_type: str, payload: CalendarPayload, now: datetime) -> dict:
    """Microsoft Graph event resource"""
    track = payload.track
    body = {"contentType": "text", "content": _event_description(track) or ""}

    if job_type == "follow_up_reminder":
        start = now + FOLLOW_UP_DELAY
        return {
            "subject": _event_title("Follow up", track),
            "body": body,
            "start": {"dateTime": _iso_utc(start), "timeZone": "UTC"},
            "end": {"dateTime": _iso_utc(start + FOLLOW_UP_DURATION), "timeZone": "UTC"},
        }

    if job_type == "label_master_release":
        release = _require_release_date(track)
        # Graph needs dateTime even for all-day events: midnight to midnight UTC
        start = datetime(release.year, release.month, release.day)
        return {
            "subject": _event_title("Release", track),
            "body": body,
            "isAllDay": True,
            "start": {"dateTime": _iso_utc(start), "timeZone": "UTC"},
            "end": {"dateTime": _iso_utc(start + timedelta(days=1)), "timeZone": "UTC"},
        }

    raise DeliveryError(
        f"Unknown calendar job type: {job_type}",
        error_code=ErrorCode.DELIVERY_PAYLOAD_INVALID,
    )


def _require_release_date(track: TrackInfo) -> date:
    if track.release_date is None:
        raise DeliveryError(
            "Release event requires track.release_date",
            error_code=ErrorCode.DELIVERY_PAYLOAD_INVALID,
        )
    return track.release_date


# ============================================================================
# Web Push
# ============================================================================

def render_push(payload: PushPayload) -> dict:
    return {"title": payload.title, "body": payload.body, "url": payload.url or "/"}
